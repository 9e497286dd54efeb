# config.py
"""
Configuration management for the commission engine.
Loads from .env, validates critical keys.
"""
import os
import json
import logging
from typing import Any, Dict
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        url = Config.get(Config.DATABASE_URL)

        # Set dynamic value
        Config.set(Config.COMMISSION_FREEZE_DAYS, 14)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Commissions
    COMMISSION_FREEZE_DAYS = "COMMISSION_FREEZE_DAYS"
    S1_UNLOCK_THRESHOLDS = "S1_UNLOCK_THRESHOLDS"
    MONTHLY_ACTIVATION_REQUIRED_KZT = "MONTHLY_ACTIVATION_REQUIRED_KZT"
    COMMISSION_PLAN_ID = "COMMISSION_PLAN_ID"

    # Backfill
    BACKFILL_BATCH_SIZE = "BACKFILL_BATCH_SIZE"
    NIGHTLY_BACKFILL_APPLY = "NIGHTLY_BACKFILL_APPLY"
    SYSTEM_ADMIN_ID = "SYSTEM_ADMIN_ID"

    # Withdrawals
    MIN_WITHDRAWAL_KZT = "MIN_WITHDRAWAL_KZT"
    WITHDRAWAL_FEE_PERCENT = "WITHDRAWAL_FEE_PERCENT"

    # System
    SCHEDULER_TIMEZONE = "SCHEDULER_TIMEZONE"
    LOG_LEVEL = "LOG_LEVEL"

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        DATABASE_URL,
    ]

    # ═══════════════════════════════════════════════════════════════════════
    # DEFAULTS
    # ═══════════════════════════════════════════════════════════════════════

    DEFAULTS: Dict[str, Any] = {
        DATABASE_URL: "sqlite:///commission_engine.db",
        COMMISSION_FREEZE_DAYS: 0,
        S1_UNLOCK_THRESHOLDS: {2: 3, 3: 5, 4: 8, 5: 10},
        MONTHLY_ACTIVATION_REQUIRED_KZT: 20000,
        COMMISSION_PLAN_ID: "default",
        BACKFILL_BATCH_SIZE: 200,
        NIGHTLY_BACKFILL_APPLY: False,
        SYSTEM_ADMIN_ID: None,
        MIN_WITHDRAWAL_KZT: 5000,
        WITHDRAWAL_FEE_PERCENT: 0,
        SCHEDULER_TIMEZONE: "UTC",
        LOG_LEVEL: "INFO",
    }

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = {}
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                cls.DEFAULTS[cls.DATABASE_URL]
            )

            # Commissions
            cls._config[cls.COMMISSION_FREEZE_DAYS] = int(
                os.getenv("COMMISSION_FREEZE_DAYS", "0")
            )
            cls._config[cls.MONTHLY_ACTIVATION_REQUIRED_KZT] = int(
                os.getenv("MONTHLY_ACTIVATION_REQUIRED_KZT", "20000")
            )
            cls._config[cls.COMMISSION_PLAN_ID] = os.getenv("COMMISSION_PLAN_ID", "default")

            thresholds_str = os.getenv("S1_UNLOCK_THRESHOLDS")
            if thresholds_str:
                try:
                    cls._config[cls.S1_UNLOCK_THRESHOLDS] = {
                        int(level): int(required)
                        for level, required in json.loads(thresholds_str).items()
                    }
                except json.JSONDecodeError as e:
                    logger.error(f"Failed to parse S1_UNLOCK_THRESHOLDS JSON: {e}")
                    cls._config[cls.S1_UNLOCK_THRESHOLDS] = dict(cls.DEFAULTS[cls.S1_UNLOCK_THRESHOLDS])
            else:
                cls._config[cls.S1_UNLOCK_THRESHOLDS] = dict(cls.DEFAULTS[cls.S1_UNLOCK_THRESHOLDS])

            # Backfill
            cls._config[cls.BACKFILL_BATCH_SIZE] = int(os.getenv("BACKFILL_BATCH_SIZE", "200"))
            cls._config[cls.NIGHTLY_BACKFILL_APPLY] = (
                os.getenv("NIGHTLY_BACKFILL_APPLY", "false").lower() == "true"
            )
            system_admin = os.getenv("SYSTEM_ADMIN_ID")
            cls._config[cls.SYSTEM_ADMIN_ID] = int(system_admin) if system_admin else None

            # Withdrawals
            cls._config[cls.MIN_WITHDRAWAL_KZT] = int(os.getenv("MIN_WITHDRAWAL_KZT", "5000"))
            cls._config[cls.WITHDRAWAL_FEE_PERCENT] = int(os.getenv("WITHDRAWAL_FEE_PERCENT", "0"))

            # System
            cls._config[cls.SCHEDULER_TIMEZONE] = os.getenv("SCHEDULER_TIMEZONE", "UTC")
            cls._config[cls.LOG_LEVEL] = os.getenv("LOG_LEVEL", "INFO").upper()

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except ValueError as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present.

        Raises:
            ConfigurationError: If any critical key is missing
        """
        missing = []
        for key in cls.CRITICAL_KEYS:
            if not cls.get(key):
                missing.append(key)

        if missing:
            error_msg = f"Missing critical configuration keys: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ConfigurationError(error_msg)

        logger.info("All critical configuration keys validated")

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Falls back to the built-in default for known keys when the
        configuration was never initialized.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in cls._config:
            return cls._config[key]
        if default is not None:
            return default
        return cls.DEFAULTS.get(key)

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value (for dynamic updates).

        Args:
            key: Configuration key
            value: New value
            source: Source of the update (for logging)
        """
        cls._config[key] = value
        logger.debug(f"Config updated: {key} = {value} (source: {source})")

    @classmethod
    def get_all(cls) -> Dict[str, Any]:
        """
        Get all configuration values.

        Returns:
            Copy of configuration dictionary
        """
        return cls._config.copy()

    @classmethod
    def reset(cls) -> None:
        """Drop runtime values (tests)."""
        cls._config = {}
        cls._initialized = False
