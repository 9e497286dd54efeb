"""
Referral structure configuration and constants.

Two parallel structures exist over the same membership:
- Structure 1 (subscription): 5 levels, deeper levels unlocked by direct referrals
- Structure 2 (purchase): 10 levels, deeper levels need monthly activation
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class StructureType(IntEnum):
    """Referral structure enumeration."""
    SUBSCRIPTION = 1
    PURCHASE = 2


class NoCommissionReason(str, Enum):
    """Why an ancestor received nothing for an event."""
    SUBSCRIPTION_NOT_ACTIVE = "subscription_not_active"
    TOO_DEEP = "too_deep"
    SPONSOR_INACTIVE = "sponsor_inactive"
    MARKETING_FREE_ACCESS = "marketing_free_access"
    AMOUNT_EXHAUSTED = "amount_exhausted"  # Earlier levels used up the event amount
    NO_ACTIVE_RULE = "no_active_rule"
    ZERO_AMOUNT = "zero_amount"  # Percent of the event rounds to nothing
    UNKNOWN = "unknown"

    @staticmethod
    def level_locked(level: int) -> str:
        return f"level_{level}_locked"


@dataclass(frozen=True)
class StructureSettings:
    """Static shape of one structure."""
    structureType: StructureType
    maxLevels: int
    displayName: str
    unlockThresholds: Dict[int, int] = field(default_factory=dict)  # level -> direct referrals

    def unlockRequirement(self, level: int) -> Optional[str]:
        required = self.unlockThresholds.get(level)
        if not required:
            return None
        return f"{required} direct referrals"


# Default percent tables used to seed CommissionRule
DEFAULT_RULES: Dict[StructureType, List[Decimal]] = {
    StructureType.SUBSCRIPTION: [Decimal("10")] * 5,
    StructureType.PURCHASE: [
        Decimal("10"), Decimal("5"), Decimal("4"), Decimal("3"), Decimal("3"),
        Decimal("2"), Decimal("2"), Decimal("2"), Decimal("2"), Decimal("2"),
    ],
}

SUBSCRIPTION_MAX_LEVELS = 5
PURCHASE_MAX_LEVELS = 10
SUBSCRIPTION_PERIOD_DAYS = 30


def get_structure_settings(structure_type) -> StructureSettings:
    """
    Get settings for a structure, with unlock thresholds from Config.

    Args:
        structure_type: StructureType or its int value

    Returns:
        StructureSettings

    Raises:
        ValueError: If structure type is unknown
    """
    from config import Config

    structure_type = StructureType(int(structure_type))

    if structure_type == StructureType.SUBSCRIPTION:
        thresholds = Config.get(Config.S1_UNLOCK_THRESHOLDS) or {}
        return StructureSettings(
            structureType=structure_type,
            maxLevels=SUBSCRIPTION_MAX_LEVELS,
            displayName="Subscription structure",
            unlockThresholds={int(k): int(v) for k, v in thresholds.items()},
        )

    return StructureSettings(
        structureType=structure_type,
        maxLevels=PURCHASE_MAX_LEVELS,
        displayName="Product structure",
    )
