# mlm_system/utils/time_machine.py
"""
Virtual time for the commission engine.

All engine code reads the clock through timeMachine so that tests and
admin simulations can pin "now". Datetimes are naive UTC, matching how
they are stored in the database.
"""
from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class TimeMachine:
    """Clock with an optional virtual override."""

    def __init__(self):
        self._virtualTime: Optional[datetime] = None

    @property
    def now(self) -> datetime:
        if self._virtualTime is not None:
            return self._virtualTime
        return datetime.now(timezone.utc).replace(tzinfo=None)

    @property
    def isTestMode(self) -> bool:
        return self._virtualTime is not None

    @property
    def currentMonth(self) -> str:
        """Current month as 'YYYY-MM'."""
        return self.now.strftime("%Y-%m")

    def setTime(self, moment: datetime) -> None:
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
        self._virtualTime = moment
        logger.info(f"Virtual time set to {moment.isoformat()}")

    def resetToRealTime(self) -> None:
        self._virtualTime = None
        logger.info("Virtual time reset to real time")


timeMachine = TimeMachine()
