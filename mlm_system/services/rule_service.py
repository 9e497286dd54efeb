# mlm_system/services/rule_service.py
"""
Commission rule service - versioned percent table.

Rules are never edited in place: a new percent is a new row with a later
effectiveFrom. The rule for an event is the latest one effective at the
event time.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, List
from sqlalchemy.orm import Session
import logging

from config import Config
from models.commission_rule import CommissionRule
from mlm_system.config.structures import DEFAULT_RULES, get_structure_settings
from mlm_system.errors import ValidationError

logger = logging.getLogger(__name__)


class RuleService:
    """Service for commission percent lookups and versioning."""

    def __init__(self, session: Session, planId: Optional[str] = None):
        self.session = session
        self.planId = planId or Config.get(Config.COMMISSION_PLAN_ID)

    def getActiveRule(self, structureType, level: int, at: datetime) -> Optional[CommissionRule]:
        return self.session.query(CommissionRule).filter(
            CommissionRule.planID == self.planId,
            CommissionRule.structureType == int(structureType),
            CommissionRule.level == level,
            CommissionRule.effectiveFrom <= at
        ).order_by(CommissionRule.effectiveFrom.desc()).first()

    def getActivePercents(self, structureType, at: datetime) -> Dict[int, Decimal]:
        """
        Percent per level effective at a moment.

        Returns:
            Dict level -> percent (levels without a rule are absent)
        """
        rules = self.session.query(CommissionRule).filter(
            CommissionRule.planID == self.planId,
            CommissionRule.structureType == int(structureType),
            CommissionRule.effectiveFrom <= at
        ).order_by(CommissionRule.level, CommissionRule.effectiveFrom).all()

        percents: Dict[int, Decimal] = {}
        for rule in rules:
            # Ordered by effectiveFrom, the last one wins
            percents[rule.level] = Decimal(str(rule.percent))
        return percents

    def addRuleVersion(
            self,
            structureType,
            level: int,
            percent,
            effectiveFrom: datetime
    ) -> CommissionRule:
        """
        Add a new percent version for a level.

        Raises:
            ValidationError: Level outside the structure or percent outside 0-100
        """
        settings = get_structure_settings(structureType)
        percent = Decimal(str(percent))

        if not 1 <= level <= settings.maxLevels:
            raise ValidationError(f"Level {level} outside 1-{settings.maxLevels}", code="INVALID_LEVEL")
        if percent < 0 or percent > 100:
            raise ValidationError(f"Percent {percent} outside 0-100", code="INVALID_PERCENT")

        rule = CommissionRule(
            planID=self.planId,
            structureType=int(structureType),
            level=level,
            percent=percent,
            effectiveFrom=effectiveFrom
        )
        self.session.add(rule)
        self.session.flush()

        logger.info(
            f"Commission rule added: plan={self.planId} S{int(structureType)} "
            f"L{level} = {percent}% from {effectiveFrom}"
        )
        return rule

    def seedDefaultRules(self, effectiveFrom: datetime) -> List[CommissionRule]:
        """Create DEFAULT_RULES for structures that have no rules yet."""
        created = []
        for structureType, percents in DEFAULT_RULES.items():
            exists = self.session.query(CommissionRule.ruleID).filter(
                CommissionRule.planID == self.planId,
                CommissionRule.structureType == int(structureType)
            ).first()
            if exists:
                continue

            for level, percent in enumerate(percents, start=1):
                created.append(self.addRuleVersion(structureType, level, percent, effectiveFrom))

        if created:
            logger.info(f"Seeded {len(created)} default commission rules")
        return created

    def listRules(self, structureType: Optional[int] = None) -> List[CommissionRule]:
        query = self.session.query(CommissionRule).filter(CommissionRule.planID == self.planId)
        if structureType is not None:
            query = query.filter(CommissionRule.structureType == int(structureType))
        return query.order_by(
            CommissionRule.structureType, CommissionRule.level, CommissionRule.effectiveFrom
        ).all()
