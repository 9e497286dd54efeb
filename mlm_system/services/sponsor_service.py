# mlm_system/services/sponsor_service.py
"""
Sponsor service - registration and sponsor binding.

Bindings are appended to the SponsorBinding log. A first bind writes
sequence 1 per structure, so two concurrent binds of the same member
collide on uq_binding_sequence and the loser gets ALREADY_HAS_SPONSOR.
"""
import secrets
import string
from typing import Dict, List, Optional, Sequence
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

from models.member import Member
from models.sponsor_binding import SponsorBinding
from mlm_system.config.structures import StructureType
from mlm_system.errors import ValidationError, CycleDetected
from mlm_system.utils.chain_walker import ChainWalker
from mlm_system.utils.permissions import require_admin
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

ALL_STRUCTURES = (StructureType.SUBSCRIPTION, StructureType.PURCHASE)
REFERRAL_CODE_LENGTH = 8


def generate_referral_code() -> str:
    """
    Generate an 8-character referral code.

    Returns:
        Random uppercase alphanumeric code
    """
    alphabet = string.ascii_uppercase + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(REFERRAL_CODE_LENGTH))


class SponsorService:
    """Service for member registration and sponsor relations."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)

    # ============================================================
    # REGISTRATION
    # ============================================================

    def registerMember(
            self,
            fullName: Optional[str] = None,
            email: Optional[str] = None,
            sponsorCode: Optional[str] = None,
            isAdmin: bool = False,
            isMarketingFreeAccess: bool = False
    ) -> Member:
        """Create a member with a unique referral code, optionally binding a sponsor."""
        code = generate_referral_code()
        while self._findByCode(code) is not None:
            code = generate_referral_code()

        member = Member(
            fullName=fullName,
            email=email,
            referralCode=code,
            isAdmin=isAdmin,
            isMarketingFreeAccess=isMarketingFreeAccess
        )
        self.session.add(member)
        self.session.flush()
        logger.info(f"Registered member {member.memberID} with code {code}")

        if sponsorCode:
            self.bindReferral(member.memberID, sponsorCode)
        else:
            self.session.commit()

        return member

    # ============================================================
    # BINDING
    # ============================================================

    def bindReferral(
            self,
            userId: int,
            referralCode: str,
            structures: Sequence[StructureType] = ALL_STRUCTURES
    ) -> List[SponsorBinding]:
        """
        Bind a member to the owner of a referral code.

        Raises:
            ValidationError: MEMBER_NOT_FOUND, SPONSOR_NOT_FOUND, SELF_REFERRAL,
                ALREADY_HAS_SPONSOR, USER_IS_SPONSOR, SPONSOR_REGISTERED_LATER
            CycleDetected: CYCLIC_SPONSOR
        """
        return self._bind(userId, referralCode, structures, boundBy=None)

    def adminBindSponsor(self, adminId: int, userId: int, referralCode: str) -> List[SponsorBinding]:
        """
        Bind a sponsor on behalf of a member, with the same checks as
        self-service binding.

        Raises:
            Unauthorized: adminId is not an admin
        """
        require_admin(self.session, adminId)
        return self._bind(userId, referralCode, ALL_STRUCTURES, boundBy=adminId)

    def adminOverrideSponsor(
            self,
            adminId: int,
            userId: int,
            referralCode: str,
            structureType
    ) -> SponsorBinding:
        """
        Move a member under a new sponsor in one structure.

        The override is appended with the next sequence; events before it
        keep resolving to the old sponsor.

        Raises:
            Unauthorized: adminId is not an admin
            ValidationError: MEMBER_NOT_FOUND, SPONSOR_NOT_FOUND, SELF_REFERRAL,
                SAME_SPONSOR
            CycleDetected: CYCLIC_SPONSOR
        """
        require_admin(self.session, adminId)
        structureType = StructureType(int(structureType))
        user, sponsor = self._loadPair(userId, referralCode)

        if self.walker.get_sponsor_id(user.memberID, structureType) == sponsor.memberID:
            raise ValidationError(
                f"Member {userId} already sponsored by {sponsor.memberID}",
                code="SAME_SPONSOR"
            )

        if self.walker.would_create_cycle(user.memberID, sponsor.memberID, structureType):
            logger.warning(
                f"Override rejected: {sponsor.memberID} is in the S{int(structureType)} "
                f"downline of {userId}"
            )
            raise CycleDetected(
                f"Binding {userId} under {sponsor.memberID} closes a loop",
                code="CYCLIC_SPONSOR"
            )

        binding = SponsorBinding(
            memberID=user.memberID,
            sponsorID=sponsor.memberID,
            structureType=int(structureType),
            sequence=self.walker.latest_sequence(user.memberID, structureType) + 1,
            boundAt=timeMachine.now,
            boundBy=adminId,
            notes="admin override"
        )
        try:
            with self.session.begin_nested():
                self.session.add(binding)
        except IntegrityError:
            raise ValidationError(
                f"Concurrent override of member {userId}", code="ALREADY_HAS_SPONSOR"
            )

        self.session.commit()
        logger.info(
            f"Admin {adminId} moved member {userId} under {sponsor.memberID} "
            f"in S{int(structureType)} (seq {binding.sequence})"
        )
        return binding

    def getSponsorInfo(self, userId: int, structureType=StructureType.SUBSCRIPTION) -> Optional[Dict]:
        sponsorId = self.walker.get_sponsor_id(userId, structureType)
        if sponsorId is None:
            return None

        sponsor = self.session.get(Member, sponsorId)
        binding = self.session.query(SponsorBinding).filter(
            SponsorBinding.memberID == userId,
            SponsorBinding.structureType == int(structureType),
            SponsorBinding.boundAt <= timeMachine.now
        ).order_by(SponsorBinding.sequence.desc()).first()

        return {
            "sponsor_id": sponsorId,
            "full_name": sponsor.fullName if sponsor else None,
            "email": sponsor.email if sponsor else None,
            "referral_code": sponsor.referralCode if sponsor else None,
            "structure_type": int(structureType),
            "bound_at": binding.boundAt if binding else None,
        }

    # ============================================================
    # INTERNAL
    # ============================================================

    def _findByCode(self, referralCode: str) -> Optional[Member]:
        return self.session.query(Member).filter_by(referralCode=referralCode).first()

    def _loadPair(self, userId: int, referralCode: str):
        user = self.session.get(Member, userId)
        if user is None:
            raise ValidationError(f"Member {userId} not found", code="MEMBER_NOT_FOUND")

        sponsor = self._findByCode((referralCode or "").strip().upper())
        if sponsor is None:
            raise ValidationError(f"No member with code {referralCode!r}", code="SPONSOR_NOT_FOUND")

        if sponsor.memberID == user.memberID:
            raise ValidationError(f"Member {userId} used own code", code="SELF_REFERRAL")

        return user, sponsor

    def _bind(
            self,
            userId: int,
            referralCode: str,
            structures: Sequence[StructureType],
            boundBy: Optional[int]
    ) -> List[SponsorBinding]:
        user, sponsor = self._loadPair(userId, referralCode)

        for structureType in structures:
            if self.walker.has_any_binding(user.memberID, structureType):
                raise ValidationError(f"Member {userId} already has a sponsor", code="ALREADY_HAS_SPONSOR")

        hasReferrals = self.session.query(SponsorBinding.bindingID).filter(
            SponsorBinding.sponsorID == user.memberID
        ).first() is not None
        if hasReferrals:
            raise ValidationError(f"Member {userId} already sponsors others", code="USER_IS_SPONSOR")

        if sponsor.createdAt and user.createdAt and sponsor.createdAt > user.createdAt:
            raise ValidationError(
                f"Sponsor {sponsor.memberID} registered after member {userId}",
                code="SPONSOR_REGISTERED_LATER"
            )

        for structureType in structures:
            if self.walker.would_create_cycle(user.memberID, sponsor.memberID, structureType):
                raise CycleDetected(
                    f"Binding {userId} under {sponsor.memberID} closes a loop",
                    code="CYCLIC_SPONSOR"
                )

        now = timeMachine.now
        bindings = [
            SponsorBinding(
                memberID=user.memberID,
                sponsorID=sponsor.memberID,
                structureType=int(structureType),
                sequence=1,
                boundAt=now,
                boundBy=boundBy
            )
            for structureType in structures
        ]

        try:
            with self.session.begin_nested():
                self.session.add_all(bindings)
        except IntegrityError:
            logger.warning(f"Concurrent first bind of member {userId} lost")
            raise ValidationError(f"Member {userId} already has a sponsor", code="ALREADY_HAS_SPONSOR")

        self.session.commit()
        logger.info(
            f"Member {userId} bound to sponsor {sponsor.memberID} "
            f"in {[int(s) for s in structures]}" + (f" by admin {boundBy}" if boundBy else "")
        )
        return bindings
