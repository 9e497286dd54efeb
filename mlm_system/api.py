# mlm_system/api.py
"""
Public operations of the commission engine.

Each function opens its own session (or uses the one passed as
``session=``), runs one service call and converts engine errors into
``{"success": False, "error": CODE}`` results for the caller.
"""
import logging
import functools
from datetime import datetime
from typing import Callable, Optional, List, Dict, Union

from core.db import get_session
from mlm_system.config.structures import StructureType
from mlm_system.errors import MLMError
from mlm_system.services.activation_service import ActivationService
from mlm_system.services.balance_service import BalanceService
from mlm_system.services.commission_service import CommissionService
from mlm_system.services.integrity_service import IntegrityService
from mlm_system.services.network_service import NetworkService
from mlm_system.services.reconciliation_service import ReconciliationService
from mlm_system.services.sponsor_service import SponsorService
from mlm_system.services.structure_stats_service import StructureStatsService

logger = logging.getLogger(__name__)

Result = Union[Dict, List[Dict]]


def with_session(func: Callable) -> Callable:
    """
    Decorator injecting a database session as the first argument.

    A session passed by the caller is used as is and left open.
    Otherwise a new one is opened, committed on success, rolled back on
    error and closed. MLMError is returned as a failure dict; anything
    else propagates.
    """

    @functools.wraps(func)
    def wrapper(*args, session=None, **kwargs):
        owned = session is None
        if owned:
            session = get_session()

        try:
            result = func(session, *args, **kwargs)
            if owned:
                session.commit()
            return result

        except MLMError as e:
            session.rollback()
            logger.info(f"{func.__name__} rejected: {e.code} ({e})")
            return e.to_result()

        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}", exc_info=True)
            session.rollback()
            raise

        finally:
            if owned:
                session.close()

    return wrapper


# ============================================================================
# NETWORK
# ============================================================================

@with_session
def resolve_network(session, root_user_id: int, max_levels: Optional[int] = None,
                    structure_type: int = StructureType.SUBSCRIPTION) -> Result:
    return NetworkService(session).resolveNetwork(root_user_id, max_levels, structure_type)


@with_session
def commission_structure_stats(session, user_id: int, structure_type: int = StructureType.SUBSCRIPTION,
                               start: Optional[datetime] = None, end: Optional[datetime] = None) -> Result:
    return StructureStatsService(session).commissionStructureStats(user_id, structure_type, start, end)


@with_session
def get_sponsor_info(session, user_id: int, structure_type: int = StructureType.SUBSCRIPTION) -> Optional[Dict]:
    return SponsorService(session).getSponsorInfo(user_id, structure_type)


# ============================================================================
# SOURCE EVENTS
# ============================================================================

@with_session
def record_subscription_payment(session, member_id: int, amount: int, paid_at: Optional[datetime] = None,
                                months: int = 1, external_ref: Optional[str] = None) -> Dict:
    return CommissionService(session).recordSubscriptionPayment(
        member_id, amount, paid_at, months=months, externalRef=external_ref
    )


@with_session
def record_order(session, member_id: int, amount: int, ordered_at: Optional[datetime] = None,
                 external_ref: Optional[str] = None) -> Dict:
    return CommissionService(session).recordOrder(member_id, amount, ordered_at, externalRef=external_ref)


# ============================================================================
# SPONSORS
# ============================================================================

@with_session
def bind_referral(session, user_id: int, referral_code: str) -> Dict:
    bindings = SponsorService(session).bindReferral(user_id, referral_code)
    return {"success": True, "sponsor_id": bindings[0].sponsorID}


@with_session
def admin_bind_sponsor(session, admin_id: int, user_id: int, referral_code: str) -> Dict:
    bindings = SponsorService(session).adminBindSponsor(admin_id, user_id, referral_code)
    return {"success": True, "sponsor_id": bindings[0].sponsorID}


@with_session
def admin_override_sponsor(session, admin_id: int, user_id: int, referral_code: str,
                           structure_type: int) -> Dict:
    binding = SponsorService(session).adminOverrideSponsor(admin_id, user_id, referral_code, structure_type)
    return {"success": True, "sponsor_id": binding.sponsorID, "sequence": binding.sequence}


# ============================================================================
# AUDIT / BACKFILL
# ============================================================================

@with_session
def audit_user_commissions(session, admin_id: int, user_id: int,
                           structure_type: int = StructureType.SUBSCRIPTION,
                           max_levels: Optional[int] = None) -> Result:
    return ReconciliationService(session).auditUserCommissions(admin_id, user_id, structure_type, max_levels)


@with_session
def backfill_commissions(session, admin_id: int, dry_run: bool = True, target: Optional[int] = None,
                         structure_type: Optional[int] = None, start: Optional[datetime] = None,
                         end: Optional[datetime] = None) -> Dict:
    return ReconciliationService(session).backfillCommissions(
        admin_id, dryRun=dry_run, target=target, structureType=structure_type, start=start, end=end
    )


@with_session
def get_sponsors_with_missing_commissions(session, admin_id: int) -> Result:
    return ReconciliationService(session).getSponsorsWithMissingCommissions(admin_id)


@with_session
def find_integrity_violations(session, structure_type: Optional[int] = None) -> List[Dict]:
    return [v.toDict() for v in IntegrityService(session).findViolations(structure_type)]


@with_session
def fix_integrity_violations(session, admin_id: int, dry_run: bool = True,
                             kinds: Optional[List[str]] = None) -> Dict:
    return IntegrityService(session).fixViolations(admin_id, dryRun=dry_run, kinds=kinds)


@with_session
def monthly_activation_report(session, year: int, month: int, status: str = "all") -> List[Dict]:
    return ActivationService(session).monthlyActivationReport(year, month, status)


# ============================================================================
# BALANCES
# ============================================================================

@with_session
def get_user_balance(session, user_id: int) -> Dict:
    return BalanceService(session).getUserBalance(user_id)


@with_session
def get_all_user_balances(session, admin_id: int) -> Result:
    return BalanceService(session).getAllUserBalances(admin_id)


@with_session
def create_withdrawal(session, user_id: int, amount: int, method: Optional[str] = None) -> Dict:
    withdrawal = BalanceService(session).createWithdrawal(user_id, amount, method)
    return {
        "success": True,
        "withdrawal_id": withdrawal.withdrawalID,
        "amount": withdrawal.amount,
        "fee": withdrawal.fee,
        "status": withdrawal.status,
    }


@with_session
def update_withdrawal_status(session, admin_id: int, withdrawal_id: int, status: str) -> Dict:
    withdrawal = BalanceService(session).updateWithdrawalStatus(admin_id, withdrawal_id, status)
    return {"success": True, "withdrawal_id": withdrawal.withdrawalID, "status": withdrawal.status}


@with_session
def adjust_balance(session, admin_id: int, user_id: int, amount: int, reason: str) -> Dict:
    adjustment = BalanceService(session).adjustBalance(admin_id, user_id, amount, reason)
    return {"success": True, "adjustment_id": adjustment.adjustmentID, "amount": adjustment.amount}
