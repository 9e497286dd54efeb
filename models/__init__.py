"""
Database models for the commission engine.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Membership
from models.member import Member
from models.sponsor_binding import SponsorBinding
from models.subscription_period import SubscriptionPeriod

# Commissions
from models.commission_rule import CommissionRule
from models.source_event import SourceEvent, EventType
from models.commission_entry import CommissionEntry, EntryStatus, EntryKind
from models.no_commission_record import NoCommissionRecord

# Money out / manual corrections
from models.withdrawal import Withdrawal, WithdrawalStatus
from models.balance_adjustment import BalanceAdjustment

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Membership
    'Member',
    'SponsorBinding',
    'SubscriptionPeriod',

    # Commissions
    'CommissionRule',
    'SourceEvent',
    'EventType',
    'CommissionEntry',
    'EntryStatus',
    'EntryKind',
    'NoCommissionRecord',

    # Money out
    'Withdrawal',
    'WithdrawalStatus',
    'BalanceAdjustment',

    # Listeners
    'register_all_listeners',
]
