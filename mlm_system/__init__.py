"""
MLM System - multi-level commission engine.
"""

# Services
from mlm_system.services.commission_service import CommissionService
from mlm_system.services.eligibility_service import EligibilityService
from mlm_system.services.network_service import NetworkService
from mlm_system.services.reconciliation_service import ReconciliationService
from mlm_system.services.balance_service import BalanceService

# Configuration
from mlm_system.config.structures import StructureType, NoCommissionReason

# Utilities
from mlm_system.utils.time_machine import timeMachine

__all__ = [
    # Services
    'CommissionService',
    'EligibilityService',
    'NetworkService',
    'ReconciliationService',
    'BalanceService',

    # Config
    'StructureType',
    'NoCommissionReason',

    # Utils
    'timeMachine',
]
