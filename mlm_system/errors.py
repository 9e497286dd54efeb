# mlm_system/errors.py
"""
Error taxonomy for the commission engine.

Every error carries a stable string code that callers translate into
localized messages.
"""
from typing import Optional, Dict, Any


class MLMError(Exception):
    """Base class for engine errors."""

    code = "UNKNOWN_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None, **details):
        self.code = code or self.code
        self.details: Dict[str, Any] = details
        super().__init__(message or self.code)

    def to_result(self) -> Dict[str, Any]:
        """Failure payload in the shape public operations return."""
        result = {"success": False, "error": self.code}
        if self.details:
            result.update(self.details)
        return result


class ValidationError(MLMError):
    """Bad input: self-referral, invalid code, cyclic parent, bad amount."""
    code = "VALIDATION_ERROR"


class CycleDetected(ValidationError):
    """Sponsor relation loops back on itself."""
    code = "CYCLE_DETECTED"


class Unauthorized(MLMError):
    """Caller lacks admin rights."""
    code = "UNAUTHORIZED"


class InsufficientBalance(MLMError):
    """Withdrawal larger than the available balance."""
    code = "INSUFFICIENT_BALANCE"


class EligibilityError(MLMError):
    """
    A commission is not payable to an ancestor.

    Not a fault: the evaluator turns it into a NoCommissionReason tag.
    """
    code = "NOT_ELIGIBLE"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or reason)


class IntegrityViolation(MLMError):
    """Ledger state that must not exist, or an attempt to rewrite the ledger."""
    code = "INTEGRITY_VIOLATION"


class ConcurrencyConflict(MLMError):
    """Ledger insert lost a race on the idempotency key. Callers treat it as a no-op."""
    code = "CONCURRENCY_CONFLICT"
