"""
Error taxonomy for the ledger and generation workflows.

Every error carries:
- code:        stable machine code returned to clients
- category:    written into a failed generation's error_detail
- http_status: status used by the Flask error handler
- retryable:   whether repeating the same request may succeed

Webhook handlers translate these into retryable (5xx) or non-retryable
(4xx/200) responses so provider redelivery behaves correctly.
"""

import builtins
from typing import Any, Dict, Optional


class Forge3DError(Exception):
    """Base class for all domain errors."""
    code = "INTERNAL_ERROR"
    category = "internal"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_detail(self) -> Dict[str, Any]:
        """Structured error_detail stored on a failed generation."""
        detail = {"category": self.category, "message": self.message}
        if self.code != Forge3DError.code:
            detail["code"] = self.code
        return detail


class ValidationError(Forge3DError):
    """Bad input. Never retried."""
    code = "VALIDATION_ERROR"
    category = "validation"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None, **details: Any):
        super().__init__(message, **details)
        self.field = field

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        if self.field:
            detail["field"] = self.field
        return detail


class InsufficientCredits(Forge3DError):
    """Balance is lower than the amount being debited."""
    code = "INSUFFICIENT_CREDITS"
    category = "insufficient_credits"
    http_status = 402

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits: need {required}, have {available}")
        self.required = required
        self.available = available


class AuthenticationError(Forge3DError):
    """Bad signature, token or admin key."""
    code = "UNAUTHORIZED"
    category = "authentication"
    http_status = 401


class PermissionDenied(Forge3DError):
    code = "FORBIDDEN"
    category = "authentication"
    http_status = 403


class NotFoundError(Forge3DError):
    code = "NOT_FOUND"
    category = "not_found"
    http_status = 404


class TransientProviderError(Forge3DError):
    """Network failure, 429 or 5xx from an external provider."""
    code = "PROVIDER_UNAVAILABLE"
    category = "transient"
    http_status = 502
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None, **details: Any):
        super().__init__(message, **details)
        self.status_code = status_code


class ProviderRequestError(Forge3DError):
    """Provider rejected the request (4xx other than 408/429) or returned garbage."""
    code = "PROVIDER_ERROR"
    category = "provider"
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None, **details: Any):
        super().__init__(message, **details)
        self.status_code = status_code


class OperationTimeout(Forge3DError, builtins.TimeoutError):
    """A step or a whole generation exceeded its wall-clock budget."""
    code = "TIMEOUT"
    category = "timeout"
    http_status = 504


class LedgerConflict(Forge3DError):
    """Account contention outlasted the retry budget. No partial debit happened."""
    code = "LEDGER_CONFLICT"
    category = "transient"
    http_status = 503
    retryable = True


class StorageInconsistency(Forge3DError):
    """A stored invariant is broken (e.g. a generation whose project is missing)."""
    code = "STORAGE_INCONSISTENCY"
    category = "storage"
    http_status = 500


class StoreConflict(Exception):
    """Low-level transaction conflict raised by a store; the ledger retries it."""
    pass


def error_detail_for(exc: BaseException) -> Dict[str, Any]:
    """Map any exception to the error_detail shape stored on generations."""
    if isinstance(exc, Forge3DError):
        return exc.to_detail()
    return {"category": "internal", "message": str(exc) or type(exc).__name__}
