"""Error taxonomy shared by the billing engine."""

from typing import Any, Optional


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.correlation_id = correlation_id

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class AccountBusyError(ConflictError):
    """Another process holds the account lease for longer than the wait allows."""
    code = "account_busy"


class ConfigurationError(AppError, RuntimeError):
    """Raised at startup when required configuration is missing or invalid."""
    code = "configuration_error"
    status_code = 500


class ProrationInputError(ValidationError):
    """Negative/invalid days remaining or an unknown plan."""
    code = "proration_input_error"


class StoreWriteError(AppError):
    """Local persistence failed after the provider already accepted the change.

    Represents a divergence between provider-side and local state; callers
    must reconcile the local write, never reverse the provider action.
    """
    code = "store_write_failed"
    status_code = 500

    def __init__(self, message: str, *, operation: Optional[str] = None, pending_fields: Optional[dict] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.pending_fields = pending_fields or {}


class PaymentFailedError(AppError):
    """A payment attempt completed but was not successful.

    Carries the recorded failed transaction so callers can offer a retry path.
    """
    code = "payment_failed"
    status_code = 402

    def __init__(self, message: str, *, transaction: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.transaction = transaction
