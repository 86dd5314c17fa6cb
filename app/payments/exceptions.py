"""
Payment & Enrollment Exceptions

Every failure the reconciliation core can report. Routers translate these into
HTTP responses; the webhook route relies on the status code to decide whether
the gateway should redeliver.
"""

from typing import Any, Dict, Optional


class PaymentError(Exception):
    """
    Base class for reconciliation failures.

    Attributes:
        message: Human-readable reason, returned to the caller
        status_code: HTTP status the routers answer with
        error_code: Stable machine-readable identifier
        details: Extra context for logs and responses
    """

    status_code = 400
    error_code = "payment_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "error_code": self.error_code}
        if self.details:
            body["details"] = self.details
        return body


class SignatureVerificationFailed(PaymentError):
    """Inbound gateway payload failed authentication. Nothing may be written."""
    status_code = 400
    error_code = "invalid_signature"


class BusinessValidationError(PaymentError):
    """Caller asked for something the current state does not allow"""
    status_code = 400
    error_code = "rejected"


class AlreadyEnrolled(BusinessValidationError):
    status_code = 409
    error_code = "already_enrolled"


class DuplicatePendingRequest(BusinessValidationError):
    status_code = 409
    error_code = "duplicate_pending"


class CourseNotPayable(BusinessValidationError):
    error_code = "course_not_payable"


class InvalidStateTransition(BusinessValidationError):
    status_code = 409
    error_code = "invalid_state"


class NotFound(PaymentError):
    status_code = 404
    error_code = "not_found"


class DataIntegrityError(PaymentError):
    """Referenced course or user vanished mid-commit. Fatal, never retried in-process."""
    status_code = 500
    error_code = "data_integrity"


class GatewayError(PaymentError):
    """Payment gateway API call failed or answered with garbage"""
    status_code = 502
    error_code = "gateway_error"
