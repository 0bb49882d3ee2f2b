"""
Domain exceptions for the booking ledger.

Each exception carries the HTTP status the API layer maps it to and a
machine-readable code. ExternalAdapterFailure subclasses say whether a retry
with the same inputs is safe.
"""

from typing import Any, Dict, Optional


class BookingLedgerError(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "details": self.details,
        }


class BookingNotFound(BookingLedgerError):
    status_code = 404


class NotChargeable(BookingLedgerError):
    """The gateway does not report the payment as succeeded/processing/authorized."""
    status_code = 422


class PaymentDeclined(BookingLedgerError):
    status_code = 402


class InvalidRefundAmount(BookingLedgerError):
    status_code = 422


class RefundReasonRequired(BookingLedgerError):
    status_code = 422


class BookingAlreadyCancelled(BookingLedgerError):
    status_code = 409


class InvalidStatusTransition(BookingLedgerError):
    status_code = 409


class LedgerConsistencyViolation(BookingLedgerError):
    """Stored or gateway-reported amounts contradict the ledger. Needs a human."""
    status_code = 500


class ExternalAdapterFailure(BookingLedgerError):
    status_code = 502

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        applied_cents: int = 0,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.retryable = retryable
        # Money already moved (and committed) before the failure
        self.applied_cents = applied_cents
        if retryable:
            self.status_code = 503

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.applied_cents:
            data["applied_cents"] = self.applied_cents
        return data


class GatewayError(ExternalAdapterFailure):
    """Payment gateway call failed."""


class SchedulingError(ExternalAdapterFailure):
    """Scheduling service call failed."""


class SideEffectError(ExternalAdapterFailure):
    """Calendar/CRM/email call failed. Never escapes the dispatcher."""


class DuplicateRequest(BookingLedgerError):
    """
    The request was already fulfilled. Not an error for the caller:
    orchestrators catch it and return the prior result.
    """
    status_code = 200

    def __init__(self, message: str, prior_result: Any = None) -> None:
        super().__init__(message)
        self.prior_result = prior_result


class RefundIncomplete(BookingLedgerError):
    """
    An earlier refund on the booking stopped part way. It has to be resumed
    with its request key before any new refund is computed.
    """
    status_code = 409
