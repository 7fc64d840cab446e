from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


@dataclass
class AppError(Exception):
    status_code: int
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = None
    user_action: Optional[str] = None
    payment_captured: bool = False

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def mark_payment_captured(self) -> "AppError":
        self.payment_captured = True
        return self

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details or {},
        }
        if self.retryable is not None:
            payload["retryable"] = self.retryable
        if self.user_action:
            payload["user_action"] = self.user_action
        if self.payment_captured:
            payload["payment_captured"] = True
        return {"error": payload}


class BookingErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    INVALID_INPUT = "invalid_input"
    UNSUPPORTED_CURRENCY = "unsupported_currency"
    AMOUNT_EXCEEDS_LIMIT = "amount_exceeds_limit"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    PROVIDER_ERROR = "provider_error"
    OFFER_INVALID = "offer_invalid"
    OFFER_NOT_FOUND = "offer_not_found"
    OFFER_EXPIRED = "offer_expired"
    PAYMENT_FAILED = "payment_failed"
    ORDER_CREATION_FAILED = "order_creation_failed"
    PRECONDITION_VIOLATION = "precondition_violation"
    BOOKING_ATTEMPT_NOT_FOUND = "booking_attempt_not_found"
    INVALID_BOOKING_STATE = "invalid_booking_state"
    ORDER_CREATION_IN_PROGRESS = "order_creation_in_progress"
    CONCURRENT_MODIFICATION = "booking_concurrency_conflict"
    ORDER_NOT_FOUND = "order_not_found"
    RECONCILIATION_ENTRY_NOT_FOUND = "reconciliation_entry_not_found"
    BOOKING_ABANDONED = "booking_abandoned"


class UserAction(str, Enum):
    FIX_INPUT = "fix_input"
    REDUCE_AMOUNT = "reduce_amount"
    RETRY = "retry"
    SEARCH_AGAIN = "search_again"
    RETRY_WITH_DIFFERENT_PAYMENT_METHOD = "retry_with_different_payment_method"
    RETRY_ORDER = "retry_order"
    CONTACT_SUPPORT = "contact_support"


class ValidationError(AppError):
    """Bad input. Raised before any provider contact; never retried."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        code: str = BookingErrorCode.VALIDATION_ERROR.value,
    ) -> None:
        super().__init__(
            status_code=422,
            code=code,
            message=message,
            details=details,
            retryable=False,
            user_action=UserAction.FIX_INPUT.value,
        )


class InvalidInputError(ValidationError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details, code=BookingErrorCode.INVALID_INPUT.value)


class AmountExceedsLimitError(AppError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            status_code=422,
            code=BookingErrorCode.AMOUNT_EXCEEDS_LIMIT.value,
            message=message,
            details=details,
            retryable=False,
            user_action=UserAction.REDUCE_AMOUNT.value,
        )


class UpstreamUnavailableError(AppError):
    """Timeout, transport failure, 5xx or rate limiting at the provider.

    Safe to retry with the same idempotency key.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            status_code=503,
            code=BookingErrorCode.UPSTREAM_UNAVAILABLE.value,
            message=message,
            details=details,
            retryable=True,
            user_action=UserAction.RETRY.value,
        )


class ProviderError(AppError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            status_code=502,
            code=BookingErrorCode.PROVIDER_ERROR.value,
            message=message,
            details=details,
            retryable=True,
            user_action=UserAction.RETRY.value,
        )


class OfferInvalidError(AppError):
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: int = 409,
        code: str = BookingErrorCode.OFFER_INVALID.value,
    ) -> None:
        super().__init__(
            status_code=status_code,
            code=code,
            message=message,
            details=details,
            retryable=False,
            user_action=UserAction.SEARCH_AGAIN.value,
        )


class OfferNotFoundError(OfferInvalidError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details, status_code=404, code=BookingErrorCode.OFFER_NOT_FOUND.value)


class OfferExpiredError(OfferInvalidError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details, status_code=410, code=BookingErrorCode.OFFER_EXPIRED.value)


class PaymentFailedError(AppError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            status_code=402,
            code=BookingErrorCode.PAYMENT_FAILED.value,
            message=message,
            details=details,
            retryable=False,
            user_action=UserAction.RETRY_WITH_DIFFERENT_PAYMENT_METHOD.value,
        )


class OrderCreationError(AppError):
    """Provider refused to create the order after payment capture."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            status_code=502,
            code=BookingErrorCode.ORDER_CREATION_FAILED.value,
            message=message,
            details=details,
            retryable=True,
            user_action=UserAction.RETRY_ORDER.value,
        )


class PreconditionViolationError(AppError):
    """Internal sequencing bug. Logged, never shown verbatim to users."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            status_code=500,
            code=BookingErrorCode.PRECONDITION_VIOLATION.value,
            message=message,
            details=details,
            retryable=False,
            user_action=UserAction.CONTACT_SUPPORT.value,
        )


class NotFoundError(AppError):
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(status_code=404, code=code, message=message, details=details, retryable=False)


class BookingAttemptNotFoundError(NotFoundError):
    def __init__(self, booking_attempt_id: str) -> None:
        super().__init__(
            BookingErrorCode.BOOKING_ATTEMPT_NOT_FOUND.value,
            "Booking attempt not found",
            {"booking_attempt_id": booking_attempt_id},
        )


class ConcurrentModificationError(AppError):
    """Another request changed the booking attempt in the meantime."""

    def __init__(self, booking_attempt_id: str) -> None:
        super().__init__(
            status_code=409,
            code=BookingErrorCode.CONCURRENT_MODIFICATION.value,
            message="The booking was updated by another request. Please reload and try again.",
            details={"booking_attempt_id": booking_attempt_id},
            retryable=True,
            user_action=UserAction.RETRY.value,
        )


class BookingAbandonedError(AppError):
    def __init__(self, booking_attempt_id: str) -> None:
        super().__init__(
            status_code=409,
            code=BookingErrorCode.BOOKING_ABANDONED.value,
            message="The booking was cancelled.",
            details={"booking_attempt_id": booking_attempt_id},
            retryable=False,
        )


class OrderCreationInProgressError(AppError):
    def __init__(self, booking_attempt_id: str) -> None:
        super().__init__(
            status_code=409,
            code=BookingErrorCode.ORDER_CREATION_IN_PROGRESS.value,
            message="Order creation is already in progress for this booking.",
            details={"booking_attempt_id": booking_attempt_id},
            retryable=True,
            user_action=UserAction.RETRY.value,
            payment_captured=True,
        )


PUBLIC_PRECONDITION_MESSAGE = "Something went wrong while processing your booking. Please contact support."


def error_response(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        }
    }
