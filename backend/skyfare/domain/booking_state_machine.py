from __future__ import annotations

from enum import Enum
from typing import Optional

from skyfare.errors import AppError, BookingErrorCode


class BookingState(str, Enum):
    PRICING = "pricing"
    INTENT_PENDING = "intent_pending"
    AWAITING_ACTION = "awaiting_action"
    CONFIRMING = "confirming"
    VERIFYING_OFFER = "verifying_offer"
    CREATING_ORDER = "creating_order"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    VALIDATION = "validation"
    PROVIDER = "provider"
    PAYMENT = "payment"
    OFFER_INVALID = "offer_invalid"
    ORDER_CREATION = "order_creation"
    ABANDONED = "abandoned"


_ALLOWED_TRANSITIONS = {
    BookingState.PRICING: {BookingState.INTENT_PENDING, BookingState.FAILED},
    # intent_pending -> intent_pending is an in-place reprice
    BookingState.INTENT_PENDING: {BookingState.INTENT_PENDING, BookingState.CONFIRMING, BookingState.FAILED},
    # confirming -> confirming re-submits after an upstream timeout
    BookingState.CONFIRMING: {
        BookingState.CONFIRMING,
        BookingState.AWAITING_ACTION,
        BookingState.VERIFYING_OFFER,
        BookingState.FAILED,
    },
    BookingState.AWAITING_ACTION: {BookingState.CONFIRMING, BookingState.FAILED},
    BookingState.VERIFYING_OFFER: {BookingState.VERIFYING_OFFER, BookingState.CREATING_ORDER, BookingState.FAILED},
    # creating_order -> verifying_offer re-checks the offer when an order retry starts
    BookingState.CREATING_ORDER: {BookingState.COMPLETED, BookingState.VERIFYING_OFFER, BookingState.FAILED},
    BookingState.COMPLETED: set(),
    BookingState.FAILED: set(),
}

# Failed attempts that the caller may retry under the same attempt id.
_RETRY_FROM_FAILED = {
    FailureReason.PROVIDER: BookingState.INTENT_PENDING,
    FailureReason.PAYMENT: BookingState.CONFIRMING,
    FailureReason.ORDER_CREATION: BookingState.VERIFYING_OFFER,
}


class BookingStateTransitionError(AppError):
    """Raised when an invalid booking state transition is requested."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            status_code=409,
            code=BookingErrorCode.INVALID_BOOKING_STATE.value,
            message=f"Invalid booking state transition: {current} -> {target}",
            details={"current": current, "target": target},
            retryable=False,
        )
        self.current = current
        self.target = target


def retry_target(reason: Optional[str]) -> Optional[BookingState]:
    if reason is None:
        return None
    try:
        return _RETRY_FROM_FAILED.get(FailureReason(reason))
    except ValueError:
        return None


def validate_transition(current: str, target: str, *, failure_reason: Optional[str] = None) -> None:
    """Validate that a transition from current -> target is allowed.

    Leaving `failed` is only possible towards the retry entry point of the
    recorded failure reason.

    Raises BookingStateTransitionError if not allowed.
    """

    cur = BookingState(current)
    tgt = BookingState(target)
    if cur == BookingState.FAILED:
        if retry_target(failure_reason) == tgt:
            return
        raise BookingStateTransitionError(current=cur.value, target=tgt.value)

    if tgt not in _ALLOWED_TRANSITIONS.get(cur, set()):
        raise BookingStateTransitionError(current=cur.value, target=tgt.value)
