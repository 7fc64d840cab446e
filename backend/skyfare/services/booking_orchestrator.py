from __future__ import annotations

"""Booking payment orchestrator.

Drives one booking attempt through

    pricing -> intent_pending -> confirming (<-> awaiting_action)
            -> verifying_offer -> creating_order -> completed

with `failed(reason)` reachable from every non-terminal state. Each step is
persisted before the next remote call so a crashed or timed out request can be
retried under the same attempt id.

Outcomes the attempt records (including failures) are returned as a
BookingResult. Errors that leave the attempt untouched (upstream unavailable,
concurrent modification, invalid state) are raised.

Once the payment succeeded every failure carries payment_captured=True and
opens a reconciliation entry keyed by the payment intent id.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from skyfare import config
from skyfare.domain.booking_state_machine import BookingState, BookingStateTransitionError, FailureReason
from skyfare.domain.money import Money
from skyfare.errors import (
    AmountExceedsLimitError,
    AppError,
    BookingAbandonedError,
    BookingErrorCode,
    ConcurrentModificationError,
    InvalidInputError,
    OfferInvalidError,
    OrderCreationInProgressError,
    PUBLIC_PRECONDITION_MESSAGE,
    PaymentFailedError,
    PreconditionViolationError,
    ProviderError,
    UpstreamUnavailableError,
    ValidationError,
)
from skyfare.repositories.booking_attempt_repository import BookingAttemptRepository
from skyfare.repositories.order_repository import OrderRepository
from skyfare.repositories.reconciliation_repository import ReconciliationRepository, Resolution
from skyfare.services.amount_guard import AmountGuard
from skyfare.services.ancillary_pricing import resolve_selections
from skyfare.services.offer_verifier import OfferSnapshot, OfferVerifier
from skyfare.services.order_creator import OrderCreator
from skyfare.services.passengers import format_passengers
from skyfare.services.payment_confirmer import ConfirmationStatus, PaymentConfirmer
from skyfare.services.payment_intents import PaymentIntent, PaymentIntentManager, PaymentIntentStatus
from skyfare.services.pricing_engine import AncillarySelection, PricingBreakdown, PricingEngine
from skyfare.utils import new_id

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    success: bool
    status: str
    booking_attempt_id: str
    payment_captured: bool
    booking_reference: Optional[str] = None
    order: Optional[Dict[str, Any]] = None
    requires_action: bool = False
    client_secret: Optional[str] = None
    payment_intent_id: Optional[str] = None
    pricing: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    http_status: int = 200

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "booking_attempt_id": self.booking_attempt_id,
            "payment_captured": self.payment_captured,
        }
        optional = {
            "booking_reference": self.booking_reference,
            "order": self.order,
            "requires_action": self.requires_action or None,
            "client_secret": self.client_secret,
            "payment_intent_id": self.payment_intent_id,
            "pricing": self.pricing,
            "error": self.error,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out


def present(attempt: Mapping[str, Any], error: Optional[AppError] = None) -> BookingResult:
    state = attempt["state"]
    intent = attempt.get("payment_intent") or {}
    awaiting = state == BookingState.AWAITING_ACTION.value

    error_body: Optional[Dict[str, Any]] = None
    if error is not None:
        error_body = error.to_dict()["error"]
    elif attempt.get("failure"):
        failure = attempt["failure"]
        message = failure["message"]
        if failure["code"] == BookingErrorCode.PRECONDITION_VIOLATION.value:
            message = PUBLIC_PRECONDITION_MESSAGE
        error_body = {"code": failure["code"], "message": message}
    if error_body is not None and attempt.get("failure"):
        error_body["reason"] = attempt["failure"]["reason"]

    order = attempt.get("order")
    return BookingResult(
        success=state != BookingState.FAILED.value,
        status=state,
        booking_attempt_id=attempt["_id"],
        payment_captured=bool(attempt.get("payment_captured")),
        booking_reference=(order or {}).get("booking_reference"),
        order=order,
        requires_action=awaiting,
        client_secret=intent.get("client_secret") if awaiting else None,
        payment_intent_id=attempt.get("payment_intent_id"),
        pricing=attempt.get("pricing"),
        error=error_body,
        http_status=error.status_code if error is not None else 200,
    )


class BookingOrchestrator:
    def __init__(
        self,
        *,
        attempts: BookingAttemptRepository,
        orders: OrderRepository,
        reconciliation: ReconciliationRepository,
        pricing: PricingEngine,
        guard: AmountGuard,
        verifier: OfferVerifier,
        intents: PaymentIntentManager,
        confirmer: PaymentConfirmer,
        order_creator: OrderCreator,
        claim_ttl_seconds: int = config.ORDER_CLAIM_TTL_SECONDS,
    ) -> None:
        self.attempts = attempts
        self.orders = orders
        self.reconciliation = reconciliation
        self.pricing = pricing
        self.guard = guard
        self.verifier = verifier
        self.intents = intents
        self.confirmer = confirmer
        self.order_creator = order_creator
        self.claim_ttl_seconds = claim_ttl_seconds

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(
        self,
        *,
        offer_id: str,
        base: Money,
        passengers: Sequence[Mapping[str, Any]],
        ancillaries: Sequence[Mapping[str, Any]] = (),
        booking_attempt_id: Optional[str] = None,
    ) -> BookingResult:
        """Price lock: price locally, then verify the offer live and open the payment intent."""

        attempt_id = booking_attempt_id or new_id("ba")
        existing = await self.attempts.get(attempt_id)
        if existing is not None:
            return await self._resume_start(existing)

        attempt = await self.attempts.insert(
            {
                "_id": attempt_id,
                "offer_id": offer_id,
                "state": BookingState.PRICING.value,
                "currency": base.currency,
                "passengers": [dict(p) for p in passengers],
                "passenger_count": len(passengers),
                "requested_ancillaries": [dict(a) for a in ancillaries],
                "ancillaries": [],
                "pricing": None,
                "payment_intent_id": None,
                "payment_intent": None,
                "payment_captured": False,
                "failure": None,
                "order": None,
                "order_claim": None,
            }
        )
        if attempt["state"] != BookingState.PRICING.value:
            return present(attempt)

        try:
            format_passengers(passengers)
            selections = [AncillarySelection.from_dict(a) for a in ancillaries]
            breakdown = self.pricing.compute(base, len(passengers), selections)
            self.guard.check(breakdown.total)
        except (ValidationError, AmountExceedsLimitError) as exc:
            return await self._fail(attempt, FailureReason.VALIDATION, exc)

        attempt = await self.attempts.transition(
            attempt,
            BookingState.INTENT_PENDING,
            set_fields={"pricing": breakdown.to_dict()},
        )
        return await self._open_intent(attempt, attempt["requested_ancillaries"], validation_fails_attempt=True)

    async def update_ancillaries(self, booking_attempt_id: str, ancillaries: Sequence[Mapping[str, Any]]) -> BookingResult:
        """Reprice before confirmation. The existing payment intent is updated in place."""

        attempt = await self.attempts.get_or_404(booking_attempt_id)
        if attempt["state"] != BookingState.INTENT_PENDING.value:
            raise BookingStateTransitionError(current=attempt["state"], target=BookingState.INTENT_PENDING.value)
        return await self._open_intent(attempt, [dict(a) for a in ancillaries], validation_fails_attempt=False)

    async def confirm(
        self,
        booking_attempt_id: str,
        payment_method: Optional[Dict[str, Any]] = None,
    ) -> BookingResult:
        attempt = await self.attempts.get_or_404(booking_attempt_id)
        state = attempt["state"]
        if state == BookingState.COMPLETED.value:
            return present(attempt)
        failure = attempt.get("failure") or {}
        retrying_payment = state == BookingState.FAILED.value and failure.get("reason") == FailureReason.PAYMENT.value
        if state not in (BookingState.INTENT_PENDING.value, BookingState.CONFIRMING.value) and not retrying_payment:
            raise BookingStateTransitionError(current=state, target=BookingState.CONFIRMING.value)
        if not attempt.get("payment_intent_id"):
            raise PreconditionViolationError(
                "Confirmation requested without a payment intent",
                {"booking_attempt_id": booking_attempt_id},
            )

        attempt = await self.attempts.transition(attempt, BookingState.CONFIRMING)
        return await self._confirm(attempt, payment_method)

    async def resume(self, booking_attempt_id: str, payment_intent_id: str) -> BookingResult:
        """Continue after the customer completed the payment challenge. Never re-prices."""

        attempt = await self.attempts.get_or_404(booking_attempt_id)
        if attempt.get("payment_intent_id") != payment_intent_id:
            raise InvalidInputError(
                "Payment intent does not belong to this booking",
                {"booking_attempt_id": booking_attempt_id, "payment_intent_id": payment_intent_id},
            )
        state = attempt["state"]
        if state == BookingState.COMPLETED.value:
            return present(attempt)
        if state not in (BookingState.AWAITING_ACTION.value, BookingState.CONFIRMING.value):
            raise BookingStateTransitionError(current=state, target=BookingState.CONFIRMING.value)

        attempt = await self.attempts.transition(attempt, BookingState.CONFIRMING, note="resume")
        return await self._confirm(attempt, None)

    async def complete_order(self, booking_attempt_id: str) -> BookingResult:
        """Create the order for a paid attempt, or retry it after failed(order_creation)."""

        attempt = await self.attempts.get_or_404(booking_attempt_id)
        state = attempt["state"]
        if state == BookingState.COMPLETED.value:
            return present(attempt)
        failure = attempt.get("failure") or {}
        retrying = state == BookingState.FAILED.value and failure.get("reason") == FailureReason.ORDER_CREATION.value
        if state not in (BookingState.VERIFYING_OFFER.value, BookingState.CREATING_ORDER.value) and not retrying:
            raise BookingStateTransitionError(current=state, target=BookingState.VERIFYING_OFFER.value)
        return await self._complete_order(booking_attempt_id)

    async def abandon(self, booking_attempt_id: str) -> BookingResult:
        """Cancel the attempt.

        Refused while a payment confirmation may be in flight (`confirming`).
        After capture the order claim is taken first, so an order request in
        flight makes this fail with order_creation_in_progress.
        """

        attempt = await self.attempts.get_or_404(booking_attempt_id)
        state = attempt["state"]
        if state == BookingState.FAILED.value:
            return present(attempt)
        if state in (BookingState.COMPLETED.value, BookingState.CONFIRMING.value):
            raise BookingStateTransitionError(current=state, target=BookingState.FAILED.value)
        if state not in (BookingState.VERIFYING_OFFER.value, BookingState.CREATING_ORDER.value):
            return present(await self._abandon(attempt))

        token = new_id("claim")
        claimed = await self.attempts.claim_order(booking_attempt_id, token, self.claim_ttl_seconds)
        if claimed is None:
            raise OrderCreationInProgressError(booking_attempt_id)
        try:
            if claimed["state"] == BookingState.FAILED.value:
                return present(claimed)
            if claimed["state"] == BookingState.COMPLETED.value:
                raise BookingStateTransitionError(current=claimed["state"], target=BookingState.FAILED.value)
            return present(await self._abandon(claimed))
        finally:
            await self.attempts.release_order_claim(booking_attempt_id, token)

    async def get(self, booking_attempt_id: str) -> BookingResult:
        return present(await self.attempts.get_or_404(booking_attempt_id))

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _resume_start(self, attempt: Dict[str, Any]) -> BookingResult:
        """Repeated start for an existing attempt id."""
        failure = attempt.get("failure") or {}
        if attempt["state"] == BookingState.FAILED.value and failure.get("reason") == FailureReason.PROVIDER.value:
            attempt = await self.attempts.transition(attempt, BookingState.INTENT_PENDING, note="retry")
            return await self._open_intent(attempt, attempt["requested_ancillaries"], validation_fails_attempt=True)
        if attempt["state"] == BookingState.INTENT_PENDING.value and not attempt.get("payment_intent_id"):
            return await self._open_intent(attempt, attempt["requested_ancillaries"], validation_fails_attempt=True)
        return present(attempt)

    async def _price_live(
        self,
        attempt: Mapping[str, Any],
        requested: Sequence[Mapping[str, Any]],
    ) -> Tuple[OfferSnapshot, Tuple[AncillarySelection, ...], PricingBreakdown]:
        snapshot = await self.verifier.verify(attempt["offer_id"])
        if snapshot.passenger_ids and len(snapshot.passenger_ids) != attempt["passenger_count"]:
            raise InvalidInputError(
                "Passenger count does not match the selected offer",
                {"passengers": attempt["passenger_count"], "offer_passengers": len(snapshot.passenger_ids)},
            )
        selections = resolve_selections(snapshot, requested)
        breakdown = self.pricing.compute(snapshot.total, attempt["passenger_count"], selections)
        self.guard.check(breakdown.total)
        return snapshot, selections, breakdown

    async def _open_intent(
        self,
        attempt: Dict[str, Any],
        requested: List[Dict[str, Any]],
        *,
        validation_fails_attempt: bool,
    ) -> BookingResult:
        try:
            snapshot, selections, breakdown = await self._price_live(attempt, requested)
        except OfferInvalidError as exc:
            return await self._fail(attempt, FailureReason.OFFER_INVALID, exc)
        except (ValidationError, AmountExceedsLimitError) as exc:
            if not validation_fails_attempt:
                raise
            return await self._fail(attempt, FailureReason.VALIDATION, exc)
        except ProviderError as exc:
            return await self._fail(attempt, FailureReason.PROVIDER, exc)

        metadata = {**breakdown.metadata_snapshot(), "offer_id": snapshot.id}
        try:
            intent = await self.intents.create_or_update(attempt["_id"], breakdown.total, metadata)
        except ProviderError as exc:
            return await self._fail(attempt, FailureReason.PROVIDER, exc)

        attempt = await self.attempts.transition(
            attempt,
            BookingState.INTENT_PENDING,
            set_fields={
                "requested_ancillaries": requested,
                "ancillaries": [s.to_dict() for s in selections],
                "pricing": breakdown.to_dict(),
                "offer": snapshot.to_dict(),
                "payment_intent_id": intent.id,
                "payment_intent": intent.to_doc(),
            },
            note="priced",
        )
        return present(attempt)

    async def _confirm(self, attempt: Dict[str, Any], payment_method: Optional[Dict[str, Any]]) -> BookingResult:
        intent = PaymentIntent.from_doc(attempt["payment_intent"])
        try:
            outcome = await self.confirmer.confirm(intent.id, payment_method)
        except ProviderError as exc:
            return await self._fail(attempt, FailureReason.PROVIDER, exc)

        if outcome.status == ConfirmationStatus.REQUIRES_ACTION:
            waiting = intent.with_status(PaymentIntentStatus.REQUIRES_ACTION)
            doc = waiting.to_doc()
            doc["client_secret"] = outcome.client_secret or intent.client_secret
            attempt = await self.attempts.transition(
                attempt,
                BookingState.AWAITING_ACTION,
                set_fields={"payment_intent": doc},
            )
            return present(attempt)

        if outcome.status == ConfirmationStatus.FAILED:
            error = PaymentFailedError(
                outcome.message or "Payment was declined",
                {"payment_intent_id": intent.id, "decline_code": outcome.decline_code},
            )
            return await self._fail(attempt, FailureReason.PAYMENT, error)

        succeeded = intent.with_status(PaymentIntentStatus.SUCCEEDED).to_doc()
        try:
            await self.attempts.transition(
                attempt,
                BookingState.VERIFYING_OFFER,
                set_fields={"payment_captured": True, "payment_intent": succeeded},
            )
        except ConcurrentModificationError as exc:
            return await self._recover_capture(attempt["_id"], succeeded, exc)
        logger.info("Payment %s succeeded for attempt %s", intent.id, attempt["_id"])
        return await self._complete_order(attempt["_id"])

    async def _recover_capture(
        self,
        attempt_id: str,
        succeeded: Dict[str, Any],
        conflict: ConcurrentModificationError,
    ) -> BookingResult:
        """The payment succeeded but the attempt changed under us. The capture is stored first."""

        current = await self.attempts.record_capture(attempt_id, succeeded)
        state = current["state"]
        logger.warning("Payment %s succeeded while attempt %s moved to %s", succeeded["id"], attempt_id, state)

        if state == BookingState.FAILED.value:
            await self._flag_reconciliation(current)
            raise conflict.mark_payment_captured()
        if state == BookingState.CONFIRMING.value:
            try:
                await self.attempts.transition(current, BookingState.VERIFYING_OFFER)
            except ConcurrentModificationError as again:
                raise again.mark_payment_captured()
            return await self._complete_order(attempt_id)
        if state in (BookingState.VERIFYING_OFFER.value, BookingState.CREATING_ORDER.value, BookingState.COMPLETED.value):
            return await self._complete_order(attempt_id)
        raise conflict.mark_payment_captured()

    async def _complete_order(self, attempt_id: str) -> BookingResult:
        token = new_id("claim")
        attempt = await self.attempts.claim_order(attempt_id, token, self.claim_ttl_seconds)
        if attempt is None:
            current = await self.attempts.get_or_404(attempt_id)
            if current["state"] == BookingState.COMPLETED.value:
                return present(current)
            raise OrderCreationInProgressError(attempt_id)

        try:
            return await self._verify_and_order(attempt)
        finally:
            await self.attempts.release_order_claim(attempt_id, token)

    async def _verify_and_order(self, attempt: Dict[str, Any]) -> BookingResult:
        state = attempt["state"]
        if state == BookingState.COMPLETED.value:
            return present(attempt)
        if state != BookingState.VERIFYING_OFFER.value:
            attempt = await self.attempts.transition(attempt, BookingState.VERIFYING_OFFER, note="order_retry")

        try:
            snapshot = await self.verifier.verify(attempt["offer_id"])
        except OfferInvalidError as exc:
            return await self._fail(attempt, FailureReason.OFFER_INVALID, exc)
        except (UpstreamUnavailableError, ProviderError) as exc:
            raise exc.mark_payment_captured()

        attempt = await self.attempts.transition(attempt, BookingState.CREATING_ORDER)

        intent = PaymentIntent.from_doc(attempt["payment_intent"])
        metadata = {"booking_attempt_id": attempt["_id"], "payment_intent_id": intent.id}
        selections = [AncillarySelection.from_dict(a) for a in attempt.get("ancillaries") or []]
        try:
            order = await self.order_creator.create(
                attempt["offer_id"],
                attempt["passengers"],
                intent,
                metadata,
                idempotency_key=attempt["_id"],
                offer_passenger_ids=snapshot.passenger_ids,
                services=selections,
            )
        except OfferInvalidError as exc:
            return await self._fail(attempt, FailureReason.OFFER_INVALID, exc)
        except UpstreamUnavailableError as exc:
            raise exc.mark_payment_captured()
        except PreconditionViolationError as exc:
            await self._record_failure(attempt, FailureReason.ORDER_CREATION, exc)
            raise
        except AppError as exc:
            return await self._fail(attempt, FailureReason.ORDER_CREATION, exc)

        order_doc = order.to_dict()
        await self.orders.save(attempt["_id"], order_doc)
        try:
            attempt = await self.attempts.transition(
                attempt,
                BookingState.COMPLETED,
                set_fields={"order": order_doc, "order_id": order.id},
            )
        except ConcurrentModificationError:
            logger.warning("Attempt %s changed while order %s was created, recording the order", attempt["_id"], order.id)
            attempt = await self.attempts.record_order(attempt["_id"], order_doc)
        if await self.reconciliation.get_by_intent(intent.id) is not None:
            await self.reconciliation.resolve(intent.id, Resolution.ORDER_COMPLETED)
        return present(attempt)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _abandon(self, attempt: Dict[str, Any]) -> Dict[str, Any]:
        failed = await self._record_failure(attempt, FailureReason.ABANDONED, BookingAbandonedError(attempt["_id"]))
        logger.info("Booking attempt %s abandoned in state %s", attempt["_id"], attempt["state"])
        return failed

    async def _flag_reconciliation(self, failed: Mapping[str, Any]) -> None:
        intent = failed.get("payment_intent") or {}
        failure = failed["failure"]
        await self.reconciliation.flag(
            payment_intent_id=failed["payment_intent_id"],
            booking_attempt_id=failed["_id"],
            amount=intent.get("amount") or "",
            currency=intent.get("currency") or failed.get("currency") or "",
            reason=failure["reason"],
            state_at_failure=failure["state_at_failure"],
        )

    async def _record_failure(self, attempt: Dict[str, Any], reason: FailureReason, error: AppError) -> Dict[str, Any]:
        if attempt.get("payment_captured"):
            error.mark_payment_captured()
        failed = await self.attempts.fail(attempt, reason.value, error)
        if failed.get("payment_captured"):
            error.mark_payment_captured()
            await self._flag_reconciliation(failed)
        return failed

    async def _fail(self, attempt: Dict[str, Any], reason: FailureReason, error: AppError) -> BookingResult:
        failed = await self._record_failure(attempt, reason, error)
        logger.info(
            "Booking attempt %s failed(%s) from %s: %s (payment_captured=%s)",
            failed["_id"],
            reason.value,
            attempt["state"],
            error.code,
            failed.get("payment_captured"),
        )
        return present(failed, error)
