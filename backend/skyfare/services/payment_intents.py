from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from skyfare.domain.money import Money, to_decimal
from skyfare.errors import AppError, PreconditionViolationError, ProviderError
from skyfare.repositories.booking_attempt_repository import BookingAttemptRepository
from skyfare.services.suppliers.distribution_adapter import (
    DistributionAdapter,
    errors_text,
    extract_data,
    extract_errors,
)

logger = logging.getLogger(__name__)


class PaymentIntentStatus(str, Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_STATUS_ALIASES = {
    "canceled": PaymentIntentStatus.FAILED,
    "cancelled": PaymentIntentStatus.FAILED,
}


def parse_intent_status(raw: Optional[str]) -> PaymentIntentStatus:
    value = (raw or "").strip().lower()
    if value in _STATUS_ALIASES:
        return _STATUS_ALIASES[value]
    try:
        return PaymentIntentStatus(value)
    except ValueError:
        raise ProviderError("Travel provider returned an unknown payment status", {"status": raw})


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    amount: Decimal
    currency: str
    status: PaymentIntentStatus
    client_secret: Optional[str] = None

    @classmethod
    def from_provider(cls, data: Dict[str, Any]) -> "PaymentIntent":
        intent_id = data.get("id")
        if not intent_id:
            raise ProviderError("Travel provider returned a payment intent without id")
        try:
            amount = to_decimal(data.get("amount"), field="amount")
        except AppError:
            raise ProviderError("Travel provider returned a malformed payment intent", {"payment_intent_id": intent_id})
        return cls(
            id=str(intent_id),
            amount=amount,
            currency=str(data.get("currency") or "").upper(),
            status=parse_intent_status(data.get("status")),
            client_secret=data.get("client_secret") or data.get("client_token"),
        )

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "PaymentIntent":
        return cls(
            id=doc["id"],
            amount=Decimal(doc["amount"]),
            currency=doc["currency"],
            status=PaymentIntentStatus(doc["status"]),
            client_secret=doc.get("client_secret"),
        )

    def with_status(self, status: PaymentIntentStatus) -> "PaymentIntent":
        return PaymentIntent(
            id=self.id,
            amount=self.amount,
            currency=self.currency,
            status=status,
            client_secret=self.client_secret,
        )

    def to_doc(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "client_secret": self.client_secret,
        }


class PaymentIntentManager:
    """Creates the one provider payment intent of a booking attempt, or updates it in place."""

    def __init__(self, adapter: DistributionAdapter, attempts: BookingAttemptRepository) -> None:
        self.adapter = adapter
        self.attempts = attempts

    async def create_or_update(
        self,
        booking_attempt_id: str,
        amount: Money,
        metadata: Dict[str, str],
    ) -> PaymentIntent:
        attempt = await self.attempts.get(booking_attempt_id)
        if attempt is None:
            raise PreconditionViolationError(
                "Payment intent requested for an unknown booking attempt",
                {"booking_attempt_id": booking_attempt_id},
            )

        amount = amount.rounded()
        meta = {**metadata, "booking_attempt_id": booking_attempt_id}

        bound_id = attempt.get("payment_intent_id")
        if bound_id:
            return await self._update(bound_id, amount, meta)

        resp = await self.adapter.create_payment_intent(
            amount=amount.provider_amount(),
            currency=amount.currency,
            metadata=meta,
            idempotency_key=booking_attempt_id,
        )
        intent = self._parse(resp, "create", booking_attempt_id)

        bound = await self.attempts.bind_payment_intent(booking_attempt_id, intent.to_doc())
        if bound is None:
            current = await self.attempts.get_or_404(booking_attempt_id)
            winner = current.get("payment_intent_id")
            if winner and winner != intent.id:
                logger.warning(
                    "Attempt %s already bound to intent %s; updating it instead of %s",
                    booking_attempt_id,
                    winner,
                    intent.id,
                )
                return await self._update(winner, amount, meta)

        logger.info("Created payment intent %s for attempt %s (%s %s)", intent.id, booking_attempt_id, amount.amount, amount.currency)
        return intent

    async def _update(self, payment_intent_id: str, amount: Money, metadata: Dict[str, str]) -> PaymentIntent:
        resp = await self.adapter.update_payment_intent(
            payment_intent_id,
            amount=amount.provider_amount(),
            currency=amount.currency,
            metadata=metadata,
        )
        intent = self._parse(resp, "update", metadata.get("booking_attempt_id"))
        logger.info("Updated payment intent %s to %s %s", intent.id, amount.amount, amount.currency)
        return intent

    @staticmethod
    def _parse(resp: httpx.Response, action: str, booking_attempt_id: Optional[str]) -> PaymentIntent:
        if resp.status_code >= 400:
            errors = extract_errors(resp)
            raise ProviderError(
                f"Could not {action} the payment. Please try again.",
                {
                    "booking_attempt_id": booking_attempt_id,
                    "status_code": resp.status_code,
                    "provider_codes": [e.get("code") for e in errors if e.get("code")],
                    "provider_message": errors_text(errors),
                },
            )
        return PaymentIntent.from_provider(extract_data(resp))
