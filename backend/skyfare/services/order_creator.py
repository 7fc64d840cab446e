from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from skyfare.domain.money import to_decimal
from skyfare.errors import AppError, OfferInvalidError, OrderCreationError, PreconditionViolationError
from skyfare.services.passengers import format_passengers
from skyfare.services.payment_intents import PaymentIntent, PaymentIntentStatus
from skyfare.services.pricing_engine import AncillarySelection
from skyfare.services.suppliers.distribution_adapter import (
    DistributionAdapter,
    errors_text,
    extract_data,
    extract_errors,
)

logger = logging.getLogger(__name__)

OFFER_REJECTION_CODES = frozenset(
    {
        "offer_no_longer_available",
        "offer_expired",
        "offer_not_found",
        "not_found",
        "price_changed",
    }
)
OFFER_REJECTION_MARKERS = ("not found", "no longer available", "expired")


@dataclass(frozen=True)
class Order:
    id: str
    booking_reference: Optional[str]
    total_amount: Decimal
    currency: str
    passengers: Tuple[Dict[str, Any], ...] = ()
    created_at: Optional[str] = None

    @classmethod
    def from_provider(cls, data: Mapping[str, Any]) -> "Order":
        return cls(
            id=str(data["id"]),
            booking_reference=data.get("booking_reference"),
            total_amount=to_decimal(data.get("total_amount"), field="total_amount"),
            currency=str(data.get("total_currency") or "").upper(),
            passengers=tuple(
                {k: p.get(k) for k in ("id", "given_name", "family_name", "type")}
                for p in data.get("passengers") or []
            ),
            created_at=data.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "booking_reference": self.booking_reference,
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "passengers": [dict(p) for p in self.passengers],
            "created_at": self.created_at,
        }


def is_offer_rejection(errors: List[Dict[str, Any]]) -> bool:
    codes = {str(e.get("code") or "").lower() for e in errors}
    if codes & OFFER_REJECTION_CODES:
        return True
    text = errors_text(errors).lower()
    return any(marker in text for marker in OFFER_REJECTION_MARKERS)


class OrderCreator:
    def __init__(self, adapter: DistributionAdapter) -> None:
        self.adapter = adapter

    async def create(
        self,
        offer_id: str,
        passengers: Sequence[Mapping[str, Any]],
        payment_intent: PaymentIntent,
        metadata: Dict[str, str],
        *,
        idempotency_key: str,
        offer_passenger_ids: Sequence[str] = (),
        services: Sequence[AncillarySelection] = (),
    ) -> Order:
        if payment_intent.status != PaymentIntentStatus.SUCCEEDED:
            raise PreconditionViolationError(
                "Order creation requested before payment succeeded",
                {"payment_intent_id": payment_intent.id, "status": payment_intent.status.value},
            )

        payload: Dict[str, Any] = {
            "type": "instant",
            "selected_offers": [offer_id],
            "passengers": format_passengers(passengers, offer_passenger_ids),
            "payment_intent_id": payment_intent.id,
            "metadata": metadata,
        }
        if services:
            payload["services"] = [{"id": s.service_id, "quantity": s.quantity} for s in services]

        resp = await self.adapter.create_order(payload, idempotency_key=idempotency_key)

        if resp.status_code >= 400:
            errors = extract_errors(resp)
            details = {
                "offer_id": offer_id,
                "payment_intent_id": payment_intent.id,
                "status_code": resp.status_code,
                "provider_codes": [e.get("code") for e in errors if e.get("code")],
            }
            if is_offer_rejection(errors):
                logger.warning("Order rejected, offer %s no longer bookable: %s", offer_id, errors_text(errors))
                raise OfferInvalidError(
                    "The selected offer is no longer available. Please search for flights again.",
                    details,
                )
            logger.error("Order creation failed for offer %s: %s", offer_id, errors_text(errors))
            raise OrderCreationError(
                "Your payment was received but the booking could not be completed. Please retry.",
                details,
            )

        data = extract_data(resp)
        try:
            order = Order.from_provider(data)
        except (AppError, KeyError) as exc:
            raise OrderCreationError(
                "Travel provider returned an incomplete order",
                {"offer_id": offer_id, "payment_intent_id": payment_intent.id, "reason": str(exc)},
            )
        logger.info("Order %s created (ref=%s) for offer %s", order.id, order.booking_reference, offer_id)
        return order
