from __future__ import annotations

"""Live offer verification.

Offers are never trusted from an earlier fetch when money is about to move:
`verify` always goes back to the provider and checks `expires_at` against the
injected clock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from skyfare.domain.money import Money, normalize_currency, to_decimal
from skyfare.errors import AppError, OfferExpiredError, OfferNotFoundError, ProviderError
from skyfare.services.pricing_engine import AncillaryKind, parse_kind
from skyfare.services.suppliers.distribution_adapter import (
    DistributionAdapter,
    errors_text,
    extract_data,
    extract_errors,
)
from skyfare.utils import now_utc, parse_iso_datetime

logger = logging.getLogger(__name__)

OFFER_GONE_CODES = frozenset({"not_found", "offer_not_found", "offer_no_longer_available", "offer_expired"})


@dataclass(frozen=True)
class AvailableService:
    id: str
    kind: AncillaryKind
    type: str
    total_amount: Decimal
    currency: str
    maximum_quantity: int = 1
    passenger_ids: Tuple[str, ...] = ()
    segment_ids: Tuple[str, ...] = ()

    @classmethod
    def from_provider(cls, raw: Dict[str, Any]) -> "AvailableService":
        return cls(
            id=str(raw["id"]),
            kind=parse_kind(raw.get("type")),
            type=str(raw.get("type") or ""),
            total_amount=to_decimal(raw.get("total_amount"), field="total_amount"),
            currency=normalize_currency(raw.get("total_currency")),
            maximum_quantity=int(raw.get("maximum_quantity") or 1),
            passenger_ids=tuple(raw.get("passenger_ids") or ()),
            segment_ids=tuple(raw.get("segment_ids") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "type": self.type,
            "total_amount": str(self.total_amount),
            "total_currency": self.currency,
            "maximum_quantity": self.maximum_quantity,
            "passenger_ids": list(self.passenger_ids),
            "segment_ids": list(self.segment_ids),
        }


@dataclass(frozen=True)
class OfferSnapshot:
    id: str
    total: Money
    expires_at: datetime
    available_services: Tuple[AvailableService, ...] = ()
    passenger_ids: Tuple[str, ...] = ()

    def service(self, service_id: str) -> Optional[AvailableService]:
        for svc in self.available_services:
            if svc.id == service_id:
                return svc
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "total_amount": str(self.total.amount),
            "total_currency": self.total.currency,
            "expires_at": self.expires_at.isoformat(),
            "passenger_ids": list(self.passenger_ids),
            "available_services": [s.to_dict() for s in self.available_services],
        }


def parse_offer(data: Dict[str, Any]) -> OfferSnapshot:
    offer_id = data.get("id")
    expires_at = parse_iso_datetime(data.get("expires_at"))
    if not offer_id or expires_at is None:
        raise ProviderError("Travel provider returned an incomplete offer", {"offer_id": offer_id})

    try:
        total = Money.of(data.get("total_amount"), data.get("total_currency"))
        services = tuple(AvailableService.from_provider(s) for s in data.get("available_services") or [])
    except (AppError, KeyError, TypeError, ValueError) as exc:
        raise ProviderError("Travel provider returned a malformed offer", {"offer_id": offer_id, "reason": str(exc)})

    passengers: List[Dict[str, Any]] = data.get("passengers") or []
    return OfferSnapshot(
        id=str(offer_id),
        total=total,
        expires_at=expires_at,
        available_services=services,
        passenger_ids=tuple(str(p["id"]) for p in passengers if p.get("id")),
    )


class OfferVerifier:
    def __init__(self, adapter: DistributionAdapter, *, clock: Callable[[], datetime] = now_utc) -> None:
        self.adapter = adapter
        self.clock = clock

    async def verify(self, offer_id: str) -> OfferSnapshot:
        resp = await self.adapter.get_offer(offer_id)

        if resp.status_code >= 400:
            errors = extract_errors(resp)
            codes = {e.get("code") for e in errors}
            if resp.status_code in (404, 410) or codes & OFFER_GONE_CODES:
                raise OfferNotFoundError(
                    "The selected offer is no longer available. Please search for flights again.",
                    {"offer_id": offer_id},
                )
            raise ProviderError(
                "Could not verify the selected offer",
                {"offer_id": offer_id, "status_code": resp.status_code, "provider_message": errors_text(errors)},
            )

        snapshot = parse_offer(extract_data(resp))
        now = self.clock()
        if now > snapshot.expires_at:
            logger.info("Offer %s expired at %s (now=%s)", offer_id, snapshot.expires_at.isoformat(), now.isoformat())
            raise OfferExpiredError(
                "The selected offer has expired. Please search for flights again.",
                {"offer_id": offer_id, "expires_at": snapshot.expires_at.isoformat()},
            )
        return snapshot
