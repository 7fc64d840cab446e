from __future__ import annotations

"""Turn untrusted client ancillary selections into priced selections.

Amount, kind and currency always come from the live offer's
`available_services`; the client only chooses which services and how many.
"""

from typing import Any, Dict, List, Mapping, Sequence, Tuple

from skyfare.domain.money import to_decimal
from skyfare.errors import InvalidInputError
from skyfare.services.offer_verifier import OfferSnapshot
from skyfare.services.pricing_engine import AncillarySelection


def resolve_selections(
    snapshot: OfferSnapshot,
    requested: Sequence[Mapping[str, Any]],
) -> Tuple[AncillarySelection, ...]:
    resolved: List[AncillarySelection] = []
    for raw in requested:
        service_id = str(raw.get("service_id") or "").strip()
        details: Dict[str, Any] = {"service_id": service_id, "offer_id": snapshot.id}

        if raw.get("markup_applied"):
            raise InvalidInputError("Ancillary amounts must be raw provider amounts without markup", details)

        service = snapshot.service(service_id)
        if service is None:
            raise InvalidInputError("Selected service is not available on this offer", details)

        quantity = raw.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidInputError("Ancillary quantity must be a positive integer", details)
        if quantity > service.maximum_quantity:
            raise InvalidInputError(
                "Ancillary quantity exceeds the maximum allowed",
                {**details, "maximum_quantity": service.maximum_quantity},
            )

        claimed = raw.get("provider_amount")
        if claimed is not None and to_decimal(claimed, field="provider_amount") != service.total_amount:
            raise InvalidInputError(
                "Ancillary price has changed. Please review your selection.",
                {**details, "provider_amount": str(service.total_amount)},
            )

        passenger_ref = raw.get("passenger_ref")
        if passenger_ref and service.passenger_ids and passenger_ref not in service.passenger_ids:
            raise InvalidInputError("Service is not available for this passenger", details)

        resolved.append(
            AncillarySelection(
                service_id=service.id,
                kind=service.kind,
                provider_amount=service.total_amount,
                currency=service.currency,
                quantity=quantity,
                passenger_ref=passenger_ref or (service.passenger_ids[0] if len(service.passenger_ids) == 1 else None),
                segment_refs=service.segment_ids,
            )
        )
    return tuple(resolved)
