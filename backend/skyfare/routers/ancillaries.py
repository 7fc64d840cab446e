from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from skyfare.dependencies import get_offer_verifier, get_pricing_engine
from skyfare.schemas_booking import AncillaryPriceRequest, dump_all
from skyfare.services.ancillary_pricing import resolve_selections
from skyfare.services.offer_verifier import OfferVerifier
from skyfare.services.pricing_engine import PricingEngine

router = APIRouter(prefix="/api/ancillaries", tags=["ancillaries"])


@router.post("/price")
async def price_ancillaries(
    payload: AncillaryPriceRequest,
    verifier: OfferVerifier = Depends(get_offer_verifier),
    engine: PricingEngine = Depends(get_pricing_engine),
) -> Dict[str, Any]:
    """Price selected services of a live offer with markup applied."""

    snapshot = await verifier.verify(payload.offer_id)
    selections = resolve_selections(snapshot, dump_all(payload.services))
    breakdown = engine.compute(snapshot.total, payload.passenger_count, selections)
    return {
        "ok": True,
        "offer_id": snapshot.id,
        "currency": breakdown.currency,
        "line_items": [item.to_dict() for item in breakdown.ancillary_line_items],
        "ancillary_total": str(breakdown.ancillary_total),
        "breakdown": breakdown.to_dict(),
    }
