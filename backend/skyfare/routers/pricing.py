from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from skyfare.dependencies import get_amount_guard, get_pricing_engine
from skyfare.domain.money import Money
from skyfare.schemas_booking import PricingQuoteRequest, dump_all
from skyfare.services.amount_guard import AmountGuard
from skyfare.services.pricing_engine import AncillarySelection, PricingEngine

router = APIRouter(prefix="/api/pricing", tags=["pricing"])


@router.post("/quote")
async def pricing_quote(
    payload: PricingQuoteRequest,
    engine: PricingEngine = Depends(get_pricing_engine),
    guard: AmountGuard = Depends(get_amount_guard),
) -> Dict[str, Any]:
    """Price a selection locally. No provider contact."""

    base = Money.of(payload.base.amount, payload.base.currency, payload.base.unit)
    selections = [AncillarySelection.from_dict(a) for a in dump_all(payload.ancillaries)]
    breakdown = engine.compute(base, payload.passenger_count, selections)
    check = guard.check(breakdown.total)
    return {
        "ok": True,
        "breakdown": breakdown.to_dict(),
        "total": breakdown.total.to_dict(),
        "reference_amount": str(check.reference_amount),
        "reference_currency": check.reference_currency,
    }
