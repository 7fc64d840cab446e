from __future__ import annotations

"""Process-wide collaborators and per-request service wiring.

`configure_app_state` runs once when the app is built. Everything it puts on
`app.state` is read-only afterwards; route handlers receive it through the
`Depends` helpers below.
"""

from datetime import datetime
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Request

from skyfare.db import get_db
from skyfare.repositories.booking_attempt_repository import BookingAttemptRepository
from skyfare.repositories.order_repository import OrderRepository
from skyfare.repositories.reconciliation_repository import ReconciliationRepository
from skyfare.services.amount_guard import AmountGuard, ExchangeRateTable
from skyfare.services.booking_orchestrator import BookingOrchestrator
from skyfare.services.offer_verifier import OfferVerifier
from skyfare.services.order_creator import OrderCreator
from skyfare.services.payment_confirmer import PaymentConfirmer
from skyfare.services.payment_intents import PaymentIntentManager
from skyfare.services.pricing_engine import PricingEngine
from skyfare.services.suppliers.distribution_adapter import DistributionAdapter
from skyfare.utils import now_utc


def configure_app_state(app: FastAPI) -> None:
    app.state.rate_table = ExchangeRateTable.from_config()
    app.state.distribution_adapter = DistributionAdapter()
    app.state.pricing_engine = PricingEngine()


def get_pricing_engine(request: Request) -> PricingEngine:
    return request.app.state.pricing_engine


def get_amount_guard(request: Request) -> AmountGuard:
    return AmountGuard(request.app.state.rate_table)


def get_distribution_adapter(request: Request) -> DistributionAdapter:
    return request.app.state.distribution_adapter


def get_offer_verifier(adapter: DistributionAdapter = Depends(get_distribution_adapter)) -> OfferVerifier:
    return OfferVerifier(adapter)


def build_orchestrator(
    db,
    adapter: DistributionAdapter,
    rate_table: ExchangeRateTable,
    *,
    pricing: Optional[PricingEngine] = None,
    clock: Callable[[], datetime] = now_utc,
) -> BookingOrchestrator:
    attempts = BookingAttemptRepository(db)
    return BookingOrchestrator(
        attempts=attempts,
        orders=OrderRepository(db),
        reconciliation=ReconciliationRepository(db),
        pricing=pricing or PricingEngine(),
        guard=AmountGuard(rate_table),
        verifier=OfferVerifier(adapter, clock=clock),
        intents=PaymentIntentManager(adapter, attempts),
        confirmer=PaymentConfirmer(adapter),
        order_creator=OrderCreator(adapter),
    )


def get_orchestrator(request: Request, db=Depends(get_db)) -> BookingOrchestrator:
    state = request.app.state
    return build_orchestrator(
        db,
        state.distribution_adapter,
        state.rate_table,
        pricing=state.pricing_engine,
    )
