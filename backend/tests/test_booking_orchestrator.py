from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from httpx import Response

from skyfare.domain.booking_state_machine import BookingStateTransitionError
from skyfare.domain.money import Money
from skyfare.errors import (
    PUBLIC_PRECONDITION_MESSAGE,
    ConcurrentModificationError,
    InvalidInputError,
    OrderCreationInProgressError,
    UpstreamUnavailableError,
)
from skyfare.repositories.booking_attempt_repository import BookingAttemptRepository
from skyfare.repositories.order_repository import OrderRepository
from skyfare.repositories.reconciliation_repository import ReconciliationRepository
from provider_payloads import (
    INTENT_ID,
    OFFER_ID,
    bag_selection,
    confirm_body,
    error_body,
    intent_body,
    offer_body,
    order_body,
    passengers,
)

CARD = {"type": "card", "card_id": "tcd_00009hthhsUZ8W4LxQgkjo"}


async def _start(orchestrator, **overrides):
    kwargs = {
        "offer_id": OFFER_ID,
        "base": Money.of("450.00", "EUR"),
        "passengers": passengers(),
        "ancillaries": [bag_selection()],
        "booking_attempt_id": "ba_test_0001",
    }
    kwargs.update(overrides)
    return await orchestrator.start(**kwargs)


def _mock_priced_offer(provider, **offer_kwargs):
    offer = provider.get(f"/air/offers/{OFFER_ID}").respond(200, json=offer_body(**offer_kwargs))
    intent = provider.post("/payments/payment_intents").respond(201, json=intent_body())
    return offer, intent


@pytest.mark.anyio
async def test_start_prices_and_opens_one_intent(provider, orchestrator) -> None:
    _, intent_route = _mock_priced_offer(provider)

    result = await _start(orchestrator)

    assert result.success is True
    assert result.status == "intent_pending"
    assert result.payment_intent_id == INTENT_ID
    assert result.payment_captured is False
    assert result.pricing["grand_total"] == "478.80"
    assert Decimal(result.pricing["ancillary_total"]) == Decimal("22.80")
    assert result.client_secret is None

    sent = json.loads(intent_route.calls.last.request.content)["data"]
    assert sent["amount"] == "478.80"
    assert sent["currency"] == "EUR"
    assert sent["metadata"]["pricing_grand_total"] == "478.80"
    assert sent["metadata"]["offer_id"] == OFFER_ID
    assert sent["metadata"]["booking_attempt_id"] == "ba_test_0001"


@pytest.mark.anyio
async def test_full_happy_path_creates_exactly_one_order(provider, orchestrator, test_db) -> None:
    _mock_priced_offer(provider)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").respond(200, json=confirm_body())
    order_route = provider.post("/air/orders").respond(201, json=order_body())

    await _start(orchestrator)
    result = await orchestrator.confirm("ba_test_0001", CARD)

    assert result.success is True
    assert result.status == "completed"
    assert result.booking_reference == "SKY7QX"
    assert result.payment_captured is True
    assert order_route.call_count == 1

    sent = json.loads(order_route.calls.last.request.content)["data"]
    assert sent["payment_intent_id"] == INTENT_ID
    assert sent["services"] == [{"id": "ase_bag_1", "quantity": 1}]
    assert [p["id"] for p in sent["passengers"]] == ["pas_1", "pas_2"]

    stored = await OrderRepository(test_db).get_by_attempt("ba_test_0001")
    assert stored is not None
    assert stored["booking_reference"] == "SKY7QX"

    again = await orchestrator.confirm("ba_test_0001", CARD)
    assert again.status == "completed"
    assert order_route.call_count == 1


@pytest.mark.anyio
async def test_amount_over_ceiling_fails_before_any_provider_call(provider, orchestrator) -> None:
    offer_route, intent_route = _mock_priced_offer(provider)

    result = await _start(orchestrator, base=Money.of("6000.00", "EUR"), ancillaries=[])

    assert result.success is False
    assert result.status == "failed"
    assert result.http_status == 422
    assert result.error["code"] == "amount_exceeds_limit"
    assert result.error["reason"] == "validation"
    assert offer_route.call_count == 0
    assert intent_route.call_count == 0


@pytest.mark.anyio
async def test_repeated_start_returns_the_same_attempt(provider, orchestrator) -> None:
    _, intent_route = _mock_priced_offer(provider)

    first = await _start(orchestrator)
    second = await _start(orchestrator)

    assert first.booking_attempt_id == second.booking_attempt_id
    assert second.payment_intent_id == INTENT_ID
    assert intent_route.call_count == 1


@pytest.mark.anyio
async def test_provider_failure_on_intent_can_be_retried_with_same_id(provider, orchestrator) -> None:
    provider.get(f"/air/offers/{OFFER_ID}").respond(200, json=offer_body())
    intent_route = provider.post("/payments/payment_intents").mock(
        side_effect=[
            Response(400, json=error_body("invalid_request", "Payments are not enabled")),
            Response(201, json=intent_body()),
        ]
    )

    failed = await _start(orchestrator)
    assert failed.status == "failed"
    assert failed.error["reason"] == "provider"
    assert failed.payment_captured is False

    retried = await _start(orchestrator)
    assert retried.status == "intent_pending"
    assert retried.payment_intent_id == INTENT_ID
    assert intent_route.call_count == 2


@pytest.mark.anyio
async def test_ancillary_change_updates_the_existing_intent(provider, orchestrator) -> None:
    provider.get(f"/air/offers/{OFFER_ID}").respond(200, json=offer_body())
    create = provider.post("/payments/payment_intents").respond(201, json=intent_body(amount="456.00"))
    update = provider.patch(f"/payments/payment_intents/{INTENT_ID}").respond(200, json=intent_body(amount="478.80"))

    started = await _start(orchestrator, ancillaries=[])
    assert started.pricing["grand_total"] == "456.00"

    updated = await orchestrator.update_ancillaries("ba_test_0001", [{"service_id": "ase_bag_1", "quantity": 1}])

    assert updated.status == "intent_pending"
    assert updated.pricing["grand_total"] == "478.80"
    assert create.call_count == 1
    assert update.call_count == 1
    assert json.loads(update.calls.last.request.content)["data"]["amount"] == "478.80"


@pytest.mark.anyio
async def test_invalid_ancillary_change_keeps_the_attempt(provider, orchestrator) -> None:
    _mock_priced_offer(provider)
    await _start(orchestrator)

    with pytest.raises(InvalidInputError):
        await orchestrator.update_ancillaries("ba_test_0001", [{"service_id": "ase_missing"}])

    current = await orchestrator.get("ba_test_0001")
    assert current.status == "intent_pending"
    assert current.pricing["grand_total"] == "478.80"


@pytest.mark.anyio
async def test_challenge_then_resume_completes_without_repricing(provider, orchestrator) -> None:
    offer_route, intent_route = _mock_priced_offer(provider)
    update_route = provider.patch(f"/payments/payment_intents/{INTENT_ID}").respond(200, json=intent_body())
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").mock(
        side_effect=[
            Response(200, json=confirm_body(status="requires_action", requires_action=True, client_secret="pit_cs_3ds")),
            Response(200, json=confirm_body(status="succeeded")),
        ]
    )
    provider.post("/air/orders").respond(201, json=order_body())

    await _start(orchestrator)
    challenged = await orchestrator.confirm("ba_test_0001", CARD)

    assert challenged.status == "awaiting_action"
    assert challenged.requires_action is True
    assert challenged.client_secret == "pit_cs_3ds"
    assert challenged.payment_captured is False

    resumed = await orchestrator.resume("ba_test_0001", INTENT_ID)

    assert resumed.status == "completed"
    assert resumed.client_secret is None
    assert intent_route.call_count == 1
    assert update_route.call_count == 0
    # one fetch when pricing, one when verifying before the order
    assert offer_route.call_count == 2


@pytest.mark.anyio
async def test_resume_with_foreign_intent_is_rejected(provider, orchestrator) -> None:
    _mock_priced_offer(provider)
    await _start(orchestrator)

    with pytest.raises(InvalidInputError):
        await orchestrator.resume("ba_test_0001", "pit_someone_else")


@pytest.mark.anyio
async def test_declined_card_can_be_retried_with_another_method(provider, orchestrator, test_db) -> None:
    _mock_priced_offer(provider)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").mock(
        side_effect=[
            Response(402, json=error_body("card_declined", "Your card was declined")),
            Response(200, json=confirm_body(status="succeeded")),
        ]
    )
    provider.post("/air/orders").respond(201, json=order_body())

    await _start(orchestrator)
    declined = await orchestrator.confirm("ba_test_0001", CARD)

    assert declined.status == "failed"
    assert declined.http_status == 402
    assert declined.payment_captured is False
    assert declined.error["code"] == "payment_failed"
    assert declined.error["user_action"] == "retry_with_different_payment_method"
    assert await ReconciliationRepository(test_db).get_by_intent(INTENT_ID) is None

    retried = await orchestrator.confirm("ba_test_0001", {"type": "card", "card_id": "tcd_other"})
    assert retried.status == "completed"


@pytest.mark.anyio
async def test_confirm_timeout_leaves_attempt_retryable(provider, orchestrator) -> None:
    _mock_priced_offer(provider)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").mock(side_effect=httpx.ReadTimeout)

    await _start(orchestrator)
    with pytest.raises(UpstreamUnavailableError):
        await orchestrator.confirm("ba_test_0001", CARD)

    current = await orchestrator.get("ba_test_0001")
    assert current.status == "confirming"
    assert current.payment_captured is False


@pytest.mark.anyio
async def test_offer_expired_after_payment_is_flagged_for_reconciliation(provider, make_orchestrator, test_db) -> None:
    now = [datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)]
    expires_at = now[0] + timedelta(minutes=10)
    orchestrator = make_orchestrator(clock=lambda: now[0])
    _mock_priced_offer(provider, expires_at=expires_at)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").respond(200, json=confirm_body())
    order_route = provider.post("/air/orders").respond(201, json=order_body())

    await _start(orchestrator)
    now[0] = expires_at + timedelta(seconds=1)
    result = await orchestrator.confirm("ba_test_0001", CARD)

    assert result.success is False
    assert result.status == "failed"
    assert result.payment_captured is True
    assert result.error["code"] == "offer_expired"
    assert result.error["reason"] == "offer_invalid"
    assert result.error["payment_captured"] is True
    assert order_route.call_count == 0

    entry = await ReconciliationRepository(test_db).get_by_intent(INTENT_ID)
    assert entry is not None
    assert entry["status"] == "open"
    assert entry["reason"] == "offer_invalid"
    assert entry["state_at_failure"] == "verifying_offer"
    assert entry["amount"] == "478.80"


@pytest.mark.anyio
async def test_failed_order_is_retried_and_reconciliation_resolved(provider, orchestrator, test_db) -> None:
    _mock_priced_offer(provider)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").respond(200, json=confirm_body())
    order_route = provider.post("/air/orders").mock(
        side_effect=[
            Response(422, json=error_body("passenger_name_too_long", "Name exceeds limit")),
            Response(201, json=order_body()),
        ]
    )

    await _start(orchestrator)
    failed = await orchestrator.confirm("ba_test_0001", CARD)

    assert failed.status == "failed"
    assert failed.payment_captured is True
    assert failed.error["reason"] == "order_creation"
    assert failed.error["user_action"] == "retry_order"
    reconciliation = ReconciliationRepository(test_db)
    assert (await reconciliation.get_by_intent(INTENT_ID))["status"] == "open"

    completed = await orchestrator.complete_order("ba_test_0001")

    assert completed.status == "completed"
    assert completed.payment_captured is True
    assert order_route.call_count == 2
    assert order_route.calls[0].request.headers["Idempotency-Key"] == "ba_test_0001"
    assert order_route.calls[1].request.headers["Idempotency-Key"] == "ba_test_0001"
    entry = await reconciliation.get_by_intent(INTENT_ID)
    assert entry["status"] == "resolved"
    assert entry["resolution"] == "order_completed"


@pytest.mark.anyio
async def test_concurrent_order_requests_create_one_order(provider, orchestrator, test_db) -> None:
    _mock_priced_offer(provider)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").respond(200, json=confirm_body())
    order_route = provider.post("/air/orders").mock(
        side_effect=[Response(503, text="Service Unavailable"), Response(201, json=order_body())]
    )

    await _start(orchestrator)
    with pytest.raises(UpstreamUnavailableError) as exc:
        await orchestrator.confirm("ba_test_0001", CARD)
    assert exc.value.payment_captured is True
    assert (await orchestrator.get("ba_test_0001")).status == "creating_order"

    results = await asyncio.gather(
        orchestrator.complete_order("ba_test_0001"),
        orchestrator.complete_order("ba_test_0001"),
        return_exceptions=True,
    )

    completed = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert completed
    assert all(r.status == "completed" for r in completed)
    assert all(isinstance(r, OrderCreationInProgressError) for r in rejected)
    assert order_route.call_count == 2
    assert await test_db.orders.count_documents({"booking_attempt_id": "ba_test_0001"}) == 1


@pytest.mark.anyio
async def test_abandon_before_payment_needs_no_reconciliation(provider, orchestrator, test_db) -> None:
    _mock_priced_offer(provider)
    await _start(orchestrator)

    result = await orchestrator.abandon("ba_test_0001")

    assert result.status == "failed"
    assert result.payment_captured is False
    assert result.error["reason"] == "abandoned"
    assert await ReconciliationRepository(test_db).get_by_intent(INTENT_ID) is None

    with pytest.raises(BookingStateTransitionError):
        await orchestrator.confirm("ba_test_0001", CARD)


@pytest.mark.anyio
async def test_abandon_after_payment_is_flagged(provider, orchestrator, test_db) -> None:
    _mock_priced_offer(provider)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").respond(200, json=confirm_body())
    provider.post("/air/orders").respond(503, text="Service Unavailable")

    await _start(orchestrator)
    with pytest.raises(UpstreamUnavailableError):
        await orchestrator.confirm("ba_test_0001", CARD)

    result = await orchestrator.abandon("ba_test_0001")

    assert result.status == "failed"
    assert result.payment_captured is True
    entry = await ReconciliationRepository(test_db).get_by_intent(INTENT_ID)
    assert entry["reason"] == "abandoned"
    assert entry["state_at_failure"] == "creating_order"


@pytest.mark.anyio
async def test_completed_attempt_cannot_be_abandoned(provider, orchestrator) -> None:
    _mock_priced_offer(provider)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").respond(200, json=confirm_body())
    provider.post("/air/orders").respond(201, json=order_body())

    await _start(orchestrator)
    await orchestrator.confirm("ba_test_0001", CARD)

    with pytest.raises(BookingStateTransitionError):
        await orchestrator.abandon("ba_test_0001")


def _mock_paid_booking(provider):
    _mock_priced_offer(provider)
    provider.post(f"/payments/payment_intents/{INTENT_ID}/actions/confirm").respond(200, json=confirm_body())
    return provider.post("/air/orders").respond(201, json=order_body())


async def _fail_behind_the_orchestrator(test_db, state_at_failure: str) -> None:
    """Another writer records failed(abandoned) on the attempt."""
    await test_db.booking_attempts.update_one(
        {"_id": "ba_test_0001"},
        {
            "$set": {
                "state": "failed",
                "failure": {
                    "reason": "abandoned",
                    "code": "booking_abandoned",
                    "message": "The booking was cancelled.",
                    "state_at_failure": state_at_failure,
                    "at": datetime.now(timezone.utc),
                },
            },
            "$inc": {"lock.version": 1},
        },
    )


@pytest.mark.anyio
async def test_abandon_is_refused_while_payment_is_confirming(provider, orchestrator, test_db, monkeypatch) -> None:
    order_route = _mock_paid_booking(provider)
    confirm = orchestrator.confirmer.confirm
    refused = []

    async def confirm_then_abandon(intent_id, payment_method):
        outcome = await confirm(intent_id, payment_method)
        with pytest.raises(BookingStateTransitionError) as exc:
            await orchestrator.abandon("ba_test_0001")
        refused.append(exc.value)
        return outcome

    monkeypatch.setattr(orchestrator.confirmer, "confirm", confirm_then_abandon)
    await _start(orchestrator)
    result = await orchestrator.confirm("ba_test_0001", CARD)

    assert refused and refused[0].status_code == 409
    assert result.status == "completed"
    assert result.payment_captured is True
    assert order_route.call_count == 1
    assert await ReconciliationRepository(test_db).get_by_intent(INTENT_ID) is None


@pytest.mark.anyio
async def test_capture_is_kept_when_attempt_failed_concurrently(provider, orchestrator, test_db, monkeypatch) -> None:
    order_route = _mock_paid_booking(provider)
    confirm = orchestrator.confirmer.confirm

    async def confirm_then_fail(intent_id, payment_method):
        outcome = await confirm(intent_id, payment_method)
        await _fail_behind_the_orchestrator(test_db, "confirming")
        return outcome

    monkeypatch.setattr(orchestrator.confirmer, "confirm", confirm_then_fail)
    await _start(orchestrator)
    with pytest.raises(ConcurrentModificationError) as exc:
        await orchestrator.confirm("ba_test_0001", CARD)

    assert exc.value.payment_captured is True
    assert order_route.call_count == 0
    current = await orchestrator.get("ba_test_0001")
    assert current.status == "failed"
    assert current.payment_captured is True

    entry = await ReconciliationRepository(test_db).get_by_intent(INTENT_ID)
    assert entry is not None
    assert entry["status"] == "open"
    assert entry["reason"] == "abandoned"
    assert entry["state_at_failure"] == "confirming"
    assert entry["amount"] == "478.80"


@pytest.mark.anyio
async def test_capture_after_concurrent_confirm_still_completes(provider, orchestrator, test_db, monkeypatch) -> None:
    order_route = _mock_paid_booking(provider)
    confirm = orchestrator.confirmer.confirm

    async def confirm_then_bump(intent_id, payment_method):
        outcome = await confirm(intent_id, payment_method)
        await test_db.booking_attempts.update_one({"_id": "ba_test_0001"}, {"$inc": {"lock.version": 1}})
        return outcome

    monkeypatch.setattr(orchestrator.confirmer, "confirm", confirm_then_bump)
    await _start(orchestrator)
    result = await orchestrator.confirm("ba_test_0001", CARD)

    assert result.status == "completed"
    assert result.payment_captured is True
    assert order_route.call_count == 1


@pytest.mark.anyio
async def test_abandon_is_refused_while_order_call_is_in_flight(provider, orchestrator, test_db, monkeypatch) -> None:
    order_route = _mock_paid_booking(provider)
    create = orchestrator.order_creator.create
    refused = []

    async def create_then_abandon(*args, **kwargs):
        order = await create(*args, **kwargs)
        with pytest.raises(OrderCreationInProgressError) as exc:
            await orchestrator.abandon("ba_test_0001")
        refused.append(exc.value)
        return order

    monkeypatch.setattr(orchestrator.order_creator, "create", create_then_abandon)
    await _start(orchestrator)
    result = await orchestrator.confirm("ba_test_0001", CARD)

    assert refused and refused[0].payment_captured is True
    assert result.status == "completed"
    assert result.booking_reference == "SKY7QX"
    assert order_route.call_count == 1
    assert await ReconciliationRepository(test_db).get_by_intent(INTENT_ID) is None


@pytest.mark.anyio
async def test_created_order_wins_over_concurrent_failure(provider, orchestrator, test_db, monkeypatch) -> None:
    _mock_paid_booking(provider)
    create = orchestrator.order_creator.create
    reconciliation = ReconciliationRepository(test_db)

    async def create_then_fail(*args, **kwargs):
        order = await create(*args, **kwargs)
        await _fail_behind_the_orchestrator(test_db, "creating_order")
        await reconciliation.flag(
            payment_intent_id=INTENT_ID,
            booking_attempt_id="ba_test_0001",
            amount="478.80",
            currency="EUR",
            reason="abandoned",
            state_at_failure="creating_order",
        )
        return order

    monkeypatch.setattr(orchestrator.order_creator, "create", create_then_fail)
    await _start(orchestrator)
    result = await orchestrator.confirm("ba_test_0001", CARD)

    assert result.success is True
    assert result.status == "completed"
    assert result.booking_reference == "SKY7QX"
    assert result.error is None
    assert await OrderRepository(test_db).get_by_attempt("ba_test_0001") is not None

    entry = await reconciliation.get_by_intent(INTENT_ID)
    assert entry["status"] == "resolved"
    assert entry["resolution"] == "order_completed"

    doc = await test_db.booking_attempts.find_one({"_id": "ba_test_0001"})
    assert doc["history"][-1]["note"] == "order_recorded"
    assert doc["history"][-1]["from"] == "failed"


@pytest.mark.anyio
async def test_precondition_failure_is_not_shown_verbatim(test_db, orchestrator) -> None:
    await BookingAttemptRepository(test_db).insert(
        {
            "_id": "ba_precondition",
            "state": "failed",
            "payment_captured": True,
            "payment_intent_id": INTENT_ID,
            "failure": {
                "reason": "order_creation",
                "code": "precondition_violation",
                "message": "Order creation requires a succeeded payment intent (status=requires_action)",
                "state_at_failure": "creating_order",
            },
        }
    )

    result = await orchestrator.get("ba_precondition")

    assert result.error["code"] == "precondition_violation"
    assert result.error["message"] == PUBLIC_PRECONDITION_MESSAGE
    assert "requires_action" not in result.error["message"]
