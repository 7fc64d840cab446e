from __future__ import annotations

"""Booking attempt API.

Thin adapters over BookingOrchestrator. Every response body is the booking
result shape; `status` is always a booking state value.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from skyfare.dependencies import get_orchestrator
from skyfare.domain.money import Money
from skyfare.schemas_booking import (
    AncillaryUpdateRequest,
    BookingStartRequest,
    ConfirmRequest,
    ResumeRequest,
    dump_all,
)
from skyfare.services.booking_orchestrator import BookingOrchestrator, BookingResult

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


def _respond(result: BookingResult, success_status: int = 200) -> JSONResponse:
    status_code = result.http_status if result.http_status != 200 else success_status
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("/attempts")
async def start_booking_attempt(
    payload: BookingStartRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    result = await orchestrator.start(
        offer_id=payload.offer_id,
        base=Money.of(payload.base.amount, payload.base.currency, payload.base.unit),
        passengers=dump_all(payload.passengers),
        ancillaries=dump_all(payload.ancillaries),
        booking_attempt_id=payload.booking_attempt_id,
    )
    return _respond(result, success_status=201)


@router.get("/attempts/{attempt_id}")
async def get_booking_attempt(
    attempt_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(await orchestrator.get(attempt_id))


@router.put("/attempts/{attempt_id}/ancillaries")
async def update_booking_ancillaries(
    attempt_id: str,
    payload: AncillaryUpdateRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(await orchestrator.update_ancillaries(attempt_id, dump_all(payload.ancillaries)))


@router.post("/attempts/{attempt_id}/confirm")
async def confirm_booking_payment(
    attempt_id: str,
    payload: ConfirmRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(await orchestrator.confirm(attempt_id, payload.payment_method))


@router.post("/attempts/{attempt_id}/resume")
async def resume_booking_payment(
    attempt_id: str,
    payload: ResumeRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(await orchestrator.resume(attempt_id, payload.payment_intent_id))


@router.post("/attempts/{attempt_id}/order")
async def create_booking_order(
    attempt_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(await orchestrator.complete_order(attempt_id))


@router.post("/attempts/{attempt_id}/abandon")
async def abandon_booking_attempt(
    attempt_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(await orchestrator.abandon(attempt_id))
