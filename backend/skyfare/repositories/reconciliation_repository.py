from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from skyfare.errors import BookingErrorCode, NotFoundError, PreconditionViolationError
from skyfare.utils import new_id, now_utc

logger = logging.getLogger(__name__)


class ReconciliationStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Resolution(str, Enum):
    ORDER_COMPLETED = "order_completed"
    VOIDED = "voided"
    REFUNDED = "refunded"
    MANUAL = "manual"


class ReconciliationRepository:
    """Queue of authorized-but-unbooked payments, keyed by payment intent id.

    Flagging is idempotent: a second flag for the same intent returns the
    existing entry. Voiding or refunding is done by an operator or job that
    reads this collection and calls `resolve`.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.col = db.payment_reconciliation

    async def flag(
        self,
        *,
        payment_intent_id: str,
        booking_attempt_id: str,
        amount: str,
        currency: str,
        reason: str,
        state_at_failure: str,
    ) -> Dict[str, Any]:
        existing = await self.get_by_intent(payment_intent_id)
        if existing is not None:
            return existing

        doc = {
            "_id": new_id("rec"),
            "payment_intent_id": payment_intent_id,
            "booking_attempt_id": booking_attempt_id,
            "amount": amount,
            "currency": currency,
            "reason": reason,
            "state_at_failure": state_at_failure,
            "status": ReconciliationStatus.OPEN.value,
            "resolution": None,
            "created_at": now_utc(),
            "resolved_at": None,
        }
        try:
            await self.col.insert_one(doc)
        except DuplicateKeyError:
            # lost the race against a concurrent flag for the same intent
            existing = await self.get_by_intent(payment_intent_id)
            if existing is None:
                raise PreconditionViolationError(
                    "Reconciliation entry disappeared after a duplicate key",
                    {"payment_intent_id": payment_intent_id, "booking_attempt_id": booking_attempt_id},
                )
            return existing

        logger.warning(
            "Payment %s captured without order (attempt=%s reason=%s amount=%s %s), flagged for reconciliation",
            payment_intent_id,
            booking_attempt_id,
            reason,
            amount,
            currency,
        )
        return doc

    async def get_by_intent(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"payment_intent_id": payment_intent_id})

    async def resolve(
        self,
        payment_intent_id: str,
        resolution: Resolution,
        note: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc = await self.col.find_one_and_update(
            {"payment_intent_id": payment_intent_id, "status": ReconciliationStatus.OPEN.value},
            {
                "$set": {
                    "status": ReconciliationStatus.RESOLVED.value,
                    "resolution": resolution.value,
                    "note": note,
                    "resolved_at": now_utc(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            logger.info("Reconciliation for %s resolved as %s", payment_intent_id, resolution.value)
            return doc

        existing = await self.get_by_intent(payment_intent_id)
        if existing is None:
            raise NotFoundError(
                BookingErrorCode.RECONCILIATION_ENTRY_NOT_FOUND.value,
                "Reconciliation entry not found",
                {"payment_intent_id": payment_intent_id},
            )
        return existing

    async def list_entries(self, status: Optional[ReconciliationStatus] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if status is not None:
            query["status"] = status.value
        cursor = self.col.find(query).sort("created_at", DESCENDING).limit(limit)
        return await cursor.to_list(length=limit)
