from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from skyfare.domain.booking_state_machine import BookingState, validate_transition
from skyfare.errors import AppError, BookingAttemptNotFoundError, ConcurrentModificationError
from skyfare.utils import now_utc

logger = logging.getLogger(__name__)


class BookingAttemptRepository:
    """Persistence for the booking attempt aggregate.

    All state changes are compare-and-swap on `lock.version` so two requests
    working on the same attempt cannot both win.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self.col = db.booking_attempts

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new attempt. Returns the stored doc, or the existing one on id collision."""
        now = now_utc()
        doc = {
            **doc,
            "lock": {"version": 0},
            "history": [{"from": None, "to": doc["state"], "at": now}],
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.col.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.get(doc["_id"])
            if existing is None:
                raise ConcurrentModificationError(doc["_id"])
            return existing
        return doc

    async def get(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"_id": attempt_id})

    async def get_or_404(self, attempt_id: str) -> Dict[str, Any]:
        doc = await self.get(attempt_id)
        if doc is None:
            raise BookingAttemptNotFoundError(attempt_id)
        return doc

    async def _cas(self, attempt: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        update.setdefault("$set", {})["updated_at"] = now_utc()
        update["$inc"] = {"lock.version": 1}
        doc = await self.col.find_one_and_update(
            {"_id": attempt["_id"], "lock.version": attempt["lock"]["version"]},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.info("Booking attempt %s changed concurrently (version=%s)", attempt["_id"], attempt["lock"]["version"])
            raise ConcurrentModificationError(attempt["_id"])
        return doc

    async def transition(
        self,
        attempt: Dict[str, Any],
        target: BookingState,
        *,
        set_fields: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
    ) -> Dict[str, Any]:
        current = attempt["state"]
        failure = attempt.get("failure") or {}
        validate_transition(current, target.value, failure_reason=failure.get("reason"))

        fields: Dict[str, Any] = {"state": target.value, **(set_fields or {})}
        if target != BookingState.FAILED:
            fields.setdefault("failure", None)

        entry: Dict[str, Any] = {"from": current, "to": target.value, "at": now_utc()}
        if note:
            entry["note"] = note
        return await self._cas(attempt, {"$set": fields, "$push": {"history": entry}})

    async def fail(
        self,
        attempt: Dict[str, Any],
        reason: str,
        error: AppError,
        *,
        payment_captured: bool = False,
    ) -> Dict[str, Any]:
        """Move the attempt to failed(reason).

        payment_captured is only ever written as True, so a failure recorded
        from a stale snapshot cannot clear a capture stored in the meantime.
        """
        captured = bool(attempt.get("payment_captured")) or payment_captured or error.payment_captured
        failure = {
            "reason": reason,
            "code": error.code,
            "message": error.message,
            "state_at_failure": attempt["state"],
            "at": now_utc(),
        }
        fields: Dict[str, Any] = {"failure": failure}
        if captured:
            fields["payment_captured"] = True
        return await self.transition(attempt, BookingState.FAILED, set_fields=fields, note=reason)

    async def record_capture(self, attempt_id: str, intent: Dict[str, Any]) -> Dict[str, Any]:
        """Store a succeeded payment regardless of the attempt's current state or version."""
        doc = await self.col.find_one_and_update(
            {"_id": attempt_id},
            {"$set": {"payment_captured": True, "payment_intent": intent, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise BookingAttemptNotFoundError(attempt_id)
        return doc

    async def record_order(self, attempt_id: str, order: Dict[str, Any], *, attempts: int = 3) -> Dict[str, Any]:
        """Force the attempt to completed for an order the provider already created.

        Skips transition validation: an existing order outranks any state
        recorded concurrently, an abandon included.
        """
        for _ in range(attempts):
            current = await self.get_or_404(attempt_id)
            if current["state"] == BookingState.COMPLETED.value:
                return current
            entry = {"from": current["state"], "to": BookingState.COMPLETED.value, "at": now_utc(), "note": "order_recorded"}
            fields = {
                "state": BookingState.COMPLETED.value,
                "order": order,
                "order_id": order["id"],
                "failure": None,
                "payment_captured": True,
            }
            try:
                return await self._cas(current, {"$set": fields, "$push": {"history": entry}})
            except ConcurrentModificationError:
                continue
        raise ConcurrentModificationError(attempt_id)

    async def bind_payment_intent(self, attempt_id: str, intent: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Bind a provider intent id to the attempt. First bind wins; None if already bound."""
        return await self.col.find_one_and_update(
            {"_id": attempt_id, "payment_intent_id": None},
            {"$set": {"payment_intent_id": intent["id"], "payment_intent": intent, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )

    async def claim_order(self, attempt_id: str, token: str, ttl_seconds: int) -> Optional[Dict[str, Any]]:
        """Atomically claim order creation. Stale claims older than the TTL can be taken over."""
        now_ts = now_utc().timestamp()
        return await self.col.find_one_and_update(
            {
                "_id": attempt_id,
                "$or": [{"order_claim": None}, {"order_claim.expires_at": {"$lt": now_ts}}],
            },
            {"$set": {"order_claim": {"token": token, "expires_at": now_ts + ttl_seconds}}},
            return_document=ReturnDocument.AFTER,
        )

    async def release_order_claim(self, attempt_id: str, token: str) -> None:
        await self.col.update_one(
            {"_id": attempt_id, "order_claim.token": token},
            {"$set": {"order_claim": None}},
        )
