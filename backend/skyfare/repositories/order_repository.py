from __future__ import annotations

from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from skyfare.utils import now_utc


class OrderRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.col = db.orders

    async def save(self, booking_attempt_id: str, order: Dict[str, Any]) -> Dict[str, Any]:
        """Store the provider order for an attempt. At most one order per attempt."""
        doc = {
            "_id": order["id"],
            "booking_attempt_id": booking_attempt_id,
            **{k: v for k, v in order.items() if k != "id"},
            "stored_at": now_utc(),
        }
        try:
            await self.col.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.get_by_attempt(booking_attempt_id)
            return existing or doc
        return doc

    async def get(self, order_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"_id": order_id})

    async def get_by_attempt(self, booking_attempt_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"booking_attempt_id": booking_attempt_id})

    async def get_by_reference(self, booking_reference: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"booking_reference": booking_reference})
