from __future__ import annotations

import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


async def ensure_booking_indexes(db):
    async def _safe_create(collection, *args, **kwargs):
        try:
            await collection.create_index(*args, **kwargs)
        except PyMongoError as exc:
            logger.warning("Index %s on %s not created: %s", kwargs.get("name"), collection.name, exc)

    await _safe_create(
        db.booking_attempts,
        [("payment_intent_id", ASCENDING)],
        name="booking_attempts_by_intent",
    )

    await _safe_create(
        db.booking_attempts,
        [("state", ASCENDING), ("updated_at", DESCENDING)],
        name="booking_attempts_by_state",
    )

    await _safe_create(
        db.orders,
        [("booking_attempt_id", ASCENDING)],
        name="orders_by_attempt",
        unique=True,
    )

    await _safe_create(
        db.orders,
        [("booking_reference", ASCENDING)],
        name="orders_by_booking_reference",
    )

    await _safe_create(
        db.payment_reconciliation,
        [("payment_intent_id", ASCENDING)],
        name="reconciliation_by_intent",
        unique=True,
    )

    await _safe_create(
        db.payment_reconciliation,
        [("status", ASCENDING), ("created_at", DESCENDING)],
        name="reconciliation_by_status",
    )
