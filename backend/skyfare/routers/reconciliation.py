from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from skyfare.db import get_db
from skyfare.repositories.reconciliation_repository import (
    ReconciliationRepository,
    ReconciliationStatus,
    Resolution,
)
from skyfare.schemas_booking import ReconciliationResolveRequest
from skyfare.utils import serialize_doc

router = APIRouter(prefix="/api/ops/reconciliation", tags=["ops-reconciliation"])


@router.get("")
async def list_reconciliation_entries(
    status: Optional[ReconciliationStatus] = Query(ReconciliationStatus.OPEN),
    limit: int = Query(100, ge=1, le=500),
    db=Depends(get_db),
) -> Dict[str, Any]:
    """Payments captured without a matching order, newest first."""

    items = await ReconciliationRepository(db).list_entries(status, limit=limit)
    return {"items": [serialize_doc(item) for item in items], "count": len(items)}


@router.post("/{payment_intent_id}/resolve")
async def resolve_reconciliation_entry(
    payment_intent_id: str,
    payload: ReconciliationResolveRequest,
    db=Depends(get_db),
) -> Dict[str, Any]:
    doc = await ReconciliationRepository(db).resolve(payment_intent_id, Resolution(payload.resolution), payload.note)
    return serialize_doc(doc)
