from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from skyfare.db import get_db
from skyfare.dependencies import get_distribution_adapter
from skyfare.repositories.order_repository import OrderRepository
from skyfare.services.order_lookup import lookup_order, lookup_order_by_reference
from skyfare.services.suppliers.distribution_adapter import DistributionAdapter

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.get("/by-reference/{reference}")
async def get_order_by_reference(
    reference: str,
    db=Depends(get_db),
    adapter: DistributionAdapter = Depends(get_distribution_adapter),
) -> Dict[str, Any]:
    return await lookup_order_by_reference(OrderRepository(db), adapter, reference)


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    db=Depends(get_db),
    adapter: DistributionAdapter = Depends(get_distribution_adapter),
) -> Dict[str, Any]:
    return await lookup_order(OrderRepository(db), adapter, order_id)
