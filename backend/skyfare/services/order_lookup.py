from __future__ import annotations

from typing import Any, Dict, List

from skyfare.errors import AppError, BookingErrorCode, NotFoundError, ProviderError
from skyfare.repositories.order_repository import OrderRepository
from skyfare.services.order_creator import Order
from skyfare.services.suppliers.distribution_adapter import DistributionAdapter, errors_text, extract_data, extract_errors
from skyfare.utils import serialize_doc


def _local(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(doc)
    out["source"] = "local"
    return out


async def _provider_order(adapter: DistributionAdapter, order_id: str) -> Dict[str, Any]:
    resp = await adapter.get_order(order_id)
    if resp.status_code == 404:
        raise NotFoundError(BookingErrorCode.ORDER_NOT_FOUND.value, "Order not found", {"order_id": order_id})
    if resp.status_code >= 400:
        raise ProviderError(
            "Could not retrieve the order",
            {"order_id": order_id, "status_code": resp.status_code, "provider_message": errors_text(extract_errors(resp))},
        )

    try:
        order = Order.from_provider(extract_data(resp))
    except (AppError, KeyError) as exc:
        raise ProviderError("Travel provider returned an incomplete order", {"order_id": order_id, "reason": str(exc)})
    out = order.to_dict()
    out["source"] = "provider"
    return out


async def lookup_order(orders: OrderRepository, adapter: DistributionAdapter, order_id: str) -> Dict[str, Any]:
    """Order summary from the local store, falling back to the provider."""

    doc = await orders.get(order_id)
    if doc is not None:
        return _local(doc)
    return await _provider_order(adapter, order_id)


async def lookup_order_by_reference(
    orders: OrderRepository,
    adapter: DistributionAdapter,
    booking_reference: str,
) -> Dict[str, Any]:
    """Booking retrieval by the airline booking reference.

    The provider is searched with its order list filter, and the first match
    is fetched in full.
    """

    reference = booking_reference.strip().upper()
    not_found = NotFoundError(
        BookingErrorCode.ORDER_NOT_FOUND.value,
        "No booking found with this reference",
        {"booking_reference": reference},
    )
    if not reference:
        raise not_found

    doc = await orders.get_by_reference(reference)
    if doc is not None:
        return _local(doc)

    resp = await adapter.list_orders(booking_reference=reference)
    if resp.status_code == 404:
        raise not_found
    if resp.status_code >= 400:
        raise ProviderError(
            "Could not search orders",
            {"booking_reference": reference, "status_code": resp.status_code, "provider_message": errors_text(extract_errors(resp))},
        )

    try:
        body = resp.json()
    except ValueError:
        body = {}
    matches: List[Dict[str, Any]] = [
        o for o in (body.get("data") if isinstance(body, dict) else None) or [] if isinstance(o, dict) and o.get("id")
    ]
    if not matches:
        raise not_found
    return await _provider_order(adapter, str(matches[0]["id"]))
