from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from skyfare.config import (
    DISTRIBUTION_API_TOKEN,
    DISTRIBUTION_API_VERSION,
    DISTRIBUTION_BASE_URL,
    DISTRIBUTION_TIMEOUT_SECONDS,
    ORDER_TIMEOUT_SECONDS,
)
from skyfare.errors import UpstreamUnavailableError
from skyfare.services.suppliers.redaction import redact_sensitive_fields

logger = logging.getLogger(__name__)


def extract_data(resp: httpx.Response) -> Dict[str, Any]:
    """Return the `data` object of a provider envelope, or {} if absent."""
    try:
        body = resp.json()
    except ValueError:
        return {}
    data = body.get("data") if isinstance(body, dict) else None
    return data if isinstance(data, dict) else {}


def extract_errors(resp: httpx.Response) -> List[Dict[str, Any]]:
    """Return the provider `errors` list.

    Non-JSON bodies are wrapped into a single error whose message is the raw
    text so callers can still match on it.
    """
    try:
        body = resp.json()
    except ValueError:
        text = (resp.text or "").strip()
        return [{"code": None, "title": None, "message": text[:500]}] if text else []
    if isinstance(body, dict) and isinstance(body.get("errors"), list):
        return [e for e in body["errors"] if isinstance(e, dict)]
    return []


def errors_text(errors: List[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for err in errors:
        for key in ("title", "message", "detail"):
            value = err.get(key)
            if value:
                parts.append(str(value))
    return " ".join(parts)


class DistributionAdapter:
    """Thin HTTP client for the travel distribution API (Duffel-style).

    - Every call opens its own httpx.AsyncClient with the configured timeout
    - Timeouts, transport errors, 5xx and 429 raise UpstreamUnavailableError
    - Any other response is returned raw; mapping status codes and bodies is
      left to the calling service
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        order_timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or DISTRIBUTION_BASE_URL).rstrip("/")
        self.api_token = api_token if api_token is not None else DISTRIBUTION_API_TOKEN
        self.api_version = api_version or DISTRIBUTION_API_VERSION
        self.timeout = float(timeout or DISTRIBUTION_TIMEOUT_SECONDS or 10.0)
        self.order_timeout = float(order_timeout or ORDER_TIMEOUT_SECONDS or 60.0)

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Duffel-Version": self.api_version,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if json is not None:
            logger.debug("%s %s %s payload=%s", operation, method, path, redact_sensitive_fields(json))

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
                resp = await client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=self._headers(idempotency_key),
                )
        except httpx.TimeoutException:
            logger.warning("Distribution %s timed out (%s %s)", operation, method, path)
            raise UpstreamUnavailableError(
                "The travel provider did not respond in time. Please try again.",
                {"operation": operation, "reason": "timeout"},
            )
        except httpx.TransportError as exc:
            logger.warning("Distribution %s transport error: %s", operation, exc)
            raise UpstreamUnavailableError(
                "The travel provider could not be reached. Please try again.",
                {"operation": operation, "reason": "transport_error"},
            )

        if resp.status_code == 429 or resp.status_code >= 500:
            details: Dict[str, Any] = {"operation": operation, "status_code": resp.status_code}
            retry_after = resp.headers.get("Retry-After")
            if retry_after:
                details["retry_after"] = retry_after
            logger.warning(
                "Distribution %s unavailable status=%s retry_after=%s",
                operation,
                resp.status_code,
                retry_after,
            )
            raise UpstreamUnavailableError(
                "The travel provider is temporarily unavailable. Please try again.",
                details,
            )

        if resp.status_code >= 400:
            logger.info(
                "Distribution %s rejected status=%s errors=%s",
                operation,
                resp.status_code,
                redact_sensitive_fields({"errors": extract_errors(resp)}),
            )
        return resp

    async def get_offer(self, offer_id: str) -> httpx.Response:
        return await self._request(
            "get_offer",
            "GET",
            f"/air/offers/{offer_id}",
            params={"return_available_services": "true"},
        )

    async def create_payment_intent(
        self,
        *,
        amount: str,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> httpx.Response:
        payload = {"data": {"amount": amount, "currency": currency, "metadata": metadata}}
        return await self._request(
            "create_payment_intent",
            "POST",
            "/payments/payment_intents",
            json=payload,
            idempotency_key=idempotency_key,
        )

    async def update_payment_intent(
        self,
        payment_intent_id: str,
        *,
        amount: str,
        currency: str,
        metadata: Dict[str, str],
    ) -> httpx.Response:
        payload = {"data": {"amount": amount, "currency": currency, "metadata": metadata}}
        return await self._request(
            "update_payment_intent",
            "PATCH",
            f"/payments/payment_intents/{payment_intent_id}",
            json=payload,
        )

    async def confirm_payment_intent(
        self,
        payment_intent_id: str,
        *,
        payment_method: Optional[Dict[str, Any]] = None,
        return_url: Optional[str] = None,
    ) -> httpx.Response:
        data: Dict[str, Any] = {}
        if payment_method:
            data["payment_method"] = payment_method
        if return_url:
            data["return_url"] = return_url
        return await self._request(
            "confirm_payment_intent",
            "POST",
            f"/payments/payment_intents/{payment_intent_id}/actions/confirm",
            json={"data": data},
        )

    async def create_order(self, payload: Dict[str, Any], *, idempotency_key: str) -> httpx.Response:
        return await self._request(
            "create_order",
            "POST",
            "/air/orders",
            json={"data": payload},
            idempotency_key=idempotency_key,
            timeout=self.order_timeout,
        )

    async def get_order(self, order_id: str) -> httpx.Response:
        return await self._request("get_order", "GET", f"/air/orders/{order_id}")

    async def list_orders(self, *, booking_reference: str) -> httpx.Response:
        return await self._request(
            "list_orders",
            "GET",
            "/air/orders",
            params={"booking_reference": booking_reference},
        )
