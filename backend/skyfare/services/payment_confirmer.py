from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from skyfare import config
from skyfare.errors import ProviderError
from skyfare.services.payment_intents import PaymentIntentStatus, parse_intent_status
from skyfare.services.suppliers.distribution_adapter import (
    DistributionAdapter,
    errors_text,
    extract_data,
    extract_errors,
)

logger = logging.getLogger(__name__)

# Provider responses that mean the card or method was declined.
DECLINE_STATUS_CODES = frozenset({402, 422})


class ConfirmationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"


@dataclass(frozen=True)
class ConfirmationOutcome:
    status: ConfirmationStatus
    payment_intent_id: str
    client_secret: Optional[str] = None
    decline_code: Optional[str] = None
    message: Optional[str] = None


class PaymentConfirmer:
    def __init__(self, adapter: DistributionAdapter, *, return_url: str = config.PAYMENT_RETURN_URL) -> None:
        self.adapter = adapter
        self.return_url = return_url

    async def confirm(
        self,
        payment_intent_id: str,
        payment_method: Optional[Dict[str, Any]] = None,
    ) -> ConfirmationOutcome:
        """Submit the payment method (or re-confirm after a challenge) and classify the result."""

        resp = await self.adapter.confirm_payment_intent(
            payment_intent_id,
            payment_method=payment_method,
            return_url=self.return_url,
        )

        if resp.status_code >= 400:
            errors = extract_errors(resp)
            if resp.status_code in DECLINE_STATUS_CODES:
                code = next((e.get("code") for e in errors if e.get("code")), None)
                logger.info("Payment %s declined (code=%s)", payment_intent_id, code)
                return ConfirmationOutcome(
                    status=ConfirmationStatus.FAILED,
                    payment_intent_id=payment_intent_id,
                    decline_code=code,
                    message=errors_text(errors) or "Payment was declined",
                )
            raise ProviderError(
                "Could not confirm the payment. Please try again.",
                {
                    "payment_intent_id": payment_intent_id,
                    "status_code": resp.status_code,
                    "provider_message": errors_text(errors),
                },
            )

        data = extract_data(resp)
        status = parse_intent_status(data.get("status"))
        client_secret = data.get("client_secret") or data.get("client_token")

        if status == PaymentIntentStatus.SUCCEEDED:
            return ConfirmationOutcome(status=ConfirmationStatus.SUCCEEDED, payment_intent_id=payment_intent_id)

        if data.get("requires_action") or status == PaymentIntentStatus.REQUIRES_ACTION:
            return ConfirmationOutcome(
                status=ConfirmationStatus.REQUIRES_ACTION,
                payment_intent_id=payment_intent_id,
                client_secret=client_secret,
            )

        # requires_payment_method after a confirm means the method was refused
        if status in (PaymentIntentStatus.FAILED, PaymentIntentStatus.REQUIRES_PAYMENT_METHOD):
            error = data.get("last_payment_error") or {}
            return ConfirmationOutcome(
                status=ConfirmationStatus.FAILED,
                payment_intent_id=payment_intent_id,
                decline_code=error.get("code"),
                message=error.get("message") or "Payment was declined",
            )

        raise ProviderError(
            "Travel provider returned an unexpected payment status",
            {"payment_intent_id": payment_intent_id, "status": status.value},
        )
