from __future__ import annotations

"""Application-level configuration.

Everything is read from the environment once at import time. Values that
influence money (fees, ceilings, exchange rates) are exposed as Decimal
strings parsed here so the rest of the code never touches floats.
"""

from decimal import Decimal
import os


def _env_flag(name: str, default: bool = True) -> bool:
    """Read a boolean-like flag from environment.

    Accepted falsy values: "0", "false", "off", "no" (case-insensitive).
    Anything else (or unset) falls back to `default`.
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"0", "false", "off", "no"}:
        return False
    if value in {"1", "true", "on", "yes"}:
        return True
    return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.environ.get(name) or "").strip()
    return Decimal(raw or default)


# Application constants
API_PREFIX = "/api"
APP_NAME = "Skyfare Storefront API"
APP_VERSION = "1.0.0"
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

ENABLE_OPS_ROUTERS: bool = _env_flag("ENABLE_OPS_ROUTERS", default=True)


# Distribution provider (Duffel-compatible API)
DISTRIBUTION_BASE_URL = os.environ.get("DISTRIBUTION_BASE_URL", "https://api.duffel.com")
DISTRIBUTION_API_TOKEN = os.environ.get("DISTRIBUTION_API_TOKEN") or os.environ.get("DUFFEL_API", "")
DISTRIBUTION_API_VERSION = os.environ.get("DISTRIBUTION_API_VERSION", "v2")
DISTRIBUTION_TIMEOUT_SECONDS = float(os.environ.get("DISTRIBUTION_TIMEOUT_SECONDS", "10"))
ORDER_TIMEOUT_SECONDS = float(os.environ.get("ORDER_TIMEOUT_SECONDS", "60"))

PAYMENT_RETURN_URL = os.environ.get("PAYMENT_RETURN_URL", "http://localhost:3000/payment/complete")


# Pricing
MARKUP_PER_PASSENGER = _env_decimal("MARKUP_PER_PASSENGER", "2.00")
SERVICE_FEE_PER_PASSENGER = _env_decimal("SERVICE_FEE_PER_PASSENGER", "1.00")


# Provider payment ceiling, expressed in REFERENCE_CURRENCY
REFERENCE_CURRENCY = os.environ.get("REFERENCE_CURRENCY", "GBP").upper()
PROVIDER_MAX_AMOUNT = _env_decimal("PROVIDER_MAX_AMOUNT", "5000")

# Units of REFERENCE_CURRENCY per unit of the keyed currency.
EXCHANGE_RATES_TO_REFERENCE = {
    "GBP": "1",
    "EUR": "0.85",
    "USD": "0.78",
}


# Seconds after which an unfinished order-creation claim may be taken over
ORDER_CLAIM_TTL_SECONDS = int(os.environ.get("ORDER_CLAIM_TTL_SECONDS", "120"))
