from __future__ import annotations

"""Provider amount ceiling guard.

The distribution provider only accepts payments up to a ceiling expressed in
its reference currency. The guard normalizes the amount to major units using
the explicit `Money.unit` tag, converts it with a static rate table and rejects
anything over the ceiling before a single network call is made.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional

from skyfare import config
from skyfare.domain.money import Money, normalize_currency, quantize_for
from skyfare.errors import AmountExceedsLimitError, BookingErrorCode, ValidationError

logger = logging.getLogger(__name__)


class ExchangeRateTable:
    """Read-only map of reference-currency units per unit of a currency."""

    def __init__(self, rates: Mapping[str, object], *, reference_currency: str) -> None:
        parsed = {normalize_currency(code): Decimal(str(rate)) for code, rate in rates.items()}
        reference = normalize_currency(reference_currency)
        if parsed.get(reference) != Decimal("1"):
            raise ValueError(f"reference currency {reference} must have rate 1")
        if any(rate <= 0 for rate in parsed.values()):
            raise ValueError("exchange rates must be positive")
        self._rates = MappingProxyType(parsed)
        self.reference_currency = reference

    @classmethod
    def from_config(cls) -> "ExchangeRateTable":
        return cls(config.EXCHANGE_RATES_TO_REFERENCE, reference_currency=config.REFERENCE_CURRENCY)

    @property
    def rates(self) -> Mapping[str, Decimal]:
        return self._rates

    def to_reference(self, amount: Decimal, currency: str) -> Decimal:
        rate = self._rates.get(currency)
        if rate is None:
            raise ValidationError(
                f"Currency {currency} is not supported for payment",
                {"currency": currency, "supported": sorted(self._rates)},
                code=BookingErrorCode.UNSUPPORTED_CURRENCY.value,
            )
        return amount * rate


@dataclass(frozen=True)
class AmountCheck:
    amount: Money
    reference_amount: Decimal
    reference_currency: str
    limit: Decimal


class AmountGuard:
    def __init__(self, rates: ExchangeRateTable, *, max_amount: Decimal = config.PROVIDER_MAX_AMOUNT) -> None:
        self.rates = rates
        self.max_amount = max_amount

    def check(self, amount: Money, currency: Optional[str] = None) -> AmountCheck:
        if currency is not None and normalize_currency(currency) != amount.currency:
            raise ValidationError(
                "Amount currency does not match the requested currency",
                {"amount_currency": amount.currency, "currency": currency},
            )

        major = amount.rounded()
        if major.amount < 0:
            raise ValidationError("Amount cannot be negative", {"amount": str(major.amount)})

        reference = self.rates.to_reference(major.amount, major.currency)
        reference = quantize_for(reference, self.rates.reference_currency)

        if reference > self.max_amount:
            logger.info(
                "Amount %s %s (%s %s) exceeds provider ceiling %s",
                major.amount,
                major.currency,
                reference,
                self.rates.reference_currency,
                self.max_amount,
            )
            raise AmountExceedsLimitError(
                "Booking amount exceeds the maximum accepted payment amount. "
                "Please reduce the amount or split the booking.",
                {
                    "amount": str(major.amount),
                    "currency": major.currency,
                    "reference_amount": str(reference),
                    "reference_currency": self.rates.reference_currency,
                    "limit": str(self.max_amount),
                },
            )

        return AmountCheck(
            amount=major,
            reference_amount=reference,
            reference_currency=self.rates.reference_currency,
            limit=self.max_amount,
        )
