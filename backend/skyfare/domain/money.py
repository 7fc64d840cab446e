from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Union

from skyfare.errors import InvalidInputError


# ISO 4217 currencies without a minor unit. Everything else uses 2.
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "CLP", "ISK", "HUF", "VND", "XAF", "XOF"})

Numeric = Union[Decimal, int, float, str]


class AmountUnit(str, Enum):
    MAJOR = "major"
    MINOR = "minor"


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def quantize_for(value: Decimal, currency: str) -> Decimal:
    """Round to the currency's minor unit with HALF_UP rounding."""
    exp = currency_exponent(currency)
    return value.quantize(Decimal(1).scaleb(-exp), rounding=ROUND_HALF_UP)


def to_decimal(value: Any, *, field: str = "amount") -> Decimal:
    """Convert user/provider input to a finite Decimal.

    Floats go through str() so 20.1 stays 20.1 and not its binary expansion.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidInputError(f"{field} must be a number", {"field": field, "value": value})
    if isinstance(value, Decimal):
        dec = value
    else:
        try:
            dec = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidInputError(f"{field} must be a number", {"field": field, "value": str(value)})
    if not dec.is_finite():
        raise InvalidInputError(f"{field} must be finite", {"field": field, "value": str(value)})
    return dec


def normalize_currency(currency: Any) -> str:
    cur = (currency or "").strip().upper() if isinstance(currency, str) else ""
    if len(cur) != 3 or not cur.isalpha():
        raise InvalidInputError("currency must be a 3-letter ISO code", {"currency": currency})
    return cur


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str
    unit: AmountUnit = AmountUnit.MAJOR

    @classmethod
    def of(cls, amount: Numeric, currency: str, unit: AmountUnit = AmountUnit.MAJOR) -> "Money":
        return cls(amount=to_decimal(amount), currency=normalize_currency(currency), unit=AmountUnit(unit))

    def to_major(self) -> "Money":
        if self.unit == AmountUnit.MAJOR:
            return self
        exp = currency_exponent(self.currency)
        return Money(amount=self.amount.scaleb(-exp), currency=self.currency, unit=AmountUnit.MAJOR)

    def rounded(self) -> "Money":
        major = self.to_major()
        return Money(amount=quantize_for(major.amount, self.currency), currency=self.currency)

    def provider_amount(self) -> str:
        """Decimal string in major units, the format the provider expects."""
        return str(self.rounded().amount)

    def to_dict(self) -> dict[str, str]:
        return {"amount": str(self.amount), "currency": self.currency, "unit": self.unit.value}
