from __future__ import annotations

"""Pricing engine for flight bookings.

Computes the chargeable amount from:
- the provider base fare (already includes taxes)
- flat per-passenger markup and service fee
- per-ancillary markup keyed by ancillary kind: fixed + provider_amount * rate

This module is the only place markup is applied. Ancillary amounts must be
the raw provider amounts; selections flagged as already marked up are
rejected.

Intermediate sums keep full Decimal precision, only `grand_total` is rounded
to the currency's minor unit.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from skyfare import config
from skyfare.domain.money import Money, normalize_currency, quantize_for, to_decimal
from skyfare.errors import InvalidInputError


class AncillaryKind(str, Enum):
    BAGGAGE = "baggage"
    SEAT = "seat"
    CANCELLATION_PROTECTION = "cancellation_protection"
    OTHER = "other"


_KIND_ALIASES = {
    "baggage": AncillaryKind.BAGGAGE,
    "bag": AncillaryKind.BAGGAGE,
    "bags": AncillaryKind.BAGGAGE,
    "checked_bag": AncillaryKind.BAGGAGE,
    "seat": AncillaryKind.SEAT,
    "seats": AncillaryKind.SEAT,
    "cancellation_protection": AncillaryKind.CANCELLATION_PROTECTION,
    "cancel_for_any_reason": AncillaryKind.CANCELLATION_PROTECTION,
    "cfar": AncillaryKind.CANCELLATION_PROTECTION,
}


def parse_kind(raw: Optional[str]) -> AncillaryKind:
    key = (raw or "").strip().lower().replace("-", "_")
    return _KIND_ALIASES.get(key, AncillaryKind.OTHER)


@dataclass(frozen=True)
class MarkupRule:
    fixed_amount: Decimal
    rate: Decimal

    def markup_for(self, provider_amount: Decimal) -> Decimal:
        return self.fixed_amount + provider_amount * self.rate


ANCILLARY_MARKUP: Mapping[AncillaryKind, MarkupRule] = MappingProxyType(
    {
        AncillaryKind.BAGGAGE: MarkupRule(fixed_amount=Decimal("1.00"), rate=Decimal("0.09")),
        AncillaryKind.SEAT: MarkupRule(fixed_amount=Decimal("2.00"), rate=Decimal("0.08")),
        AncillaryKind.CANCELLATION_PROTECTION: MarkupRule(fixed_amount=Decimal("0.00"), rate=Decimal("0.25")),
    }
)

DEFAULT_MARKUP_RULE = MarkupRule(fixed_amount=Decimal("0.00"), rate=Decimal("0.10"))


@dataclass(frozen=True)
class AncillarySelection:
    service_id: str
    kind: AncillaryKind
    provider_amount: Decimal
    currency: str
    quantity: int = 1
    passenger_ref: Optional[str] = None
    segment_refs: Tuple[str, ...] = ()
    markup_applied: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AncillarySelection":
        service_id = str(data.get("service_id") or data.get("id") or "").strip()
        if not service_id:
            raise InvalidInputError("Ancillary selection is missing service_id")
        quantity = data.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidInputError("Ancillary quantity must be an integer", {"service_id": service_id})
        segment_refs = data.get("segment_refs") or data.get("segment_ids") or ()
        return cls(
            service_id=service_id,
            kind=parse_kind(data.get("kind") or data.get("type")),
            provider_amount=to_decimal(data.get("provider_amount"), field="provider_amount"),
            currency=normalize_currency(data.get("currency")),
            quantity=quantity,
            passenger_ref=data.get("passenger_ref") or data.get("passenger_id"),
            segment_refs=tuple(str(s) for s in segment_refs),
            markup_applied=bool(data.get("markup_applied", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": self.service_id,
            "kind": self.kind.value,
            "provider_amount": str(self.provider_amount),
            "currency": self.currency,
            "quantity": self.quantity,
            "passenger_ref": self.passenger_ref,
            "segment_refs": list(self.segment_refs),
            "markup_applied": self.markup_applied,
        }


@dataclass(frozen=True)
class AncillaryLineItem:
    service_id: str
    kind: AncillaryKind
    quantity: int
    original_amount: Decimal
    markup: Decimal
    amount: Decimal
    currency: str
    passenger_ref: Optional[str] = None
    segment_refs: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": self.service_id,
            "kind": self.kind.value,
            "quantity": self.quantity,
            "original_amount": str(self.original_amount),
            "markup": str(self.markup),
            "amount": str(self.amount),
            "currency": self.currency,
            "passenger_ref": self.passenger_ref,
            "segment_refs": list(self.segment_refs),
        }


@dataclass(frozen=True)
class PricingBreakdown:
    base_amount: Decimal
    per_passenger_service_fee: Decimal
    per_passenger_markup: Decimal
    passenger_count: int
    markup_total: Decimal
    service_total: Decimal
    ancillary_total: Decimal
    grand_total: Decimal
    currency: str
    ancillary_line_items: Tuple[AncillaryLineItem, ...] = field(default_factory=tuple)

    @property
    def total(self) -> Money:
        return Money(amount=self.grand_total, currency=self.currency)

    @property
    def ancillary_markup_total(self) -> Decimal:
        return sum((item.markup for item in self.ancillary_line_items), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_amount": str(self.base_amount),
            "per_passenger_service_fee": str(self.per_passenger_service_fee),
            "per_passenger_markup": str(self.per_passenger_markup),
            "passenger_count": self.passenger_count,
            "ancillary_line_items": [item.to_dict() for item in self.ancillary_line_items],
            "markup_total": str(self.markup_total),
            "service_total": str(self.service_total),
            "ancillary_total": str(self.ancillary_total),
            "grand_total": str(self.grand_total),
            "currency": self.currency,
        }

    def metadata_snapshot(self) -> Dict[str, str]:
        """Flat string map for provider-side metadata (audit/reconciliation)."""
        return {
            "pricing_base_amount": str(self.base_amount),
            "pricing_markup_total": str(self.markup_total),
            "pricing_service_total": str(self.service_total),
            "pricing_ancillary_total": str(self.ancillary_total),
            "pricing_ancillary_markup": str(self.ancillary_markup_total),
            "pricing_grand_total": str(self.grand_total),
            "pricing_currency": self.currency,
            "pricing_passenger_count": str(self.passenger_count),
        }


class PricingEngine:
    """Pure pricing computation. No I/O, no clock, no randomness."""

    def __init__(
        self,
        *,
        markup_per_passenger: Decimal = config.MARKUP_PER_PASSENGER,
        service_fee_per_passenger: Decimal = config.SERVICE_FEE_PER_PASSENGER,
        markup_rules: Mapping[AncillaryKind, MarkupRule] = ANCILLARY_MARKUP,
        default_rule: MarkupRule = DEFAULT_MARKUP_RULE,
    ) -> None:
        if markup_per_passenger < 0 or service_fee_per_passenger < 0:
            raise ValueError("per-passenger fees must be >= 0")
        self.markup_per_passenger = markup_per_passenger
        self.service_fee_per_passenger = service_fee_per_passenger
        self.markup_rules = markup_rules
        self.default_rule = default_rule

    def rule_for(self, kind: AncillaryKind) -> MarkupRule:
        return self.markup_rules.get(kind, self.default_rule)

    def compute(
        self,
        base: Money,
        passenger_count: int,
        ancillaries: Sequence[AncillarySelection] = (),
    ) -> PricingBreakdown:
        base = base.to_major()
        if not base.amount.is_finite() or base.amount < 0:
            raise InvalidInputError("Base amount cannot be negative", {"base_amount": str(base.amount)})
        if isinstance(passenger_count, bool) or not isinstance(passenger_count, int) or passenger_count < 1:
            raise InvalidInputError("At least one passenger is required", {"passenger_count": passenger_count})

        currency = base.currency
        line_items = tuple(self._line_item(selection, currency) for selection in ancillaries)

        markup_total = self.markup_per_passenger * passenger_count
        service_total = self.service_fee_per_passenger * passenger_count
        ancillary_total = sum((item.amount for item in line_items), Decimal("0"))

        grand_total = quantize_for(base.amount + markup_total + service_total + ancillary_total, currency)

        return PricingBreakdown(
            base_amount=base.amount,
            per_passenger_service_fee=self.service_fee_per_passenger,
            per_passenger_markup=self.markup_per_passenger,
            passenger_count=passenger_count,
            markup_total=markup_total,
            service_total=service_total,
            ancillary_total=ancillary_total,
            grand_total=grand_total,
            currency=currency,
            ancillary_line_items=line_items,
        )

    def _line_item(self, selection: AncillarySelection, currency: str) -> AncillaryLineItem:
        details = {"service_id": selection.service_id}
        if selection.markup_applied:
            raise InvalidInputError("Ancillary amounts must be raw provider amounts without markup", details)
        if not selection.provider_amount.is_finite() or selection.provider_amount < 0:
            raise InvalidInputError("Ancillary amount cannot be negative", details)
        if selection.quantity < 1:
            raise InvalidInputError("Ancillary quantity must be >= 1", details)
        if selection.currency != currency:
            raise InvalidInputError(
                "Ancillary currency does not match offer currency",
                {**details, "currency": selection.currency, "expected": currency},
            )

        original = selection.provider_amount * selection.quantity
        markup = self.rule_for(selection.kind).markup_for(selection.provider_amount) * selection.quantity
        return AncillaryLineItem(
            service_id=selection.service_id,
            kind=selection.kind,
            quantity=selection.quantity,
            original_amount=original,
            markup=markup,
            amount=original + markup,
            currency=currency,
            passenger_ref=selection.passenger_ref,
            segment_refs=selection.segment_refs,
        )
