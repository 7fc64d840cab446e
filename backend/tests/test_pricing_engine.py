from __future__ import annotations

import json
from decimal import Decimal

import pytest

from skyfare.domain.money import AmountUnit, Money
from skyfare.errors import InvalidInputError
from skyfare.services.pricing_engine import AncillaryKind, AncillarySelection, PricingEngine


def _selection(kind: AncillaryKind, amount: str, *, currency: str = "EUR", quantity: int = 1, **kwargs) -> AncillarySelection:
    return AncillarySelection(
        service_id=f"ase_{kind.value}",
        kind=kind,
        provider_amount=Decimal(amount),
        currency=currency,
        quantity=quantity,
        **kwargs,
    )


def test_baggage_booking_for_two_passengers_totals_478_80() -> None:
    engine = PricingEngine()

    breakdown = engine.compute(
        Money.of("450.00", "EUR"),
        2,
        [_selection(AncillaryKind.BAGGAGE, "20.00")],
    )

    assert breakdown.markup_total == Decimal("4.00")
    assert breakdown.service_total == Decimal("2.00")
    line = breakdown.ancillary_line_items[0]
    assert line.original_amount == Decimal("20.00")
    assert line.markup == Decimal("2.80")
    assert line.amount == Decimal("22.80")
    assert breakdown.ancillary_total == Decimal("22.80")
    assert breakdown.grand_total == Decimal("478.80")
    assert breakdown.total == Money(Decimal("478.80"), "EUR")


def test_compute_is_deterministic() -> None:
    engine = PricingEngine()
    selections = [
        _selection(AncillaryKind.BAGGAGE, "20.00"),
        _selection(AncillaryKind.SEAT, "12.35"),
        _selection(AncillaryKind.CANCELLATION_PROTECTION, "33.33"),
    ]

    first = engine.compute(Money.of("199.99", "EUR"), 3, selections)
    second = engine.compute(Money.of("199.99", "EUR"), 3, selections)

    assert first == second
    assert json.dumps(first.to_dict(), sort_keys=True) == json.dumps(second.to_dict(), sort_keys=True)


@pytest.mark.parametrize(
    "base,count,amounts",
    [
        ("450.00", 2, ["20.00"]),
        ("0.00", 1, []),
        ("1234.56", 4, ["19.99", "7.77", "0.01"]),
        ("99.995", 1, ["10.005"]),
    ],
)
def test_grand_total_matches_components(base: str, count: int, amounts: list[str]) -> None:
    engine = PricingEngine()
    selections = [_selection(AncillaryKind.SEAT, a) for a in amounts]

    breakdown = engine.compute(Money.of(base, "EUR"), count, selections)

    expected = breakdown.base_amount + breakdown.markup_total + breakdown.service_total + breakdown.ancillary_total
    assert abs(breakdown.grand_total - expected) <= Decimal("0.01")
    assert breakdown.grand_total == breakdown.grand_total.quantize(Decimal("0.01"))


def test_markup_rules_per_kind_and_default() -> None:
    engine = PricingEngine()

    breakdown = engine.compute(
        Money.of("100.00", "EUR"),
        1,
        [
            _selection(AncillaryKind.SEAT, "10.00"),
            _selection(AncillaryKind.CANCELLATION_PROTECTION, "40.00"),
            _selection(AncillaryKind.OTHER, "30.00"),
        ],
    )

    seat, cfar, other = breakdown.ancillary_line_items
    assert seat.markup == Decimal("2.80")
    assert cfar.markup == Decimal("10.00")
    assert other.markup == Decimal("3.00")


def test_quantity_multiplies_amount_and_markup() -> None:
    engine = PricingEngine()

    breakdown = engine.compute(Money.of("100.00", "EUR"), 1, [_selection(AncillaryKind.BAGGAGE, "20.00", quantity=2)])

    line = breakdown.ancillary_line_items[0]
    assert line.original_amount == Decimal("40.00")
    assert line.markup == Decimal("5.60")
    assert breakdown.grand_total == Decimal("148.60")


def test_minor_unit_base_is_normalized() -> None:
    engine = PricingEngine()

    breakdown = engine.compute(Money.of(45000, "EUR", AmountUnit.MINOR), 2)

    assert breakdown.base_amount == Decimal("450.00")
    assert breakdown.grand_total == Decimal("456.00")


def test_zero_decimal_currency_rounds_to_whole_units() -> None:
    engine = PricingEngine()

    breakdown = engine.compute(Money.of("10000", "JPY"), 1, [_selection(AncillaryKind.BAGGAGE, "1505", currency="JPY")])

    assert breakdown.grand_total == Decimal("11644")


def test_pre_marked_up_selection_is_rejected() -> None:
    engine = PricingEngine()

    with pytest.raises(InvalidInputError) as exc:
        engine.compute(Money.of("450.00", "EUR"), 1, [_selection(AncillaryKind.BAGGAGE, "22.80", markup_applied=True)])

    assert exc.value.code == "invalid_input"


def test_currency_mismatch_is_rejected() -> None:
    engine = PricingEngine()

    with pytest.raises(InvalidInputError):
        engine.compute(Money.of("450.00", "EUR"), 1, [_selection(AncillaryKind.SEAT, "10.00", currency="GBP")])


@pytest.mark.parametrize("count", [0, -1])
def test_passenger_count_must_be_positive(count: int) -> None:
    with pytest.raises(InvalidInputError):
        PricingEngine().compute(Money.of("450.00", "EUR"), count)


def test_negative_amounts_are_rejected() -> None:
    engine = PricingEngine()

    with pytest.raises(InvalidInputError):
        engine.compute(Money.of("-1.00", "EUR"), 1)
    with pytest.raises(InvalidInputError):
        engine.compute(Money.of("10.00", "EUR"), 1, [_selection(AncillaryKind.SEAT, "-5.00")])


def test_selection_from_dict_maps_provider_service_types() -> None:
    selection = AncillarySelection.from_dict(
        {"service_id": "ase_1", "type": "cancel_for_any_reason", "provider_amount": "12.50", "currency": "eur"}
    )

    assert selection.kind == AncillaryKind.CANCELLATION_PROTECTION
    assert selection.provider_amount == Decimal("12.50")
    assert selection.currency == "EUR"


def test_non_numeric_amount_is_rejected() -> None:
    with pytest.raises(InvalidInputError):
        AncillarySelection.from_dict({"service_id": "ase_1", "provider_amount": "abc", "currency": "EUR"})
