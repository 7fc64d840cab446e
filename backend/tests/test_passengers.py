from __future__ import annotations

import pytest

from skyfare.errors import InvalidInputError
from skyfare.services.passengers import format_passengers, format_phone_e164, normalize_gender
from provider_payloads import passengers


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("+447700900123", "+447700900123"),
        ("+44 7700 900123", "+447700900123"),
        ("+1447700900123", "+447700900123"),
        ("0044 7700 900123", "+447700900123"),
        ("07700 900123", "+447700900123"),
        ("0201234567", "+1201234567"),
        ("447700900123", "+447700900123"),
        ("2025550123", "+12025550123"),
        ("", ""),
        (None, ""),
    ],
)
def test_phone_numbers_are_normalized_to_e164(raw, expected) -> None:
    assert format_phone_e164(raw) == expected


def test_gender_mapping() -> None:
    assert normalize_gender("male") == "m"
    assert normalize_gender("Female") == "f"
    assert normalize_gender("x") == "x"
    with pytest.raises(InvalidInputError):
        normalize_gender("unknown")


def test_offer_passenger_ids_are_merged_by_position() -> None:
    formatted = format_passengers(passengers(), ["pas_1", "pas_2"])

    assert [p["id"] for p in formatted] == ["pas_1", "pas_2"]
    assert formatted[0]["gender"] == "f"
    assert formatted[0]["phone_number"] == "+447700900123"
    assert formatted[1]["phone_number"] == "+447700900456"
    assert "identity_documents" not in formatted[0]


def test_identity_document_is_forwarded() -> None:
    pax = passengers()[:1]
    pax[0]["identity_document"] = {
        "unique_identifier": "123456789",
        "issuing_country_code": "GB",
        "expires_on": "2031-01-01",
    }

    formatted = format_passengers(pax)

    assert formatted[0]["identity_documents"] == [
        {
            "type": "passport",
            "unique_identifier": "123456789",
            "issuing_country_code": "GB",
            "expires_on": "2031-01-01",
        }
    ]


def test_passenger_count_mismatch_is_rejected() -> None:
    with pytest.raises(InvalidInputError):
        format_passengers(passengers(), ["pas_1"])
