from __future__ import annotations

"""Passenger formatting for provider order submission."""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from skyfare.errors import InvalidInputError

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")

_GENDERS = {"male": "m", "female": "f", "m": "m", "f": "f", "x": "x"}


def format_phone_e164(raw: Optional[str]) -> str:
    """Best-effort E.164 normalization of a user-entered phone number.

    Rules:
    - "+144..." (UK number typed with a stray US prefix) becomes "+44..."
    - other "+" numbers are kept as is
    - "00" international prefix becomes "+"
    - a leading "0" with more than 10 digits is treated as UK (+44), shorter
      ones as US/Canada (+1)
    - "44..." without "+" is UK
    - anything else defaults to +1
    """

    if not raw:
        return ""
    phone = raw.strip()
    if phone.startswith("+"):
        if phone.startswith("+144") and len(phone) > 12:
            return "+" + phone[2:]
        return "+" + _NON_DIGITS.sub("", phone)

    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        return ""
    if digits.startswith("00"):
        return "+" + digits[2:]
    if digits.startswith("0"):
        if len(digits) > 10:
            return "+44" + digits[1:]
        return "+1" + digits[1:]
    if digits.startswith("44"):
        return "+" + digits
    return "+1" + digits


def normalize_gender(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    gender = _GENDERS.get(value)
    if gender is None:
        raise InvalidInputError("Passenger gender must be male, female, m, f or x", {"gender": raw})
    return gender


def merge_offer_passenger_ids(
    passengers: Sequence[Mapping[str, Any]],
    offer_passenger_ids: Sequence[str],
) -> List[Dict[str, Any]]:
    """Attach the offer's provider passenger ids to submitted passengers by position."""

    if offer_passenger_ids and len(passengers) != len(offer_passenger_ids):
        raise InvalidInputError(
            "Passenger count does not match the selected offer",
            {"passengers": len(passengers), "offer_passengers": len(offer_passenger_ids)},
        )

    merged: List[Dict[str, Any]] = []
    for idx, passenger in enumerate(passengers):
        item = dict(passenger)
        if offer_passenger_ids:
            item["id"] = offer_passenger_ids[idx]
        merged.append(item)
    return merged


def to_provider_passenger(passenger: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": passenger.get("id"),
        "title": (passenger.get("title") or "").lower() or None,
        "given_name": passenger.get("given_name"),
        "family_name": passenger.get("family_name"),
        "gender": normalize_gender(passenger.get("gender")),
        "born_on": passenger.get("born_on"),
        "email": passenger.get("email"),
        "phone_number": format_phone_e164(passenger.get("phone_number")),
    }

    document = passenger.get("identity_document")
    if document:
        out["identity_documents"] = [
            {
                "type": document.get("type") or "passport",
                "unique_identifier": document.get("unique_identifier"),
                "issuing_country_code": document.get("issuing_country_code"),
                "expires_on": document.get("expires_on"),
            }
        ]

    return {k: v for k, v in out.items() if v is not None}


def format_passengers(
    passengers: Sequence[Mapping[str, Any]],
    offer_passenger_ids: Sequence[str] = (),
) -> List[Dict[str, Any]]:
    if not passengers:
        raise InvalidInputError("At least one passenger is required")
    merged = merge_offer_passenger_ids(passengers, offer_passenger_ids)
    return [to_provider_passenger(p) for p in merged]
