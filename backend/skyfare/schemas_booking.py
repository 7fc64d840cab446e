from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class MoneyIn(BaseModel):
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    # Amounts are major units ("450.00") unless the caller says otherwise
    unit: Literal["major", "minor"] = "major"


class AncillaryIn(BaseModel):
    service_id: str = Field(..., min_length=1)
    kind: Optional[str] = None
    provider_amount: Optional[Decimal] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    quantity: int = Field(1, ge=1, le=20)
    passenger_ref: Optional[str] = None
    markup_applied: bool = False


class IdentityDocumentIn(BaseModel):
    type: str = "passport"
    unique_identifier: str = Field(..., min_length=1)
    issuing_country_code: str = Field(..., min_length=2, max_length=2)
    expires_on: date


class PassengerIn(BaseModel):
    title: Optional[str] = None
    given_name: str = Field(..., min_length=1, max_length=100)
    family_name: str = Field(..., min_length=1, max_length=100)
    gender: str = Field(..., min_length=1)
    born_on: date
    email: EmailStr
    phone_number: str = Field(..., min_length=3, max_length=50)
    identity_document: Optional[IdentityDocumentIn] = None


class PricingQuoteRequest(BaseModel):
    base: MoneyIn
    passenger_count: int = Field(..., ge=1, le=9)
    ancillaries: List[AncillaryIn] = Field(default_factory=list)


class AncillaryPriceRequest(BaseModel):
    offer_id: str = Field(..., min_length=1)
    passenger_count: int = Field(1, ge=1, le=9)
    services: List[AncillaryIn] = Field(default_factory=list)


class BookingStartRequest(BaseModel):
    offer_id: str = Field(..., min_length=1)
    base: MoneyIn
    passengers: List[PassengerIn] = Field(..., min_length=1, max_length=9)
    ancillaries: List[AncillaryIn] = Field(default_factory=list)
    booking_attempt_id: Optional[str] = Field(None, min_length=8, max_length=128)


class AncillaryUpdateRequest(BaseModel):
    ancillaries: List[AncillaryIn] = Field(default_factory=list)


class ConfirmRequest(BaseModel):
    payment_method: Optional[Dict[str, Any]] = None


class ResumeRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)


class ReconciliationResolveRequest(BaseModel):
    resolution: Literal["order_completed", "voided", "refunded", "manual"]
    note: Optional[str] = Field(None, max_length=500)


def dump_all(items: List[BaseModel]) -> List[Dict[str, Any]]:
    """JSON-safe dicts (Decimal and date as strings) ready for MongoDB."""
    return [item.model_dump(mode="json", exclude_none=True) for item in items]
