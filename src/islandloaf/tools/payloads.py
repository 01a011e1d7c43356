"""Payload shapes, one per tool.

Every payload is validated and normalized before it is fingerprinted, so two
requests that differ only in key order or in number formatting hash alike.
"""

from __future__ import annotations

import re
from datetime import date
from enum import StrEnum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

EMAIL_PATTERN = re.compile(r"^[\w.+-]+@[\w-]+(\.[\w-]+)+$")


class ToolPayload(BaseModel):
    """Base for all tool payloads."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    source: str | None = Field(default=None, description="Channel the request came from")
    lead: dict[str, Any] | None = Field(
        default=None, description="Sender context attached by the lead router"
    )


def _check_email(value: str | None) -> str | None:
    if value is not None and not EMAIL_PATTERN.match(value):
        raise ValueError(f"invalid email address: {value!r}")
    return value.lower() if value else value


Email = Annotated[str, AfterValidator(_check_email)]


class BusinessType(StrEnum):
    STAYS = "stays"
    VEHICLES = "vehicles"
    TOURS = "tours"
    WELLNESS = "wellness"
    TICKETS = "tickets"
    PRODUCTS = "products"


# --- Vendors ---


class VendorCreate(ToolPayload):
    email: Email
    full_name: str = Field(min_length=1)
    business_name: str = Field(min_length=1)
    business_type: BusinessType = BusinessType.STAYS
    phone: str | None = None
    categories_allowed: list[str] = Field(default_factory=list)


class VendorApprove(ToolPayload):
    vendor_id: int = Field(gt=0)
    notes: str | None = None


class VendorSuspend(ToolPayload):
    vendor_id: int = Field(gt=0)
    reason: str = Field(min_length=1)


# --- Services & pricing ---


class ServiceCreate(ToolPayload):
    vendor_id: int = Field(gt=0)
    name: str = Field(min_length=1)
    business_type: BusinessType
    base_price: float = Field(gt=0)
    description: str | None = None


class ServiceUpdate(ToolPayload):
    service_id: int = Field(gt=0)
    name: str | None = None
    description: str | None = None
    available: bool | None = None


class ServicePriceUpdate(ToolPayload):
    service_id: int = Field(gt=0)
    base_price: float = Field(gt=0)
    currency: str = "USD"


# --- Bookings ---


class BookingStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingCreate(ToolPayload):
    service_id: int = Field(gt=0)
    customer_name: str = Field(min_length=1)
    customer_email: Email
    start_date: date
    end_date: date
    total_price: float = Field(gt=0)
    commission: float | None = Field(default=None, ge=0)
    notes: str | None = None

    @model_validator(mode="after")
    def check_dates_in_order(self) -> BookingCreate:
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class BookingStatusUpdate(ToolPayload):
    booking_id: int = Field(gt=0)
    status: BookingStatus


class BookingCancel(ToolPayload):
    booking_id: int = Field(gt=0)
    reason: str = Field(min_length=1)


# --- Calendar ---


class CalendarCreate(ToolPayload):
    service_id: int = Field(gt=0)
    ical_url: str = Field(min_length=1)
    name: str | None = None


class CalendarSync(ToolPayload):
    service_id: int | None = Field(default=None, gt=0)
    calendar_id: int | None = Field(default=None, gt=0)
    start_date: date | None = None
    end_date: date | None = None
    message: str | None = None


# --- Support ---


class TicketPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TicketCreate(ToolPayload):
    subject: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1)
    priority: TicketPriority = TicketPriority.NORMAL
    customer_email: Email | None = None
    customer_phone: str | None = None


# --- Marketing ---


class CampaignCreate(ToolPayload):
    name: str = Field(min_length=1)
    channel: str = "email"
    audience: str | None = None
    content: str | None = None


class CampaignLaunch(ToolPayload):
    campaign_id: int = Field(gt=0)


class ContentGenerate(ToolPayload):
    prompt: str = Field(min_length=1, max_length=4000)
    content_type: str = "social_post"
    max_words: int = Field(default=120, gt=0, le=2000)


# --- Finance ---


class CheckoutCreate(ToolPayload):
    booking_id: int = Field(gt=0)
    amount: float = Field(gt=0)
    currency: str = "USD"
    customer_email: Email


class RefundCreate(ToolPayload):
    booking_id: int = Field(gt=0)
    amount: float = Field(gt=0)
    reason: str = Field(min_length=1)
    payment_intent_id: str | None = None
