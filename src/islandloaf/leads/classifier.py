"""Keyword classification and field extraction for inbound chat messages.

Classification is first-match-wins over a fixed order of lead types. The
order matters: a message mentioning both a vendor and a price is a vendor
lead. Booking patterns look for an intent to book ("book a room", "new
booking", "reservation") rather than the bare word, so "refund for
booking 789" is not mistaken for a new booking.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any


class LeadType(StrEnum):
    """Lead categories, in classification order."""

    VENDOR_ONBOARDING = "vendor_onboarding"
    BOOKING_REQUEST = "booking_request"
    CALENDAR_SYNC = "calendar_sync"
    PRICING_UPDATE = "pricing_update"
    MARKETING_REQUEST = "marketing_request"
    SUPPORT_ISSUE = "support_issue"
    PAYMENT_REQUEST = "payment_request"
    GENERAL_INQUIRY = "general_inquiry"


def _compile(*patterns: str) -> list[re.Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Checked top to bottom; GENERAL_INQUIRY is the fallback.
LEAD_PATTERNS: list[tuple[LeadType, list[re.Pattern[str]]]] = [
    (
        LeadType.VENDOR_ONBOARDING,
        _compile(r"\bvendors?\b", r"\bonboard(ing)?\b", r"\bsign[\s-]?up\b", r"\bregist(er|ration)\b"),
    ),
    (
        LeadType.BOOKING_REQUEST,
        _compile(
            r"\b(book|reserve)\b",
            r"\breservations?\b",
            r"\bbooking\s+(for|request)\b",
            r"\bnew\s+booking\b",
        ),
    ),
    (LeadType.CALENDAR_SYNC, _compile(r"\bcalendars?\b", r"\bsync(ing|ed)?\b", r"\bical\b")),
    (LeadType.PRICING_UPDATE, _compile(r"\bprices?\b", r"\bpricing\b", r"\bcosts?\b")),
    (LeadType.MARKETING_REQUEST, _compile(r"\bmarketing\b", r"\bcampaigns?\b", r"\bcontent\b")),
    (LeadType.SUPPORT_ISSUE, _compile(r"\bsupport\b", r"\bhelp\b", r"\bissues?\b", r"\bproblems?\b")),
    (
        LeadType.PAYMENT_REQUEST,
        _compile(r"\bpayments?\b", r"\bcheckout\b", r"\bpay\b", r"\brefund(s|ed)?\b", r"\bdeclined\b"),
    ),
]

REFUND_PATTERN = re.compile(r"\brefund(s|ed)?\b", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
PHONE_PATTERN = re.compile(r"\+?\d{10,15}")
DATE_PATTERN = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")
BOOKING_ID_PATTERN = re.compile(r"\bbooking\s*(?:#|no\.?|id|number)?\s*#?(\d+)\b", re.IGNORECASE)
SERVICE_ID_PATTERN = re.compile(r"\bservice\s*(?:#|no\.?|id|number)?\s*#?(\d+)\b", re.IGNORECASE)
CURRENCY_AMOUNT_PATTERNS = [
    re.compile(r"\$\s?(\d[\d,]*(?:\.\d{1,2})?)"),
    re.compile(r"\b(\d[\d,]*(?:\.\d{1,2})?)\s?(?:usd|lkr|dollars?)\b", re.IGNORECASE),
]
NUMBER_PATTERN = re.compile(r"(?<![\w.])(\d+(?:\.\d{1,2})?)(?!\w|\.\d)")


def classify(text: str) -> LeadType:
    """Return the first lead type whose patterns match ``text``."""
    for lead_type, patterns in LEAD_PATTERNS:
        if any(pattern.search(text) for pattern in patterns):
            return lead_type
    return LeadType.GENERAL_INQUIRY


def mentions_refund(text: str) -> bool:
    return bool(REFUND_PATTERN.search(text))


@dataclass
class LeadPayload:
    """Structured fields pulled out of one message."""

    raw_message: str
    email: str | None = None
    phone: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    amount: float | None = None
    booking_id: int | None = None
    service_id: int | None = None
    sender_id: str | None = None
    sender_name: str | None = None
    username: str | None = None
    message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def context(self) -> dict[str, Any]:
        """Sender context attached to routed task payloads."""
        keys = ("sender_id", "sender_name", "username", "message_id", "raw_message")
        data = self.to_dict()
        return {k: data[k] for k in keys if k in data}


def _sender_name(sender: Mapping[str, Any]) -> str | None:
    if sender.get("display_name"):
        return str(sender["display_name"])
    parts = [sender.get("first_name"), sender.get("last_name")]
    name = " ".join(str(p) for p in parts if p)
    return name or sender.get("username")


def _extract_amount(text: str) -> float | None:
    for pattern in CURRENCY_AMOUNT_PATTERNS:
        match = pattern.search(text)
        if match:
            return float(match.group(1).replace(",", ""))

    # No currency marker: first free-standing number that is not part of
    # an email, phone number, date or booking/service id.
    stripped = EMAIL_PATTERN.sub(" ", text)
    stripped = BOOKING_ID_PATTERN.sub(" ", stripped)
    stripped = SERVICE_ID_PATTERN.sub(" ", stripped)
    stripped = DATE_PATTERN.sub(" ", stripped)
    stripped = PHONE_PATTERN.sub(" ", stripped)
    match = NUMBER_PATTERN.search(stripped)
    if match:
        return float(match.group(1))
    return None


def extract(text: str, sender: Mapping[str, Any] | None = None) -> LeadPayload:
    """Pull email, phone, dates, amount and ids out of ``text``."""
    sender = sender or {}
    payload = LeadPayload(raw_message=text)

    match = EMAIL_PATTERN.search(text)
    if match:
        payload.email = match.group(0)

    # Dates first so they are not read as phone numbers.
    dates = DATE_PATTERN.findall(text)
    if len(dates) >= 2:
        payload.start_date, payload.end_date = dates[0], dates[1]

    match = PHONE_PATTERN.search(DATE_PATTERN.sub(" ", text))
    if match:
        payload.phone = match.group(0)

    payload.amount = _extract_amount(text)

    match = BOOKING_ID_PATTERN.search(text)
    if match:
        payload.booking_id = int(match.group(1))
    match = SERVICE_ID_PATTERN.search(text)
    if match:
        payload.service_id = int(match.group(1))

    if sender.get("id") is not None:
        payload.sender_id = str(sender["id"])
    payload.sender_name = _sender_name(sender)
    payload.username = sender.get("username")
    if sender.get("message_id") is not None:
        payload.message_id = str(sender["message_id"])

    return payload
