"""In-process business operations.

Stand-ins for the real collaborators (vendor/booking tables, the payment
processor, the AI completion service). They keep records in memory, enforce
the same business rules the real operations do, and count calls so replay
safety can be observed.
"""

from __future__ import annotations

import itertools
import threading
from collections import Counter
from datetime import date
from typing import Any, cast

from islandloaf.errors import FatalOperationError
from islandloaf.tools import payloads as p
from islandloaf.tools.registry import Handler

DEFAULT_COMMISSION_RATE = 0.10
REFUNDABLE_BOOKING_STATUSES = {"confirmed", "completed", "cancelled"}


class SimulatedOperations:
    """Record-keeping implementations of every tool."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.calls: Counter[str] = Counter()
        self.vendors: dict[int, dict[str, Any]] = {}
        self.services: dict[int, dict[str, Any]] = {}
        self.bookings: dict[int, dict[str, Any]] = {}
        self.calendars: dict[int, dict[str, Any]] = {}
        self.tickets: dict[int, dict[str, Any]] = {}
        self.campaigns: dict[int, dict[str, Any]] = {}
        self.checkouts: dict[int, dict[str, Any]] = {}
        self.refunds: dict[int, dict[str, Any]] = {}

    def handlers(self) -> dict[str, Handler]:
        return {
            "vendors.create": self.create_vendor,
            "vendors.approve": self.approve_vendor,
            "vendors.suspend": self.suspend_vendor,
            "services.create": self.create_service,
            "services.update": self.update_service,
            "services.update_price": self.update_price,
            "bookings.create": self.create_booking,
            "bookings.update_status": self.update_booking_status,
            "bookings.cancel": self.cancel_booking,
            "calendar.create": self.create_calendar,
            "calendar.sync": self.sync_calendar,
            "tickets.create": self.create_ticket,
            "campaigns.create": self.create_campaign,
            "campaigns.launch": self.launch_campaign,
            "content.generate": self.generate_content,
            "payments.checkout": self.create_checkout,
            "finance.refund": self.process_refund,
        }

    def _next_id(self) -> int:
        return next(self._ids)

    def _lookup(self, table: dict[int, dict[str, Any]], record_id: int, kind: str) -> dict[str, Any]:
        record = table.get(record_id)
        if record is None:
            raise FatalOperationError(f"{kind} {record_id} not found", reason="not-found")
        return record

    # --- Vendors ---

    def create_vendor(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.VendorCreate, payload)
        with self._lock:
            self.calls["vendors.create"] += 1
            if any(v["email"] == payload.email for v in self.vendors.values()):
                raise FatalOperationError(
                    f"Vendor with email {payload.email} already exists", reason="duplicate"
                )
            vendor_id = self._next_id()
            self.vendors[vendor_id] = {
                "id": vendor_id,
                "email": payload.email,
                "full_name": payload.full_name,
                "business_name": payload.business_name,
                "business_type": payload.business_type.value,
                "status": "pending",
            }
            return dict(self.vendors[vendor_id])

    def approve_vendor(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.VendorApprove, payload)
        with self._lock:
            self.calls["vendors.approve"] += 1
            vendor = self._lookup(self.vendors, payload.vendor_id, "Vendor")
            vendor["status"] = "active"
            return dict(vendor)

    def suspend_vendor(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.VendorSuspend, payload)
        with self._lock:
            self.calls["vendors.suspend"] += 1
            vendor = self._lookup(self.vendors, payload.vendor_id, "Vendor")
            vendor["status"] = "suspended"
            vendor["suspension_reason"] = payload.reason
            active_bookings = sum(
                1
                for b in self.bookings.values()
                if self.services.get(b["service_id"], {}).get("vendor_id") == vendor["id"]
                and b["status"] in ("pending", "confirmed")
            )
            result = dict(vendor)
            if active_bookings:
                result["warning"] = (
                    f"Vendor has {active_bookings} active booking(s); notify customers"
                )
            return result

    # --- Services & pricing ---

    def create_service(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.ServiceCreate, payload)
        with self._lock:
            self.calls["services.create"] += 1
            self._lookup(self.vendors, payload.vendor_id, "Vendor")
            service_id = self._next_id()
            self.services[service_id] = {
                "id": service_id,
                "vendor_id": payload.vendor_id,
                "name": payload.name,
                "business_type": payload.business_type.value,
                "base_price": payload.base_price,
                "available": True,
            }
            return dict(self.services[service_id])

    def update_service(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.ServiceUpdate, payload)
        with self._lock:
            self.calls["services.update"] += 1
            service = self._lookup(self.services, payload.service_id, "Service")
            for field in ("name", "description", "available"):
                value = getattr(payload, field)
                if value is not None:
                    service[field] = value
            return dict(service)

    def update_price(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.ServicePriceUpdate, payload)
        with self._lock:
            self.calls["services.update_price"] += 1
            service = self._lookup(self.services, payload.service_id, "Service")
            previous = service["base_price"]
            service["base_price"] = payload.base_price
            return {**service, "previous_price": previous, "currency": payload.currency}

    # --- Bookings ---

    def _conflicting_bookings(self, service_id: int, start: date, end: date) -> int:
        return sum(
            1
            for b in self.bookings.values()
            if b["service_id"] == service_id
            and b["status"] != "cancelled"
            and date.fromisoformat(b["start_date"]) < end
            and start < date.fromisoformat(b["end_date"])
        )

    def create_booking(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.BookingCreate, payload)
        with self._lock:
            self.calls["bookings.create"] += 1
            service = self.services.get(payload.service_id)
            if service is not None and not service.get("available", True):
                raise FatalOperationError("Service is not available for booking", reason="unavailable")
            conflicts = self._conflicting_bookings(
                payload.service_id, payload.start_date, payload.end_date
            )
            if conflicts:
                raise FatalOperationError(
                    f"Conflicting bookings exist ({conflicts} found)", reason="double-booking"
                )
            booking_id = self._next_id()
            commission = payload.commission
            if commission is None:
                commission = round(payload.total_price * DEFAULT_COMMISSION_RATE, 2)
            self.bookings[booking_id] = {
                "id": booking_id,
                "service_id": payload.service_id,
                "customer_name": payload.customer_name,
                "customer_email": payload.customer_email,
                "start_date": payload.start_date.isoformat(),
                "end_date": payload.end_date.isoformat(),
                "total_price": payload.total_price,
                "commission": commission,
                "status": "pending",
                "payment_status": "unpaid",
            }
            return dict(self.bookings[booking_id])

    def update_booking_status(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.BookingStatusUpdate, payload)
        with self._lock:
            self.calls["bookings.update_status"] += 1
            booking = self._lookup(self.bookings, payload.booking_id, "Booking")
            booking["status"] = payload.status.value
            return dict(booking)

    def cancel_booking(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.BookingCancel, payload)
        with self._lock:
            self.calls["bookings.cancel"] += 1
            booking = self._lookup(self.bookings, payload.booking_id, "Booking")
            if booking["status"] == "cancelled":
                raise FatalOperationError(
                    f"Booking {payload.booking_id} is already cancelled", reason="invalid-state"
                )
            booking["status"] = "cancelled"
            booking["cancellation_reason"] = payload.reason
            return dict(booking)

    # --- Calendar ---

    def create_calendar(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.CalendarCreate, payload)
        with self._lock:
            self.calls["calendar.create"] += 1
            calendar_id = self._next_id()
            self.calendars[calendar_id] = {
                "id": calendar_id,
                "service_id": payload.service_id,
                "ical_url": payload.ical_url,
                "name": payload.name or f"Calendar {calendar_id}",
                "last_synced": None,
            }
            return dict(self.calendars[calendar_id])

    def sync_calendar(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.CalendarSync, payload)
        with self._lock:
            self.calls["calendar.sync"] += 1
            if payload.calendar_id is not None:
                targets = [self._lookup(self.calendars, payload.calendar_id, "Calendar")]
            elif payload.service_id is not None:
                targets = [c for c in self.calendars.values() if c["service_id"] == payload.service_id]
            else:
                targets = list(self.calendars.values())
            for calendar in targets:
                calendar["last_synced"] = date.today().isoformat()
            return {"synced_calendars": [c["id"] for c in targets], "count": len(targets)}

    # --- Support ---

    def create_ticket(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.TicketCreate, payload)
        with self._lock:
            self.calls["tickets.create"] += 1
            ticket_id = self._next_id()
            self.tickets[ticket_id] = {
                "id": ticket_id,
                "subject": payload.subject,
                "message": payload.message,
                "priority": payload.priority.value,
                "customer_email": payload.customer_email,
                "customer_phone": payload.customer_phone,
                "status": "open",
            }
            return dict(self.tickets[ticket_id])

    # --- Marketing ---

    def create_campaign(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.CampaignCreate, payload)
        with self._lock:
            self.calls["campaigns.create"] += 1
            campaign_id = self._next_id()
            self.campaigns[campaign_id] = {
                "id": campaign_id,
                "name": payload.name,
                "channel": payload.channel,
                "audience": payload.audience,
                "status": "draft",
            }
            return dict(self.campaigns[campaign_id])

    def launch_campaign(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.CampaignLaunch, payload)
        with self._lock:
            self.calls["campaigns.launch"] += 1
            campaign = self._lookup(self.campaigns, payload.campaign_id, "Campaign")
            if campaign["status"] == "launched":
                raise FatalOperationError(
                    f"Campaign {payload.campaign_id} already launched", reason="invalid-state"
                )
            campaign["status"] = "launched"
            return dict(campaign)

    def generate_content(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.ContentGenerate, payload)
        with self._lock:
            self.calls["content.generate"] += 1
        words = payload.prompt.split()[: payload.max_words]
        return {
            "content_type": payload.content_type,
            "content": "Discover the island: " + " ".join(words),
            "model": "simulated",
        }

    # --- Finance ---

    def create_checkout(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.CheckoutCreate, payload)
        with self._lock:
            self.calls["payments.checkout"] += 1
            checkout_id = self._next_id()
            self.checkouts[checkout_id] = {
                "id": checkout_id,
                "session_id": f"sim-checkout-{checkout_id}",
                "booking_id": payload.booking_id,
                "amount": payload.amount,
                "currency": payload.currency,
                "customer_email": payload.customer_email,
                "status": "open",
            }
            return dict(self.checkouts[checkout_id])

    def process_refund(self, payload: p.ToolPayload) -> dict[str, Any]:
        payload = cast(p.RefundCreate, payload)
        with self._lock:
            self.calls["finance.refund"] += 1
            booking = self.bookings.get(payload.booking_id)
            if booking is not None:
                if booking["status"] not in REFUNDABLE_BOOKING_STATUSES:
                    raise FatalOperationError(
                        f"Cannot refund booking with status: {booking['status']}",
                        reason="invalid-state",
                    )
                if payload.amount > booking["total_price"]:
                    raise FatalOperationError(
                        f"Refund amount ({payload.amount}) exceeds original payment "
                        f"({booking['total_price']})",
                        reason="amount-exceeded",
                    )
            refund_id = self._next_id()
            self.refunds[refund_id] = {
                "id": refund_id,
                "refund_id": f"sim-refund-{refund_id}",
                "booking_id": payload.booking_id,
                "amount": payload.amount,
                "reason": payload.reason,
                "status": "succeeded",
            }
            return dict(self.refunds[refund_id])
