"""Tests for lead classification, extraction and routing."""

from __future__ import annotations

import pytest

from islandloaf.engine.queue import TaskStatus
from islandloaf.leads.classifier import LeadType, classify, extract
from islandloaf.leads.router import FALLBACK_ROUTE, ROUTES, LeadRouter
from islandloaf.security.identity import Role
from islandloaf.services import Services

SENDER = {"id": 42, "first_name": "Ana", "last_name": "Perera", "username": "anap"}


class TestClassify:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("I want to register as a vendor", LeadType.VENDOR_ONBOARDING),
            ("Can I book a villa next week?", LeadType.BOOKING_REQUEST),
            ("Reservation for two please", LeadType.BOOKING_REQUEST),
            ("Please sync my iCal feed", LeadType.CALENDAR_SYNC),
            ("Update the price of the jeep tour", LeadType.PRICING_UPDATE),
            ("Launch a marketing campaign", LeadType.MARKETING_REQUEST),
            ("I have a problem with the wifi", LeadType.SUPPORT_ISSUE),
            ("My card was declined at checkout", LeadType.PAYMENT_REQUEST),
            ("Good morning!", LeadType.GENERAL_INQUIRY),
        ],
    )
    def test_categories(self, text: str, expected: LeadType) -> None:
        assert classify(text) is expected

    def test_first_match_wins(self) -> None:
        assert classify("vendor pricing question") is LeadType.VENDOR_ONBOARDING
        assert classify("help syncing my calendar") is LeadType.CALENDAR_SYNC

    def test_refund_for_existing_booking_is_payment(self) -> None:
        assert classify("I need a refund for booking 789") is LeadType.PAYMENT_REQUEST


class TestExtract:
    def test_fields(self) -> None:
        text = (
            "Book villa service 12 from 2026-03-01 to 2026-03-05 for $450, "
            "email ana@example.com, phone +94771234567"
        )
        lead = extract(text, {**SENDER, "message_id": 7})
        assert lead.email == "ana@example.com"
        assert lead.phone == "+94771234567"
        assert (lead.start_date, lead.end_date) == ("2026-03-01", "2026-03-05")
        assert lead.amount == 450.0
        assert lead.service_id == 12
        assert lead.sender_id == "42"
        assert lead.sender_name == "Ana Perera"
        assert lead.username == "anap"
        assert lead.message_id == "7"

    def test_single_date_not_paired(self) -> None:
        lead = extract("Arriving 2026-03-01")
        assert lead.start_date is None
        assert lead.end_date is None

    def test_amount_from_bare_number(self) -> None:
        lead = extract("Please refund 120 for booking 789.")
        assert lead.amount == 120.0
        assert lead.booking_id == 789

    def test_ids_not_read_as_amount(self) -> None:
        lead = extract("I need a refund for booking 789.")
        assert lead.amount is None
        assert lead.booking_id == 789
        assert extract("Sync service #12 please").amount is None

    def test_amount_ignores_dates_and_phone(self) -> None:
        lead = extract("From 2026-03-01 to 2026-03-05, call 0771234567")
        assert lead.amount is None
        assert lead.phone == "0771234567"

    def test_currency_suffix(self) -> None:
        assert extract("Price is 1,500 usd per night").amount == 1500.0
        assert extract("Set it to 15000 LKR").amount == 15000.0

    def test_sender_name_fallbacks(self) -> None:
        assert extract("hi", {"display_name": "Kamal"}).sender_name == "Kamal"
        assert extract("hi", {"username": "kamal_lk"}).sender_name == "kamal_lk"
        assert extract("hi").sender_name is None

    def test_to_dict_drops_missing(self) -> None:
        assert extract("hello").to_dict() == {"raw_message": "hello"}


class TestRouter:
    def test_refund_routed_to_finance(self, services: Services) -> None:
        receipt = services.leads.handle_message("I need a refund of $120 for booking 789", SENDER)

        assert receipt.lead_type is LeadType.PAYMENT_REQUEST
        [task] = receipt.tasks
        assert task.role == Role.FINANCE
        assert task.tool_name == "finance.refund"
        assert task.priority == 1
        assert task.created_by == "leader"
        assert task.payload["booking_id"] == 789
        assert task.payload["amount"] == 120.0
        assert task.payload["source"] == "telegram"
        assert task.payload["lead"]["sender_name"] == "Ana Perera"

    def test_refund_denied_at_dispatch(self, services: Services) -> None:
        receipt = services.leads.handle_message("I need a refund of $120 for booking 789", SENDER)
        services.runner.tick()

        task = services.queue.get(receipt.task_ids[0])
        assert task.status == TaskStatus.DEAD
        assert task.error_kind == "permission"
        assert "high-risk" in task.last_error
        assert services.operations.calls["finance.refund"] == 0

        entry = services.audit.query(tool_name="finance.refund")[0]
        assert entry.status == "DENIED"
        assert "insufficient-risk-tier" in entry.result_summary

    def test_refund_without_amount_becomes_ticket(self, services: Services) -> None:
        receipt = services.leads.handle_message("I need a refund for booking 789", SENDER)
        [task] = receipt.tasks
        assert receipt.lead_type is LeadType.PAYMENT_REQUEST
        assert task.tool_name == "tickets.create"
        assert "finance.refund needs: amount" in task.payload["message"]

    def test_complete_booking_lead(self, services: Services) -> None:
        text = (
            "Book villa service 12 from 2026-03-01 to 2026-03-05 for $450, "
            "email ana@example.com"
        )
        receipt = services.leads.handle_message(text, SENDER)
        [task] = receipt.tasks
        assert (task.role, task.tool_name) == (Role.BOOKING_MANAGER, "bookings.create")
        assert task.payload["customer_name"] == "Ana Perera"

        services.runner.tick()
        assert services.queue.get(task.id).status == TaskStatus.SUCCESS
        assert len(services.operations.bookings) == 1

    def test_incomplete_lead_becomes_ticket(self, services: Services) -> None:
        receipt = services.leads.handle_message("Can I book a villa?", SENDER)
        [task] = receipt.tasks
        assert receipt.lead_type is LeadType.BOOKING_REQUEST
        assert (task.role, task.tool_name) == (FALLBACK_ROUTE.role, FALLBACK_ROUTE.tool_name)
        assert "bookings.create needs:" in task.payload["message"]
        assert "service_id" in task.payload["message"]
        assert task.payload["subject"] == "Booking request from Ana Perera"

    def test_vendor_lead(self, services: Services) -> None:
        receipt = services.leads.handle_message(
            "Register me as a vendor: kamal@villas.lk", {"first_name": "Kamal"}
        )
        [task] = receipt.tasks
        assert task.tool_name == "vendors.create"
        assert task.payload["email"] == "kamal@villas.lk"
        assert task.payload["full_name"] == "Kamal"

    def test_general_inquiry_ticket(self, services: Services) -> None:
        receipt = services.leads.handle_message("Good morning!", SENDER)
        [task] = receipt.tasks
        route = ROUTES[LeadType.GENERAL_INQUIRY]
        assert (task.role, task.tool_name, task.priority) == (
            route.role,
            route.tool_name,
            route.priority,
        )
        assert task.payload["priority"] == "normal"

    def test_redelivery_not_queued_twice(self, services: Services) -> None:
        sender = {**SENDER, "message_id": 1001}
        first = services.leads.handle_message("I have a problem with the wifi", sender)
        second = services.leads.handle_message("I have a problem with the wifi", sender)
        assert first.task_ids == second.task_ids
        assert first.tasks[0].idempotency_key == "lead-telegram-42-1001-tickets.create"
        assert len(services.queue.list()) == 1

    def test_receipt_reply(self, services: Services) -> None:
        receipt = services.leads.handle_message("I have a problem with the wifi", SENDER)
        assert "support issue" in receipt.reply
        assert receipt.task_ids[0] in receipt.reply
        assert receipt.to_dict()["lead_type"] == "support_issue"


class TestCommands:
    def test_known_command(self, services: Services) -> None:
        receipt = services.leads.handle_message("/start", SENDER)
        assert receipt.command == "/start"
        assert receipt.lead_type is None
        assert receipt.tasks == []
        assert "Welcome" in receipt.reply
        assert services.queue.list() == []

    def test_unknown_command(self, services: Services) -> None:
        receipt = services.leads.handle_message("/dance now")
        assert receipt.reply.startswith("Unknown command: /dance")

    def test_custom_source(self, services: Services) -> None:
        router = LeadRouter(services.queue, source="whatsapp")
        [task] = router.handle_message("Good morning!", {"id": 9, "message_id": 3}).tasks
        assert task.payload["source"] == "whatsapp"
        assert task.idempotency_key == "lead-whatsapp-9-3-tickets.create"
