"""Leader - turns inbound messages into queued tasks.

Each lead type maps to one (role, tool) route. The router builds the tool's
payload from the extracted fields and checks it against the tool's shape;
when the message does not carry enough to fill it, the lead becomes a
support ticket instead. Nothing is dropped.

Permission is not checked here. A refund lead is queued for FINANCE even
though only OWNER may issue refunds; the denial happens at dispatch and is
audited there.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from islandloaf.engine.queue import Task, TaskQueue
from islandloaf.leads.classifier import LeadPayload, LeadType, classify, extract, mentions_refund
from islandloaf.security.identity import Role
from islandloaf.tools.registry import PAYLOAD_MODELS

logger = logging.getLogger(__name__)

LEADER_ID = "leader"


@dataclass(frozen=True)
class Route:
    """Where a lead type goes."""

    role: Role
    tool_name: str
    priority: int


ROUTES: dict[LeadType, Route] = {
    LeadType.VENDOR_ONBOARDING: Route(Role.VENDOR_MANAGER, "vendors.create", 3),
    LeadType.BOOKING_REQUEST: Route(Role.BOOKING_MANAGER, "bookings.create", 2),
    LeadType.CALENDAR_SYNC: Route(Role.CALENDAR_SYNC, "calendar.sync", 4),
    LeadType.PRICING_UPDATE: Route(Role.PRICING, "services.update_price", 5),
    LeadType.MARKETING_REQUEST: Route(Role.MARKETING, "campaigns.create", 6),
    LeadType.SUPPORT_ISSUE: Route(Role.SUPPORT, "tickets.create", 1),
    LeadType.PAYMENT_REQUEST: Route(Role.FINANCE, "payments.checkout", 2),
    LeadType.GENERAL_INQUIRY: Route(Role.SUPPORT, "tickets.create", 5),
}
REFUND_ROUTE = Route(Role.FINANCE, "finance.refund", 1)
FALLBACK_ROUTE = Route(Role.SUPPORT, "tickets.create", 5)

COMMAND_REPLIES = {
    "/start": (
        "Welcome to IslandLoaf!\n\n"
        "I can help you with vendor onboarding, booking requests, calendar sync, "
        "support tickets and more.\n\nType /help for more info."
    ),
    "/help": (
        "IslandLoaf Bot Commands\n\n"
        "/start - Start the bot\n"
        "/help - Show this message\n"
        "/status - Check system status\n\n"
        "You can also send requests like:\n"
        '- "Add a new vendor: email@example.com"\n'
        '- "Book a villa from 2026-03-01 to 2026-03-05"\n'
        '- "Help with payment issue"'
    ),
    "/status": "System Status\n\nBot: Online\nTask Queue: Active\nAgents: Ready",
}


@dataclass
class LeadReceipt:
    """Acknowledgement for one inbound message."""

    lead_type: LeadType | None
    tasks: list[Task] = field(default_factory=list)
    reply: str = ""
    command: str | None = None

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "lead_type": self.lead_type.value if self.lead_type else None,
            "task_ids": self.task_ids,
            "reply": self.reply,
            "command": self.command,
        }


def _subject(lead_type: LeadType, lead: LeadPayload) -> str:
    title = lead_type.value.replace("_", " ").capitalize()
    who = lead.sender_name or lead.username or lead.email
    subject = f"{title} from {who}" if who else title
    return subject[:200]


def _vendor_payload(lead: LeadPayload) -> dict[str, Any]:
    return {
        "email": lead.email,
        "full_name": lead.sender_name,
        "business_name": lead.sender_name,
        "phone": lead.phone,
    }


def _booking_payload(lead: LeadPayload) -> dict[str, Any]:
    return {
        "service_id": lead.service_id,
        "customer_name": lead.sender_name,
        "customer_email": lead.email,
        "start_date": lead.start_date,
        "end_date": lead.end_date,
        "total_price": lead.amount,
        "notes": lead.raw_message,
    }


def _calendar_payload(lead: LeadPayload) -> dict[str, Any]:
    return {
        "service_id": lead.service_id,
        "start_date": lead.start_date,
        "end_date": lead.end_date,
        "message": lead.raw_message,
    }


def _price_payload(lead: LeadPayload) -> dict[str, Any]:
    return {"service_id": lead.service_id, "base_price": lead.amount}


def _campaign_payload(lead: LeadPayload) -> dict[str, Any]:
    return {"name": lead.raw_message[:80], "content": lead.raw_message}


def _ticket_payload(lead: LeadPayload, lead_type: LeadType) -> dict[str, Any]:
    return {
        "subject": _subject(lead_type, lead),
        "message": lead.raw_message or "(empty message)",
        "priority": "high" if lead_type is LeadType.SUPPORT_ISSUE else "normal",
        "customer_email": lead.email,
        "customer_phone": lead.phone,
    }


def _checkout_payload(lead: LeadPayload) -> dict[str, Any]:
    return {"booking_id": lead.booking_id, "amount": lead.amount, "customer_email": lead.email}


def _refund_payload(lead: LeadPayload) -> dict[str, Any]:
    return {"booking_id": lead.booking_id, "amount": lead.amount, "reason": lead.raw_message}


PAYLOAD_BUILDERS: dict[str, Callable[[LeadPayload], dict[str, Any]]] = {
    "vendors.create": _vendor_payload,
    "bookings.create": _booking_payload,
    "calendar.sync": _calendar_payload,
    "services.update_price": _price_payload,
    "campaigns.create": _campaign_payload,
    "payments.checkout": _checkout_payload,
    "finance.refund": _refund_payload,
}


class LeadRouter:
    """Classifies inbound messages and enqueues tasks for them."""

    def __init__(self, queue: TaskQueue, source: str = "telegram") -> None:
        self.queue = queue
        self.source = source

    def plan(self, lead_type: LeadType, lead: LeadPayload) -> tuple[Route, dict[str, Any]]:
        """Pick the route and build a payload that fits the tool's shape."""
        route = ROUTES[lead_type]
        if lead_type is LeadType.PAYMENT_REQUEST and mentions_refund(lead.raw_message):
            route = REFUND_ROUTE

        if route.tool_name == "tickets.create":
            return route, self._finish(_ticket_payload(lead, lead_type), lead)

        payload = self._finish(PAYLOAD_BUILDERS[route.tool_name](lead), lead)
        try:
            PAYLOAD_MODELS[route.tool_name].model_validate(payload)
        except ValidationError as exc:
            missing = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
            logger.info(
                "Lead %s lacks fields for %s (%s); routing to support",
                lead_type.value,
                route.tool_name,
                ", ".join(missing),
            )
            ticket = _ticket_payload(lead, lead_type)
            ticket["message"] = (
                f"{ticket['message']}\n\n[{route.tool_name} needs: {', '.join(missing)}]"
            )
            return FALLBACK_ROUTE, self._finish(ticket, lead)
        return route, payload

    def route(self, lead_type: LeadType, lead: LeadPayload) -> list[Task]:
        """Enqueue the task(s) for a classified lead."""
        route, payload = self.plan(lead_type, lead)

        key = None
        if lead.message_id is not None:
            # Redelivery of the same message must not queue a second task.
            key = f"lead-{self.source}-{lead.sender_id}-{lead.message_id}-{route.tool_name}"

        task = self.queue.enqueue(
            route.role,
            route.tool_name,
            payload,
            idempotency_key=key,
            priority=route.priority,
            created_by=LEADER_ID,
        )
        logger.info(
            "Lead %s routed to %s/%s as %s",
            lead_type.value,
            route.role.value,
            route.tool_name,
            task.id,
        )
        return [task]

    def handle_message(self, text: str, sender: Mapping[str, Any] | None = None) -> LeadReceipt:
        """Classify, extract and route one message, or answer a chat command."""
        text = (text or "").strip()

        if text.startswith("/"):
            command = text.split()[0].lower()
            reply = COMMAND_REPLIES.get(
                command, f"Unknown command: {command}\n\nType /help for available commands."
            )
            return LeadReceipt(lead_type=None, reply=reply, command=command)

        lead_type = classify(text)
        lead = extract(text, sender)
        tasks = self.route(lead_type, lead)

        reply = (
            f"Thanks! Your {lead_type.value.replace('_', ' ')} was received.\n\n"
            f"Created {len(tasks)} task(s).\nTask IDs: {', '.join(t.id for t in tasks)}"
        )
        return LeadReceipt(lead_type=lead_type, tasks=tasks, reply=reply)

    def _finish(self, payload: dict[str, Any], lead: LeadPayload) -> dict[str, Any]:
        data = {k: v for k, v in payload.items() if v is not None}
        data["source"] = self.source
        data["lead"] = lead.context()
        return data
