"""Tool registry: stable tool name -> {payload shape, handler}."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from islandloaf.errors import FatalOperationError, UnknownToolError
from islandloaf.tools import payloads as p

Handler = Callable[[p.ToolPayload], dict[str, Any]]

PAYLOAD_MODELS: dict[str, type[p.ToolPayload]] = {
    "vendors.create": p.VendorCreate,
    "vendors.approve": p.VendorApprove,
    "vendors.suspend": p.VendorSuspend,
    "services.create": p.ServiceCreate,
    "services.update": p.ServiceUpdate,
    "services.update_price": p.ServicePriceUpdate,
    "bookings.create": p.BookingCreate,
    "bookings.update_status": p.BookingStatusUpdate,
    "bookings.cancel": p.BookingCancel,
    "calendar.create": p.CalendarCreate,
    "calendar.sync": p.CalendarSync,
    "tickets.create": p.TicketCreate,
    "campaigns.create": p.CampaignCreate,
    "campaigns.launch": p.CampaignLaunch,
    "content.generate": p.ContentGenerate,
    "payments.checkout": p.CheckoutCreate,
    "finance.refund": p.RefundCreate,
}


@dataclass(frozen=True)
class ToolSpec:
    """A named business operation and the payload it accepts."""

    name: str
    payload_model: type[p.ToolPayload]
    handler: Handler
    description: str = ""


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "payload"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolRegistry:
    """Lookup table the executor dispatches through."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        self._specs[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise UnknownToolError(f"No handler registered for tool {name}") from None

    def names(self) -> list[str]:
        return sorted(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def parse(self, name: str, payload: Mapping[str, Any] | p.ToolPayload) -> p.ToolPayload:
        """Validate a raw payload against the tool's shape.

        Raises:
            UnknownToolError: no such tool
            FatalOperationError: payload does not match the shape
        """
        spec = self.get(name)
        if isinstance(payload, spec.payload_model):
            return payload
        if isinstance(payload, p.ToolPayload):
            payload = payload.model_dump()
        try:
            return spec.payload_model.model_validate(dict(payload))
        except ValidationError as exc:
            raise FatalOperationError(
                f"Invalid payload for {name}: {_format_validation_error(exc)}",
                reason="validation",
            ) from exc


def normalize_payload(model: p.ToolPayload) -> dict[str, Any]:
    """JSON-ready form of a validated payload, used for storage and fingerprints."""
    return model.model_dump(mode="json", exclude_none=True)


def build_registry(handlers: Mapping[str, Handler]) -> ToolRegistry:
    """Pair every known payload shape with a handler from ``handlers``."""
    unknown = set(handlers) - set(PAYLOAD_MODELS)
    if unknown:
        raise ValueError(f"Handlers given for unknown tools: {sorted(unknown)}")

    return ToolRegistry(
        ToolSpec(name=name, payload_model=PAYLOAD_MODELS[name], handler=handler)
        for name, handler in handlers.items()
    )
