"""Role-based permission policy for agent tools.

The table is static and fail-closed: a tool missing from it is denied for
every role, OWNER included. High-risk tools additionally require the caller's
role to be in the tool's elevated set.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

from islandloaf.errors import PermissionDeniedError
from islandloaf.security.identity import Role

# Roles that may queue work to run under another role.
DELEGATING_ROLES = frozenset({Role.OWNER, Role.LEADER})


class DenialReason(StrEnum):
    """Why authorize() refused a call."""

    UNKNOWN_TOOL = "unknown-tool"
    ROLE_NOT_PERMITTED = "role-not-permitted"
    INSUFFICIENT_RISK_TIER = "insufficient-risk-tier"
    DELEGATION_NOT_PERMITTED = "delegation-not-permitted"


@dataclass(frozen=True)
class ToolRule:
    """Who may call a tool, and who may call it when it is high risk."""

    allowed_roles: frozenset[Role]
    high_risk: bool = False
    elevated_roles: frozenset[Role] = frozenset()


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of authorize()."""

    allowed: bool
    tool_name: str
    role: Role | None
    high_risk: bool = False
    requires_elevated_role: bool = False
    reason: DenialReason | None = None

    @property
    def message(self) -> str:
        if self.allowed:
            return "allowed"
        role = self.role.value if self.role else "unknown"
        if self.reason is DenialReason.UNKNOWN_TOOL:
            return f"Tool {self.tool_name} is not registered"
        if self.reason is DenialReason.INSUFFICIENT_RISK_TIER:
            return f"Role {role} is not elevated enough for high-risk tool {self.tool_name}"
        return f"Role {role} is not permitted to call {self.tool_name}"


def _rule(*roles: Role, high_risk: bool = False, elevated: tuple[Role, ...] = ()) -> ToolRule:
    return ToolRule(
        allowed_roles=frozenset((Role.OWNER, *roles)),
        high_risk=high_risk,
        elevated_roles=frozenset((Role.OWNER, *elevated)) if high_risk else frozenset(),
    )


TOOL_RULES: dict[str, ToolRule] = {
    # Vendors
    "vendors.create": _rule(Role.LEADER, Role.VENDOR_MANAGER),
    "vendors.approve": _rule(Role.LEADER),
    "vendors.suspend": _rule(
        Role.LEADER, Role.VENDOR_MANAGER, high_risk=True, elevated=(Role.LEADER,)
    ),
    # Services & pricing
    "services.create": _rule(Role.VENDOR_MANAGER),
    "services.update": _rule(Role.PRICING, Role.VENDOR_MANAGER),
    "services.update_price": _rule(Role.PRICING),
    # Bookings
    "bookings.create": _rule(Role.BOOKING_MANAGER),
    "bookings.update_status": _rule(Role.BOOKING_MANAGER),
    "bookings.cancel": _rule(
        Role.LEADER, Role.BOOKING_MANAGER, high_risk=True, elevated=(Role.LEADER,)
    ),
    # Calendar
    "calendar.create": _rule(Role.CALENDAR_SYNC),
    "calendar.sync": _rule(Role.CALENDAR_SYNC),
    # Support
    "tickets.create": _rule(Role.SUPPORT, Role.LEADER),
    # Marketing
    "campaigns.create": _rule(Role.MARKETING),
    "campaigns.launch": _rule(Role.MARKETING),
    "content.generate": _rule(Role.MARKETING),
    # Finance
    "payments.checkout": _rule(Role.FINANCE, Role.BOOKING_MANAGER),
    "finance.refund": _rule(Role.FINANCE, high_risk=True),
}


class PermissionPolicy:
    """Static permission table lookups."""

    def __init__(
        self,
        rules: Mapping[str, ToolRule] | None = None,
        require_owner_approval: bool = False,
    ) -> None:
        self.rules = dict(TOOL_RULES if rules is None else rules)
        self.require_owner_approval = require_owner_approval

    def rule_for(self, tool_name: str) -> ToolRule | None:
        return self.rules.get(tool_name)

    def authorize(self, role: Role | str, tool_name: str) -> PolicyDecision:
        """Decide whether ``role`` may invoke ``tool_name``."""
        try:
            role = Role(role)
        except ValueError:
            return PolicyDecision(
                allowed=False,
                tool_name=tool_name,
                role=None,
                reason=DenialReason.ROLE_NOT_PERMITTED,
            )

        rule = self.rules.get(tool_name)
        if rule is None:
            return PolicyDecision(
                allowed=False,
                tool_name=tool_name,
                role=role,
                reason=DenialReason.UNKNOWN_TOOL,
            )

        if role not in rule.allowed_roles:
            return PolicyDecision(
                allowed=False,
                tool_name=tool_name,
                role=role,
                high_risk=rule.high_risk,
                requires_elevated_role=rule.high_risk,
                reason=DenialReason.ROLE_NOT_PERMITTED,
            )

        if rule.high_risk:
            elevated = frozenset({Role.OWNER}) if self.require_owner_approval else rule.elevated_roles
            if role not in elevated:
                return PolicyDecision(
                    allowed=False,
                    tool_name=tool_name,
                    role=role,
                    high_risk=True,
                    requires_elevated_role=True,
                    reason=DenialReason.INSUFFICIENT_RISK_TIER,
                )

        return PolicyDecision(
            allowed=True,
            tool_name=tool_name,
            role=role,
            high_risk=rule.high_risk,
            requires_elevated_role=rule.high_risk,
        )

    def authorize_delegation(
        self, caller: Role | str, target: Role | str, tool_name: str
    ) -> None:
        """Check that ``caller`` may queue ``tool_name`` to run as ``target``.

        Only OWNER and LEADER delegate, and only OWNER may queue work that
        runs as OWNER. The queued task is still authorized as ``target`` when
        it is dispatched.

        Raises:
            PermissionDeniedError: the caller may not delegate this task
        """
        reason = DenialReason.DELEGATION_NOT_PERMITTED.value
        try:
            caller, target = Role(caller), Role(target)
        except ValueError as exc:
            raise PermissionDeniedError(str(exc), reason=reason) from exc

        if caller not in DELEGATING_ROLES:
            raise PermissionDeniedError(f"Role {caller} may not queue tasks", reason=reason)
        if target is Role.OWNER and caller is not Role.OWNER:
            raise PermissionDeniedError(
                f"Role {caller} may not queue {tool_name} to run as OWNER", reason=reason
            )

    def tools_for(self, role: Role | str) -> list[str]:
        """Tool names ``role`` is fully authorized to call."""
        return sorted(name for name in self.rules if self.authorize(role, name).allowed)


_DEFAULT_POLICY = PermissionPolicy()


def authorize(role: Role | str, tool_name: str) -> PolicyDecision:
    """Authorize against the built-in table."""
    return _DEFAULT_POLICY.authorize(role, tool_name)
