"""Tests for the role/tool permission table."""

from __future__ import annotations

import pytest

from islandloaf.errors import PermissionDeniedError
from islandloaf.security.identity import Role
from islandloaf.security.policy import (
    TOOL_RULES,
    DenialReason,
    PermissionPolicy,
    authorize,
)
from islandloaf.tools.registry import PAYLOAD_MODELS


def test_every_tool_has_a_payload_shape() -> None:
    assert set(TOOL_RULES) == set(PAYLOAD_MODELS)


def test_allowed() -> None:
    decision = authorize(Role.BOOKING_MANAGER, "bookings.create")
    assert decision.allowed
    assert decision.reason is None
    assert not decision.high_risk


def test_role_not_permitted() -> None:
    decision = authorize(Role.MARKETING, "bookings.create")
    assert not decision.allowed
    assert decision.reason is DenialReason.ROLE_NOT_PERMITTED


def test_unknown_tool_fails_closed() -> None:
    for role in Role:
        decision = authorize(role, "bookings.delete_everything")
        assert not decision.allowed
        assert decision.reason is DenialReason.UNKNOWN_TOOL


def test_invalid_role_string() -> None:
    decision = authorize("JANITOR", "tickets.create")
    assert not decision.allowed
    assert decision.reason is DenialReason.ROLE_NOT_PERMITTED


@pytest.mark.parametrize(
    ("role", "tool"),
    [
        (Role.FINANCE, "finance.refund"),
        (Role.BOOKING_MANAGER, "bookings.cancel"),
        (Role.VENDOR_MANAGER, "vendors.suspend"),
    ],
)
def test_insufficient_risk_tier(role: Role, tool: str) -> None:
    decision = authorize(role, tool)
    assert not decision.allowed
    assert decision.high_risk
    assert decision.requires_elevated_role
    assert decision.reason is DenialReason.INSUFFICIENT_RISK_TIER
    assert "high-risk" in decision.message


def test_high_risk_tools_marked() -> None:
    high_risk = {name for name, rule in TOOL_RULES.items() if rule.high_risk}
    assert high_risk == {"finance.refund", "bookings.cancel", "vendors.suspend"}


def test_elevated_roles() -> None:
    assert authorize(Role.OWNER, "finance.refund").allowed
    assert authorize(Role.LEADER, "bookings.cancel").allowed
    assert not authorize(Role.LEADER, "finance.refund").allowed


def test_owner_allowed_everything() -> None:
    for tool in TOOL_RULES:
        assert authorize(Role.OWNER, tool).allowed, tool


def test_require_owner_approval_collapses_elevated_set() -> None:
    policy = PermissionPolicy(require_owner_approval=True)
    decision = policy.authorize(Role.LEADER, "bookings.cancel")
    assert decision.reason is DenialReason.INSUFFICIENT_RISK_TIER
    assert policy.authorize(Role.OWNER, "bookings.cancel").allowed
    # Non-high-risk tools are unaffected
    assert policy.authorize(Role.LEADER, "vendors.approve").allowed


def test_tools_for() -> None:
    policy = PermissionPolicy()
    finance_tools = policy.tools_for(Role.FINANCE)
    assert "payments.checkout" in finance_tools
    assert "finance.refund" not in finance_tools


class TestDelegation:
    @pytest.mark.parametrize("caller", [Role.OWNER, Role.LEADER])
    def test_operators_may_delegate(self, caller: Role) -> None:
        PermissionPolicy().authorize_delegation(caller, Role.FINANCE, "finance.refund")

    @pytest.mark.parametrize("caller", [Role.MARKETING, Role.SUPPORT, Role.FINANCE])
    def test_other_roles_may_not_queue(self, caller: Role) -> None:
        with pytest.raises(PermissionDeniedError) as excinfo:
            PermissionPolicy().authorize_delegation(caller, caller, "tickets.create")
        assert excinfo.value.reason == DenialReason.DELEGATION_NOT_PERMITTED.value

    def test_only_owner_queues_as_owner(self) -> None:
        policy = PermissionPolicy()
        policy.authorize_delegation(Role.OWNER, Role.OWNER, "finance.refund")
        with pytest.raises(PermissionDeniedError):
            policy.authorize_delegation(Role.LEADER, Role.OWNER, "finance.refund")

    def test_unknown_role(self) -> None:
        with pytest.raises(PermissionDeniedError):
            PermissionPolicy().authorize_delegation(Role.LEADER, "JANITOR", "tickets.create")
