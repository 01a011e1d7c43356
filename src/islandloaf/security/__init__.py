"""Agent identity and permission enforcement."""

from __future__ import annotations

from .identity import AgentIdentity, IdentityStore, Role, hash_secret
from .policy import (
    TOOL_RULES,
    DenialReason,
    PermissionPolicy,
    PolicyDecision,
    ToolRule,
    authorize,
)

__all__ = [
    "AgentIdentity",
    "DenialReason",
    "IdentityStore",
    "PermissionPolicy",
    "PolicyDecision",
    "Role",
    "TOOL_RULES",
    "ToolRule",
    "authorize",
    "hash_secret",
]
