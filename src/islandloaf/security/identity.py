"""Agent identities and their credentials.

Secrets are generated once at creation and only their SHA-256 digest is kept.
Resolution hashes the presented secret and looks the digest up; nothing is
ever reversed. Identities are never deleted, only deactivated, so audit rows
keep pointing at something real.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from islandloaf.errors import AuthError
from islandloaf.storage.database import Database, to_iso, utcnow

logger = logging.getLogger(__name__)

SECRET_PREFIX = "agent_"
OWNER_BOOTSTRAP_ID = "owner"


class Role(StrEnum):
    """Fixed set of agent roles."""

    OWNER = "OWNER"
    LEADER = "LEADER"
    VENDOR_MANAGER = "VENDOR_MANAGER"
    BOOKING_MANAGER = "BOOKING_MANAGER"
    CALENDAR_SYNC = "CALENDAR_SYNC"
    PRICING = "PRICING"
    MARKETING = "MARKETING"
    SUPPORT = "SUPPORT"
    FINANCE = "FINANCE"


@dataclass(frozen=True)
class AgentIdentity:
    """A credentialed, non-human caller with a fixed role."""

    id: str
    display_name: str
    role: Role
    is_active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def for_task_runner(cls, role: Role | str) -> AgentIdentity:
        """Identity the task runner acts under when dispatching a task of ``role``."""
        role = Role(role)
        return cls(
            id=f"task-runner:{role.value.lower()}",
            display_name=f"Task runner ({role.value})",
            role=role,
            metadata={"source": "task-runner"},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "role": self.role.value,
            "is_active": self.is_active,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_secret() -> str:
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


class IdentityStore:
    """Persistent agent identities keyed by credential hash."""

    def __init__(self, db: Database, owner_key: str | None = None) -> None:
        self.db = db
        self.db.ensure_tables()
        self._owner_key_hash = hash_secret(owner_key) if owner_key else None

    def create(
        self,
        display_name: str,
        role: Role | str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[AgentIdentity, str]:
        """
        Create an identity and return it with its one-time plaintext secret.

        Returns:
            (identity, secret): the secret is not stored and cannot be recovered
        """
        display_name = display_name.strip()
        if not display_name:
            raise ValueError("display_name is required")
        role = Role(role)

        secret = generate_secret()
        agent_id = f"agt-{uuid.uuid4().hex[:12]}"
        now = to_iso(utcnow())

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_identities (
                    id, display_name, role, credential_hash, is_active,
                    metadata, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    agent_id,
                    display_name,
                    role.value,
                    hash_secret(secret),
                    json.dumps(metadata or {}),
                    now,
                    now,
                ),
            )

        logger.info("Created agent identity %s (%s)", agent_id, role.value)
        identity = self.get(agent_id)
        if identity is None:
            raise KeyError(agent_id)
        return identity, secret

    def resolve(self, secret: str) -> AgentIdentity:
        """Resolve a presented secret to an active identity or raise AuthError."""
        if not secret:
            raise AuthError("Missing agent credential", reason=AuthError.NOT_FOUND)

        digest = hash_secret(secret)
        if self._owner_key_hash and hmac.compare_digest(digest, self._owner_key_hash):
            return AgentIdentity(
                id=OWNER_BOOTSTRAP_ID,
                display_name="Owner (bootstrap key)",
                role=Role.OWNER,
                metadata={"source": "settings"},
            )

        rows = self.db.execute(
            "SELECT * FROM agent_identities WHERE credential_hash = ?", (digest,)
        )
        if not rows:
            raise AuthError("Invalid agent credential", reason=AuthError.NOT_FOUND)

        identity = self._row_to_identity(rows[0])
        if not identity.is_active:
            raise AuthError(f"Agent {identity.id} is inactive", reason=AuthError.INACTIVE)
        return identity

    def get(self, agent_id: str) -> AgentIdentity | None:
        rows = self.db.execute("SELECT * FROM agent_identities WHERE id = ?", (agent_id,))
        if rows:
            return self._row_to_identity(rows[0])
        return None

    def list(self, role: Role | str | None = None, active: bool | None = None) -> list[AgentIdentity]:
        clauses: list[str] = []
        params: list[Any] = []
        if role is not None:
            clauses.append("role = ?")
            params.append(Role(role).value)
        if active is not None:
            clauses.append("is_active = ?")
            params.append(1 if active else 0)

        sql = "SELECT * FROM agent_identities"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at"
        return [self._row_to_identity(row) for row in self.db.execute(sql, tuple(params))]

    def set_active(self, agent_id: str, active: bool) -> AgentIdentity:
        """Activate or deactivate an identity."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE agent_identities SET is_active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, to_iso(utcnow()), agent_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(agent_id)

        logger.info("Agent %s %s", agent_id, "activated" if active else "deactivated")
        identity = self.get(agent_id)
        if identity is None:
            raise KeyError(agent_id)
        return identity

    def update_metadata(self, agent_id: str, metadata: dict[str, Any]) -> AgentIdentity:
        """Merge ``metadata`` into the identity's metadata."""
        current = self.get(agent_id)
        if current is None:
            raise KeyError(agent_id)

        merged = {**current.metadata, **metadata}
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE agent_identities SET metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(merged), to_iso(utcnow()), agent_id),
            )

        identity = self.get(agent_id)
        if identity is None:
            raise KeyError(agent_id)
        return identity

    def _row_to_identity(self, row: Any) -> AgentIdentity:
        return AgentIdentity(
            id=row["id"],
            display_name=row["display_name"],
            role=Role(row["role"]),
            is_active=bool(row["is_active"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
