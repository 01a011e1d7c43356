"""Tests for agent identities and credential resolution."""

from __future__ import annotations

import pytest

from islandloaf.errors import AuthError
from islandloaf.security.identity import AgentIdentity, IdentityStore, Role, hash_secret
from islandloaf.storage.database import Database


@pytest.fixture
def store(db: Database) -> IdentityStore:
    return IdentityStore(db)


class TestCreate:
    def test_create_returns_one_time_secret(self, store: IdentityStore) -> None:
        identity, secret = store.create("Booking bot", Role.BOOKING_MANAGER)

        assert identity.id.startswith("agt-")
        assert identity.role is Role.BOOKING_MANAGER
        assert identity.is_active
        assert secret.startswith("agent_")
        assert len(secret) == len("agent_") + 64

    def test_only_hash_is_stored(self, store: IdentityStore, db: Database) -> None:
        identity, secret = store.create("Finance bot", "FINANCE")
        rows = db.execute("SELECT credential_hash FROM agent_identities WHERE id = ?", (identity.id,))
        assert rows[0]["credential_hash"] == hash_secret(secret)
        assert secret not in rows[0]["credential_hash"]

    def test_secrets_differ(self, store: IdentityStore) -> None:
        _, first = store.create("a", Role.SUPPORT)
        _, second = store.create("b", Role.SUPPORT)
        assert first != second

    def test_rejects_unknown_role(self, store: IdentityStore) -> None:
        with pytest.raises(ValueError):
            store.create("x", "JANITOR")

    def test_rejects_blank_name(self, store: IdentityStore) -> None:
        with pytest.raises(ValueError):
            store.create("   ", Role.SUPPORT)


class TestResolve:
    def test_resolve_active(self, store: IdentityStore) -> None:
        identity, secret = store.create("Leader", Role.LEADER, {"channel": "telegram"})
        resolved = store.resolve(secret)
        assert resolved.id == identity.id
        assert resolved.role is Role.LEADER
        assert resolved.metadata == {"channel": "telegram"}

    def test_unknown_secret(self, store: IdentityStore) -> None:
        with pytest.raises(AuthError) as excinfo:
            store.resolve("agent_nope")
        assert excinfo.value.reason == AuthError.NOT_FOUND

    def test_empty_secret(self, store: IdentityStore) -> None:
        with pytest.raises(AuthError) as excinfo:
            store.resolve("")
        assert excinfo.value.reason == AuthError.NOT_FOUND

    def test_inactive(self, store: IdentityStore) -> None:
        identity, secret = store.create("Old bot", Role.MARKETING)
        store.set_active(identity.id, False)

        with pytest.raises(AuthError) as excinfo:
            store.resolve(secret)
        assert excinfo.value.reason == AuthError.INACTIVE

        store.set_active(identity.id, True)
        assert store.resolve(secret).id == identity.id

    def test_owner_bootstrap_key(self, db: Database) -> None:
        store = IdentityStore(db, owner_key="owner-bootstrap")
        owner = store.resolve("owner-bootstrap")
        assert owner.role is Role.OWNER
        assert owner.id == "owner"
        with pytest.raises(AuthError):
            store.resolve("owner-bootstrap-wrong")


class TestAdministration:
    def test_set_active_missing(self, store: IdentityStore) -> None:
        with pytest.raises(KeyError):
            store.set_active("agt-missing", False)

    def test_update_metadata_merges(self, store: IdentityStore) -> None:
        identity, _ = store.create("Support", Role.SUPPORT, {"team": "a", "tz": "UTC"})
        updated = store.update_metadata(identity.id, {"team": "b"})
        assert updated.metadata == {"team": "b", "tz": "UTC"}

    def test_list_filters(self, store: IdentityStore) -> None:
        finance, _ = store.create("Finance", Role.FINANCE)
        store.create("Support", Role.SUPPORT)
        store.set_active(finance.id, False)

        assert [i.display_name for i in store.list(role=Role.FINANCE)] == ["Finance"]
        assert [i.display_name for i in store.list(active=True)] == ["Support"]
        assert len(store.list()) == 2

    def test_identities_never_deleted(self, store: IdentityStore) -> None:
        identity, _ = store.create("Temp", Role.PRICING)
        store.set_active(identity.id, False)
        assert store.get(identity.id) is not None


def test_task_runner_identity() -> None:
    identity = AgentIdentity.for_task_runner("FINANCE")
    assert identity.role is Role.FINANCE
    assert identity.id == "task-runner:finance"
    assert identity.to_dict()["role"] == "FINANCE"
