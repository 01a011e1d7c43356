"""Shared fixtures: temporary databases, a controllable clock and a wired stack."""

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from islandloaf.config import Settings
from islandloaf.services import Services, build_services
from islandloaf.storage.database import Database
from islandloaf.tools.operations import SimulatedOperations


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(data_dir=tmp_path / "loaf")
    database.ensure_tables()
    return database


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def operations() -> SimulatedOperations:
    return SimulatedOperations()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "loaf",
        ledger_wait_seconds=0.5,
        ledger_poll_interval=0.01,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        operation_timeout_seconds=5,
        admin_token="admin-secret",
        webhook_secret=None,
        _env_file=None,
    )


@pytest.fixture
def services(settings: Settings, operations: SimulatedOperations) -> Generator[Services, None, None]:
    svc = build_services(settings, operations=operations)
    yield svc
    svc.close()
