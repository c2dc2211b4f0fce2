"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from lease_queue.config import QueueSettings, Settings, WorkerSettings
from lease_queue.storage.database import Database


class FakeClock:
    """Controllable UTC clock injected into Database."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def database(tmp_path: Path, clock: FakeClock) -> Iterator[Database]:
    db = Database(tmp_path / "queue.db", clock=clock)
    db.init_schema()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with worker sleeps shortened for tests."""

    return Settings(
        db_path=tmp_path / "queue.db",
        queue=QueueSettings(touch_period=2),
        workers=WorkerSettings(
            create_sleep_seconds=0.0,
            check_sleep_seconds=0.05,
            spawn_attempts=3,
            spawn_base_delay_seconds=0.0,
        ),
    )
