"""Database facade shared by the lease authority and queue managers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import Table, inspect
from sqlmodel import Session

from lease_queue.storage.common import build_sqlite_engine, utc_now
from lease_queue.storage.queue_tables import build_queue_table

Clock = Callable[[], datetime]

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


class Database:
    """SQLite engine, clock, and queue table registry."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        clock: Clock = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._queue_tables: dict[str, Table] = {}

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Apply Alembic migrations for lease storage up to head."""

        config = Config()
        config.set_main_option("script_location", str(MIGRATIONS_DIR))
        config.set_main_option("sqlalchemy.url", f"sqlite:///{self.db_path}")
        command.upgrade(config, "head")

    def now(self) -> datetime:
        return self.clock()

    def session(self) -> Session:
        return Session(self.engine)

    def queue_table(self, name: str) -> Table:
        """Return the table backing the named queue, creating it if missing."""

        table = self._queue_tables.get(name)
        if table is None:
            table = build_queue_table(name)
            table.create(self.engine, checkfirst=True)
            self._queue_tables[name] = table
        return table

    def table_names(self) -> list[str]:
        return inspect(self.engine).get_table_names()
