"""SQLAlchemy Core definitions for per-queue task tables."""

from __future__ import annotations

import re

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

MATCH_QUEUE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Tables owned by the storage layer itself; never treated as queues.
RESERVED_TABLES = frozenset({"leases", "alembic_version"})


def validate_queue_name(name: str) -> str:
    """Return the queue name, raising ValueError if it cannot name a table."""

    if not MATCH_QUEUE_NAME.match(name):
        raise ValueError(
            f"Invalid queue name {name!r}: expected letters, digits and underscores, "
            "not starting with a digit.",
        )
    if name in RESERVED_TABLES:
        raise ValueError(f"Queue name {name!r} is reserved.")
    return name


def build_queue_table(name: str, metadata: MetaData | None = None) -> Table:
    """Build the table definition backing the named queue.

    Column names are part of the storage contract shared with other processes;
    Python-side keys are snake_case.
    """

    validate_queue_name(name)
    table = Table(
        name,
        metadata if metadata is not None else MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("created", DateTime(timezone=True), nullable=False),
        Column("taskid", String, nullable=False),
        Column("data1", Text, nullable=True),
        Column("data2", Text, nullable=True),
        Column("data3", Text, nullable=True),
        Column("parameters", Text, nullable=False, server_default=""),
        Column("expires", DateTime(timezone=True), nullable=False),
        Column("maxAttempts", Integer, key="max_attempts", nullable=True),
        Column("attempts", Integer, nullable=False, server_default="0"),
        Column("sessionid", String(64), key="session_id", nullable=True),
        Column("status", Integer, nullable=False, server_default="1"),
        Column("completed", DateTime(timezone=True), nullable=True),
        Column("errorStatus", String, key="error_status", nullable=True),
        Column("errorMessage", Text, key="error_message", nullable=True),
        UniqueConstraint("taskid", "parameters", name=f"uq_{name}_taskid_parameters"),
    )
    Index(f"idx_{name}_sessionid", table.c.session_id)
    Index(f"idx_{name}_parameters_status", table.c.parameters, table.c.status)
    return table
