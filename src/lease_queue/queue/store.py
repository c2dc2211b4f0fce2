"""Row-level access to a single queue table."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, Table, func, select
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Row
from sqlalchemy.exc import SQLAlchemyError

from lease_queue.queue.errors import ErrorStatus, QueueError, QueueValidationError
from lease_queue.queue.task import TaskStatus
from lease_queue.storage.common import to_db_datetime
from lease_queue.storage.database import Database
from lease_queue.storage.queue_tables import validate_queue_name


@contextmanager
def database_errors(queue: str, operation: str) -> Iterator[None]:
    """Re-raise store exceptions as QueueError naming the queue and operation."""

    try:
        yield
    except SQLAlchemyError as error:
        raise QueueError(
            f"Queue '{queue}': Failed {operation}",
            status=ErrorStatus.DATABASE_ERROR,
            inner=error,
        ) from error


class QueueRepository:
    """Scoped select/update/delete helpers over one queue table."""

    def __init__(self, database: Database, queue: str) -> None:
        try:
            validate_queue_name(queue)
        except ValueError as error:
            raise QueueValidationError(str(error)) from error
        self.database = database
        self.queue = queue
        with database_errors(queue, "opening queue table"):
            self.table: Table = database.queue_table(queue)

    def scope(self, parameters: str | None) -> list[ColumnElement[bool]]:
        if parameters is None:
            return []
        return [self.table.c.parameters == parameters]

    def row_to_dict(self, row: Row[Any]) -> dict[str, Any]:
        mapping = row._mapping
        return {column.key: mapping[column] for column in self.table.c}

    def fetch(
        self,
        conditions: Sequence[ColumnElement[bool]],
        *,
        limit: int | None = None,
        order_by_id: bool = False,
    ) -> list[dict[str, Any]]:
        statement = select(self.table).where(*conditions)
        if order_by_id:
            statement = statement.order_by(self.table.c.id.asc())
        else:
            statement = statement.order_by(self.table.c.created.asc(), self.table.c.id.asc())
        if limit is not None:
            statement = statement.limit(limit)
        with database_errors(self.queue, "loading tasks"), self.database.session() as session:
            rows = session.exec(statement).all()
        return [self.row_to_dict(row) for row in rows]

    def get(self, row_id: int) -> dict[str, Any] | None:
        rows = self.fetch([self.table.c.id == row_id])
        return rows[0] if rows else None

    def count_by_status(self, parameters: str | None) -> dict[TaskStatus, int]:
        counts = {status: 0 for status in TaskStatus}
        statement = (
            select(self.table.c.status, func.count())
            .where(*self.scope(parameters))
            .group_by(self.table.c.status)
        )
        with database_errors(self.queue, "counting tasks"), self.database.session() as session:
            for status, count in session.exec(statement).all():
                counts[TaskStatus(int(status))] = int(count)
        return counts

    def count(self, parameters: str | None) -> int:
        return sum(self.count_by_status(parameters).values())

    def release_scope(self, parameters: str | None) -> int:
        """Force-release leased rows in scope; returns the PENDING rows released."""

        table = self.table
        with database_errors(self.queue, "clearing sessions"), self.database.session() as session:
            released = session.exec(
                sa_update(table)
                .where(
                    *self.scope(parameters),
                    table.c.status == int(TaskStatus.PENDING),
                    table.c.session_id.is_not(None),
                )
                .values({table.c.session_id: None, table.c.attempts: table.c.attempts + 1}),
            )
            session.exec(
                sa_update(table)
                .where(
                    *self.scope(parameters),
                    table.c.status != int(TaskStatus.PENDING),
                    table.c.session_id.is_not(None),
                )
                .values({table.c.session_id: None}),
            )
            session.commit()
        return int(released.rowcount or 0)

    def delete_scope(self, parameters: str | None) -> int:
        with database_errors(self.queue, "deleting tasks"), self.database.session() as session:
            result = session.exec(sa_delete(self.table).where(*self.scope(parameters)))
            session.commit()
        return int(result.rowcount or 0)

    def delete_matching(
        self,
        *,
        statuses: Sequence[TaskStatus],
        created_before: datetime | None,
    ) -> int:
        """Delete rows with one of `statuses`, optionally only those created before a cutoff."""

        table = self.table
        conditions: list[ColumnElement[bool]] = [
            table.c.status.in_([int(status) for status in statuses]),
        ]
        if created_before is not None:
            conditions.append(table.c.created < to_db_datetime(created_before))
        with database_errors(self.queue, "pruning tasks"), self.database.session() as session:
            result = session.exec(sa_delete(table).where(*conditions))
            session.commit()
        return int(result.rowcount or 0)
