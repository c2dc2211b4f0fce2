"""Queue manager: binds a lease to a queue and a parameters scope."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import timedelta
from typing import Any

from sqlalchemy import ColumnElement, Table, insert, or_, select
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import col

from lease_queue.leases import DEFAULT_LEASE_LIFETIME, Lease, LeaseAuthority, is_expired
from lease_queue.queue.errors import (
    ErrorStatus,
    QueueError,
    QueueValidationError,
    TaskExistsError,
)
from lease_queue.queue.store import QueueRepository, database_errors
from lease_queue.queue.task import (
    ProcessSummary,
    Task,
    TaskFailure,
    TaskStatus,
    TaskSuccess,
    as_outcome,
)
from lease_queue.storage.common import to_db_datetime
from lease_queue.storage.database import Database
from lease_queue.storage.sqlmodel_models import LeaseRecord

logger = logging.getLogger(__name__)

DEFAULT_TOUCH_PERIOD = 20
DEFAULT_OWNER_ID = "queue"

TaskCallback = Callable[[Task], Any]
DataFilter = str | Sequence[str] | None


class Manager:
    """Creates, claims, processes and recovers the tasks of one queue.

    `parameters` scopes every query; pass None for an unscoped manager, which
    then requires explicit parameters when creating tasks. Without
    `lease_token` a new lease is created and orphaned state is repaired
    queue-wide before the manager is returned.
    """

    def __init__(  # noqa: PLR0913
        self,
        database: Database,
        *,
        queue: str,
        parameters: str | None = "",
        lifetime: int | None = None,
        max_attempts: int | None = None,
        lease_token: str | None = None,
        lease_lifetime: int | None = None,
        owner_id: str | None = None,
        log_operations: bool = False,
    ) -> None:
        _require_positive("lifetime", lifetime)
        _require_positive("max_attempts", max_attempts)
        _require_positive("lease_lifetime", lease_lifetime)
        if lease_token is not None and (lease_lifetime is not None or owner_id is not None):
            raise QueueValidationError(
                "lease_token is incompatible with lease_lifetime and owner_id",
                status=ErrorStatus.INCONSISTENT_PARAMETERS,
            )

        self.database = database
        self.queue = queue
        self.parameters = parameters
        self.lifetime = lifetime
        self.max_attempts = max_attempts
        self.log_operations = log_operations
        self.repository = QueueRepository(database, queue)
        self.leases = LeaseAuthority(database)
        with database_errors(queue, "starting session"):
            if lease_token is not None:
                self._lease = self.leases.load(lease_token, touch=False)
            else:
                self._lease = self.leases.create(
                    owner_id=owner_id or DEFAULT_OWNER_ID,
                    lifetime_seconds=lease_lifetime or DEFAULT_LEASE_LIFETIME,
                )
        if lease_token is None:
            self.clear_sessions()
            self.mark_tasks_failed()

    @property
    def lease(self) -> Lease:
        return self._lease

    @property
    def lease_token(self) -> str:
        return self._lease.token

    @property
    def table(self) -> Table:
        return self.repository.table

    def create_task(  # noqa: PLR0913
        self,
        taskid: str,
        *,
        data1: str | None = None,
        data2: str | None = None,
        data3: str | None = None,
        parameters: str | None = None,
        lifetime: int | None = None,
        max_attempts: int | None = None,
        take_ownership: bool = True,
        replace_existing: bool = False,
    ) -> Task:
        """Insert a PENDING task; an existing (taskid, parameters) row is only replaced on request."""

        scope = parameters if parameters is not None else self.parameters
        if scope is None:
            raise QueueValidationError(
                "parameters is required for a manager without a parameters scope",
                status=ErrorStatus.MISSING_PARAMETER,
            )
        lifetime = lifetime if lifetime is not None else self.lifetime
        if lifetime is None:
            raise QueueValidationError(
                "Task lifetime is required",
                status=ErrorStatus.MISSING_PARAMETER,
            )
        if lifetime < 1:
            raise QueueValidationError("Task lifetime must be positive")
        max_attempts = max_attempts if max_attempts is not None else self.max_attempts
        if max_attempts is not None and max_attempts < 1:
            raise QueueValidationError("max_attempts must be positive")

        request = {
            "taskid": taskid,
            "data1": data1,
            "data2": data2,
            "data3": data3,
            "parameters": scope,
            "lifetime": lifetime,
            "maxAttempts": max_attempts,
            "takeOwnership": take_ownership,
            "replaceExisting": replace_existing,
        }
        self._log("Creating task", request)

        table = self.table
        now = self.database.now()
        values = {
            table.c.created: to_db_datetime(now),
            table.c.taskid: taskid,
            table.c.data1: data1,
            table.c.data2: data2,
            table.c.data3: data3,
            table.c.parameters: scope,
            table.c.expires: to_db_datetime(now + timedelta(seconds=lifetime)),
            table.c.max_attempts: max_attempts,
            table.c.attempts: 0,
            table.c.session_id: self.lease_token if take_ownership else None,
            table.c.status: int(TaskStatus.PENDING),
        }
        try:
            with self.database.session() as session:
                existing = session.exec(
                    select(table).where(table.c.taskid == taskid, table.c.parameters == scope),
                ).one_or_none()
                if existing is not None:
                    old = self.repository.row_to_dict(existing)
                    self._check_replaceable(old, replace_existing=replace_existing)
                    session.exec(sa_delete(table).where(table.c.id == old["id"]))
                result = session.exec(insert(table).values(values))
                row_id = int(result.inserted_primary_key[0])
                session.commit()
        except IntegrityError as error:
            task = self._resolve_create_conflict(
                taskid,
                scope,
                replace_existing=replace_existing,
                error=error,
            )
        except SQLAlchemyError as error:
            raise QueueError(
                f"Queue '{self.queue}': Failed creating task {_encode(request)}",
                status=ErrorStatus.DATABASE_ERROR,
                inner=error,
            ) from error
        else:
            task = self._reload(row_id)

        self._log("Created task", task.encode())
        return task

    def claim_tasks(
        self,
        max_tasks: int | None = None,
        *,
        data1: DataFilter = None,
        data2: DataFilter = None,
        data3: DataFilter = None,
    ) -> int:
        """Mark up to `max_tasks` available PENDING tasks as owned; returns the count claimed.

        Each row is claimed with an update guarded on `sessionid IS NULL`, so a
        concurrent claimant can lose a row but never steal one. Exclusive
        claiming relies on the store serializing writes.
        """

        conditions = [
            *self._conditions(
                data1=data1,
                data2=data2,
                data3=data3,
                status=TaskStatus.PENDING,
                max_tasks=max_tasks,
            ),
            *self._eligible(None),
        ]
        self._log(
            "Claiming tasks",
            {"maxTasks": max_tasks, "data1": data1, "data2": data2, "data3": data3},
        )

        table = self.table
        claimed = 0
        with database_errors(self.queue, "claiming tasks"), self.database.session() as session:
            statement = (
                select(table.c.id)
                .where(*conditions)
                .order_by(table.c.created.asc(), table.c.id.asc())
            )
            if max_tasks is not None:
                statement = statement.limit(max_tasks)
            candidate_ids = session.exec(statement).scalars().all()
            for row_id in candidate_ids:
                result = session.exec(
                    sa_update(table)
                    .where(table.c.id == row_id, *conditions)
                    .values({table.c.session_id: self.lease_token}),
                )
                if result.rowcount == 1:
                    claimed += 1
            session.commit()

        self._log(f"Claimed {claimed} tasks")
        return claimed

    def load_tasks(  # noqa: PLR0913
        self,
        *,
        taskid: str | None = None,
        data1: DataFilter = None,
        data2: DataFilter = None,
        data3: DataFilter = None,
        status: TaskStatus | int | Sequence[TaskStatus | int] | None = None,
        owned: bool = False,
        max_tasks: int | None = None,
    ) -> list[Task]:
        """Return task snapshots in creation order.

        With `owned`, only rows held by this manager's lease that are still
        eligible for processing (unexpired, under the attempt cap).
        """

        conditions = self._conditions(
            taskid=taskid,
            data1=data1,
            data2=data2,
            data3=data3,
            status=status,
            max_tasks=max_tasks,
        )
        if owned:
            conditions.extend(self._eligible(self.lease_token))
        rows = self.repository.fetch(conditions, limit=max_tasks)
        return [Task.from_row(self, row) for row in rows]

    def process_tasks(
        self,
        callback: TaskCallback,
        *,
        rows: Iterable[Task] | None = None,
        delete: bool = False,
        maintain_ownership: bool | None = None,
        touch_period: int = DEFAULT_TOUCH_PERIOD,
    ) -> ProcessSummary:
        """Run `callback` for each owned task and record the outcome.

        Exceptions and falsy results leave the task PENDING with attempts
        incremented; any other result marks it SUCCESS. Supplied `rows` must all
        be owned by this manager's lease.
        """

        if touch_period < 1:
            raise QueueValidationError("touch_period must be positive")
        custom_rows = rows is not None
        if rows is None:
            rows = [
                Task.from_row(self, row)
                for row in self.repository.fetch(
                    [self.table.c.session_id == self.lease_token],
                    order_by_id=True,
                )
            ]
        keep_ownership = True if maintain_ownership is None else maintain_ownership

        total = success = 0
        for task in rows:
            if custom_rows and task.session_id != self.lease_token:
                raise QueueError(
                    f"Queue '{self.queue}': Rows contain task {task.taskid!r} not owned by manager",
                    status=ErrorStatus.STATE_ERROR,
                )
            self._log(f"Processing task {task.taskid}")
            try:
                outcome = as_outcome(callback(task))
            except Exception as error:  # noqa: BLE001
                wrapped = QueueError.wrap(error)
                logger.error("Queue '%s': task %s failed: %s", self.queue, task.taskid, wrapped)
                outcome = TaskFailure(error=wrapped)

            if isinstance(outcome, TaskSuccess):
                success += 1
            if delete:
                try:
                    self.delete_task(task)
                except QueueError as error:
                    logger.error(
                        "Queue '%s': failed deleting task %s: %s",
                        self.queue,
                        task.taskid,
                        error,
                    )
            elif isinstance(outcome, TaskSuccess):
                self.update_task(task, TaskStatus.SUCCESS, maintain_ownership=keep_ownership)
            else:
                self.update_task(
                    task,
                    TaskStatus.PENDING,
                    maintain_ownership=keep_ownership,
                    error=outcome.error,
                    error_status=outcome.error_status,
                    error_message=outcome.error_message,
                )

            total += 1
            if total % touch_period == 0:
                self.touch_session()

        return ProcessSummary(total=total, success=success)

    def touch_session(self) -> None:
        with database_errors(self.queue, "touching session"):
            self._lease = self.leases.touch(self._lease)

    def end_session(self) -> int:
        """Delete this manager's lease and release its PENDING rows; returns the count released."""

        self._log("Ending session")
        with database_errors(self.queue, "ending session"):
            self.leases.delete(self.lease_token)
        return self.clear_sessions()

    def clear_sessions(self) -> int:
        """Release PENDING rows whose lease no longer exists, queue-wide.

        Expired leases are deleted first; each released row gets its attempts
        incremented. Returns the number of rows released.
        """

        self._log("Clearing sessions")
        table = self.table
        lease_exists = (
            select(col(LeaseRecord.id))
            .where(col(LeaseRecord.token) == table.c.session_id)
            .correlate(table)
            .exists()
        )
        with database_errors(self.queue, "clearing sessions"):
            self.leases.delete_expired()
            with self.database.session() as session:
                result = session.exec(
                    sa_update(table)
                    .where(
                        table.c.status == int(TaskStatus.PENDING),
                        table.c.session_id.is_not(None),
                        ~lease_exists,
                    )
                    .values(
                        {
                            table.c.session_id: None,
                            table.c.attempts: table.c.attempts + 1,
                        },
                    ),
                )
                session.commit()
        cleared = int(result.rowcount or 0)
        self._log("Done clearing sessions", {"cleared": cleared})
        return cleared

    def mark_tasks_failed(self) -> int:
        """Move PENDING tasks that are expired or out of attempts to FAILURE, queue-wide."""

        self._log("Marking tasks failed")
        table = self.table
        now = to_db_datetime(self.database.now())
        rows = self.repository.fetch(
            [
                table.c.status == int(TaskStatus.PENDING),
                or_(table.c.attempts >= table.c.max_attempts, table.c.expires < now),
            ],
        )
        failed = 0
        for row in rows:
            task = Task.from_row(self, row)
            if self._transition(task, TaskStatus.FAILURE, only_if_pending=True) is not None:
                failed += 1
        self._log("Done marking tasks failed", {"failed": failed})
        return failed

    def update_task(  # noqa: PLR0913
        self,
        task: Task,
        status: TaskStatus | int,
        *,
        maintain_ownership: bool = True,
        error: BaseException | None = None,
        error_status: str | None = None,
        error_message: str | None = None,
    ) -> Task:
        """Transition a task's status, incrementing its attempts.

        PENDING with `maintain_ownership` keeps the lease; every other
        transition releases it. Error information is given either as `error`
        or as the (error_status, error_message) pair, and never for SUCCESS.
        """

        try:
            status = TaskStatus(status)
        except ValueError as exc:
            raise QueueValidationError(f"Invalid task status: {status!r}") from exc
        if status is TaskStatus.SUCCESS and (
            error is not None or error_status is not None or error_message is not None
        ):
            raise QueueValidationError(
                "Error information is incompatible with SUCCESS",
                status=ErrorStatus.INCONSISTENT_PARAMETERS,
            )
        if error is not None and (error_status is not None or error_message is not None):
            raise QueueValidationError(
                "error is incompatible with error_status and error_message",
                status=ErrorStatus.INCONSISTENT_PARAMETERS,
            )
        if (error_status is None) != (error_message is None):
            raise QueueValidationError(
                "error_status and error_message must be specified together",
                status=ErrorStatus.INCONSISTENT_PARAMETERS,
            )
        if error is not None:
            wrapped = QueueError.wrap(error)
            error_status, error_message = wrapped.status_name, wrapped.details

        updated = self._transition(
            task,
            status,
            maintain_ownership=maintain_ownership,
            error_status=error_status,
            error_message=error_message,
        )
        if updated is None:
            raise QueueError(
                f"Queue '{self.queue}': Task {task.taskid!r} no longer exists",
                status=ErrorStatus.OBJECT_DOES_NOT_EXIST,
            )
        return updated

    def set_task_data(self, task: Task, slot: int, value: str | None) -> Task:
        if slot not in (1, 2, 3):
            raise QueueValidationError(f"Invalid data slot: {slot}")
        column = self.table.c[f"data{slot}"]
        self._log(f"Setting data{slot}", {"task": task.encode(), "value": value})
        with database_errors(self.queue, f"setting data{slot}"), self.database.session() as session:
            session.exec(
                sa_update(self.table).where(self.table.c.id == task.id).values({column: value}),
            )
            session.commit()
        return self._reload(task.id)

    def delete_task(self, task: Task) -> None:
        self._log("Deleting task", task.encode())
        with database_errors(self.queue, "deleting task"), self.database.session() as session:
            session.exec(sa_delete(self.table).where(self.table.c.id == task.id))
            session.commit()

    def count_tasks(self) -> int:
        return self.repository.count(self.parameters)

    def dump_queue(self) -> None:
        """Write every row of the queue to the log when operation logging is on."""

        if not self.log_operations:
            return
        rows = self.repository.fetch([])
        self._log("Contents", [Task.from_row(self, row).encode() for row in rows])

    def _transition(  # noqa: PLR0913
        self,
        task: Task,
        status: TaskStatus,
        *,
        maintain_ownership: bool = True,
        error_status: str | None = None,
        error_message: str | None = None,
        only_if_pending: bool = False,
    ) -> Task | None:
        table = self.table
        now = self.database.now()
        values: dict[Any, Any] = {
            table.c.status: int(status),
            table.c.attempts: table.c.attempts + 1,
            table.c.session_id: (
                self.lease_token
                if status is TaskStatus.PENDING and maintain_ownership
                else None
            ),
            table.c.completed: to_db_datetime(now) if status.is_terminal else None,
        }
        if status is TaskStatus.SUCCESS:
            values[table.c.error_status] = None
            values[table.c.error_message] = None
        elif error_status is not None:
            values[table.c.error_status] = error_status
            values[table.c.error_message] = error_message

        conditions: list[ColumnElement[bool]] = [table.c.id == task.id]
        if only_if_pending:
            conditions.append(table.c.status == int(TaskStatus.PENDING))

        self._log("Updating task status", {"task": task.encode(), "status": int(status)})
        with database_errors(self.queue, "updating task status"), self.database.session() as session:
            result = session.exec(sa_update(table).where(*conditions).values(values))
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()

        updated = self._reload(task.id)
        if status is TaskStatus.FAILURE and task.status is TaskStatus.PENDING:
            logger.critical("Queue '%s': Task failed permanently: %s", self.queue, updated)
        self._log("Done updating task status", {"task": updated.encode()})
        return updated

    def _check_replaceable(self, old: dict[str, Any], *, replace_existing: bool) -> None:
        if not replace_existing:
            raise TaskExistsError(f"Queue '{self.queue}': Task {old['taskid']!r} exists")
        owner = old["session_id"]
        if owner is None or owner == self.lease_token:
            return
        expires_at = self.leases.expires_at(owner)
        if expires_at is not None and not is_expired(expires_at, self.database.now()):
            raise TaskExistsError(
                f"Queue '{self.queue}': Task {old['taskid']!r} is owned by another processor",
            )

    def _resolve_create_conflict(
        self,
        taskid: str,
        parameters: str,
        *,
        replace_existing: bool,
        error: IntegrityError,
    ) -> Task:
        rows = self.repository.fetch(
            [self.table.c.taskid == taskid, self.table.c.parameters == parameters],
        )
        if replace_existing and rows:
            current = Task.from_row(self, rows[0])
            if current.status is TaskStatus.PENDING and current.attempts == 0:
                return current
        raise TaskExistsError(
            f"Queue '{self.queue}': Task {taskid!r} was created concurrently",
            inner=error,
        )

    def _reload(self, row_id: int) -> Task:
        row = self.repository.get(row_id)
        if row is None:
            raise QueueError(
                f"Queue '{self.queue}': Task #{row_id} no longer exists",
                status=ErrorStatus.OBJECT_DOES_NOT_EXIST,
            )
        return Task.from_row(self, row)

    def _conditions(  # noqa: PLR0913
        self,
        *,
        taskid: str | None = None,
        data1: DataFilter = None,
        data2: DataFilter = None,
        data3: DataFilter = None,
        status: TaskStatus | int | Sequence[TaskStatus | int] | None = None,
        max_tasks: int | None = None,
    ) -> list[ColumnElement[bool]]:
        if max_tasks is not None and max_tasks < 1:
            raise QueueValidationError("max_tasks must be positive")
        table = self.table
        conditions = self.repository.scope(self.parameters)
        if taskid is not None:
            conditions.append(table.c.taskid == taskid)
        for name, value in (("data1", data1), ("data2", data2), ("data3", data3)):
            values = _string_values(name, value)
            if values is not None:
                conditions.append(table.c[name].in_(values))
        if status is not None:
            conditions.append(table.c.status.in_(_status_values(status)))
        return conditions

    def _eligible(self, session_id: str | None) -> list[ColumnElement[bool]]:
        table = self.table
        now = to_db_datetime(self.database.now())
        owner = (
            table.c.session_id.is_(None)
            if session_id is None
            else table.c.session_id == session_id
        )
        return [
            owner,
            table.c.expires >= now,
            or_(table.c.max_attempts.is_(None), table.c.attempts < table.c.max_attempts),
        ]

    def _log(self, message: str, params: Any = None) -> None:
        if not self.log_operations:
            return
        if params is not None:
            message = f"{message} {_encode(params)}"
        logger.info("Queue '%s': %s", self.queue, message)


def _encode(params: Any) -> str:
    if isinstance(params, dict):
        params = {key: value for key, value in params.items() if value is not None}
    return json.dumps(params, default=str, sort_keys=True)


def _require_positive(name: str, value: int | None) -> None:
    if value is not None and value < 1:
        raise QueueValidationError(f"{name} must be positive")


def _string_values(name: str, value: DataFilter) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    values = list(value)
    if not values:
        raise QueueValidationError(f"{name} must be non-empty")
    return values


def _status_values(status: TaskStatus | int | Sequence[TaskStatus | int]) -> list[int]:
    raw = [status] if isinstance(status, int) else list(status)
    values = []
    for item in raw:
        try:
            values.append(int(TaskStatus(item)))
        except ValueError as error:
            raise QueueValidationError(f"Invalid status: {item!r}") from error
    return values
