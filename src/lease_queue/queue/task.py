"""Task snapshots and per-task processing outcomes."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import TYPE_CHECKING, Any

from lease_queue.queue.errors import ErrorStatus, QueueValidationError
from lease_queue.storage.common import to_utc_aware_datetime

if TYPE_CHECKING:
    from lease_queue.queue.manager import Manager


class TaskStatus(IntEnum):
    SUCCESS = 0
    PENDING = 1
    FAILURE = 2

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.PENDING


_REQUIRED_FIELDS = ("id", "created", "taskid", "parameters", "expires", "attempts", "status")


@dataclass(frozen=True, slots=True)
class Task:
    """Immutable snapshot of one queue row.

    Mutations go through the owning Manager and return a fresh snapshot; the
    snapshot itself never changes.
    """

    id: int
    taskid: str
    parameters: str
    created: datetime
    expires: datetime
    attempts: int
    status: TaskStatus
    data1: str | None = None
    data2: str | None = None
    data3: str | None = None
    max_attempts: int | None = None
    session_id: str | None = None
    completed: datetime | None = None
    error_status: str | None = None
    error_message: str | None = None
    manager: Manager | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_row(cls, manager: Manager | None, row: Mapping[str, Any]) -> Task:
        """Build a snapshot from a row mapping keyed by column key."""

        missing = [name for name in _REQUIRED_FIELDS if row.get(name) is None]
        if missing:
            raise QueueValidationError(
                f"Queue row is missing required fields: {', '.join(missing)}",
                status=ErrorStatus.MISSING_PARAMETER,
            )
        attempts = int(row["attempts"])
        if attempts < 0:
            raise QueueValidationError(f"Invalid attempts count: {attempts}")
        max_attempts = row.get("max_attempts")
        if max_attempts is not None and int(max_attempts) < 0:
            raise QueueValidationError(f"Invalid maxAttempts: {max_attempts}")
        try:
            status = TaskStatus(int(row["status"]))
        except ValueError as error:
            raise QueueValidationError(f"Invalid task status: {row['status']!r}") from error
        error_status = row.get("error_status")
        error_message = row.get("error_message")
        if (error_status is None) != (error_message is None):
            raise QueueValidationError(
                "errorStatus and errorMessage must be set together",
                status=ErrorStatus.INCONSISTENT_PARAMETERS,
            )
        completed = row.get("completed")
        return cls(
            id=int(row["id"]),
            taskid=str(row["taskid"]),
            parameters=str(row["parameters"]),
            created=to_utc_aware_datetime(row["created"]),
            expires=to_utc_aware_datetime(row["expires"]),
            attempts=attempts,
            status=status,
            data1=row.get("data1"),
            data2=row.get("data2"),
            data3=row.get("data3"),
            max_attempts=int(max_attempts) if max_attempts is not None else None,
            session_id=row.get("session_id"),
            completed=to_utc_aware_datetime(completed) if completed is not None else None,
            error_status=error_status,
            error_message=error_message,
            manager=manager,
        )

    def encode(self) -> dict[str, Any]:
        """JSON-safe representation with unset optional fields omitted."""

        values: dict[str, Any] = {
            "id": self.id,
            "taskid": self.taskid,
            "data1": self.data1,
            "data2": self.data2,
            "data3": self.data3,
            "parameters": self.parameters,
            "created": self.created.isoformat(),
            "expires": self.expires.isoformat(),
            "maxAttempts": self.max_attempts,
            "attempts": self.attempts,
            "sessionid": self.session_id,
            "status": int(self.status),
            "completed": self.completed.isoformat() if self.completed else None,
            "errorStatus": self.error_status,
            "errorMessage": self.error_message,
        }
        return {key: value for key, value in values.items() if value is not None}

    def __str__(self) -> str:
        return json.dumps(self.encode(), sort_keys=True)

    def update(
        self,
        status: TaskStatus,
        *,
        maintain_ownership: bool = True,
        error: BaseException | None = None,
        error_status: str | None = None,
        error_message: str | None = None,
    ) -> Task:
        return self._require_manager().update_task(
            self,
            status,
            maintain_ownership=maintain_ownership,
            error=error,
            error_status=error_status,
            error_message=error_message,
        )

    def set_data1(self, value: str) -> Task:
        return self._require_manager().set_task_data(self, 1, value)

    def set_data2(self, value: str) -> Task:
        return self._require_manager().set_task_data(self, 2, value)

    def set_data3(self, value: str) -> Task:
        return self._require_manager().set_task_data(self, 3, value)

    def delete(self) -> None:
        self._require_manager().delete_task(self)

    def _require_manager(self) -> Manager:
        if self.manager is None:
            raise QueueValidationError(
                f"Task {self.taskid!r} is detached from its queue manager",
                status=ErrorStatus.STATE_ERROR,
            )
        return self.manager


@dataclass(frozen=True, slots=True)
class TaskSuccess:
    value: Any = True


@dataclass(frozen=True, slots=True)
class TaskFailure:
    """Recoverable failure reported by a task callback without raising."""

    error: BaseException | None = None
    error_status: str | None = None
    error_message: str | None = None


TaskOutcome = TaskSuccess | TaskFailure


def as_outcome(value: Any) -> TaskOutcome:
    """Normalize a callback return value; falsy values count as failures."""

    if isinstance(value, (TaskSuccess, TaskFailure)):
        return value
    if not value:
        return TaskFailure()
    return TaskSuccess(value)


@dataclass(frozen=True, slots=True)
class ProcessSummary:
    total: int = 0
    success: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "success": self.success}
