"""Structured errors raised by queue operations."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorStatus(str, Enum):
    """Machine-readable error categories shared with worker subprocesses."""

    INVALID_PARAMETER = "INVALID_PARAMETER"
    INCONSISTENT_PARAMETERS = "INCONSISTENT_PARAMETERS"
    MISSING_PARAMETER = "MISSING_PARAMETER"
    OBJECT_EXISTS = "OBJECT_EXISTS"
    OBJECT_DOES_NOT_EXIST = "OBJECT_DOES_NOT_EXIST"
    STATE_ERROR = "STATE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNEXPECTED_BEHAVIOR = "UNEXPECTED_BEHAVIOR"
    DATABASE_ERROR = "DATABASE_ERROR"


class QueueError(RuntimeError):
    """Queue error carrying a status code and an optional inner exception."""

    default_status = ErrorStatus.INTERNAL_ERROR

    def __init__(
        self,
        details: str,
        *,
        status: ErrorStatus | str | None = None,
        inner: BaseException | None = None,
    ) -> None:
        message = details if inner is None else f"{details}: {inner}"
        super().__init__(message)
        self.details = details
        self.status = _coerce_status(status or self.default_status)
        self.inner = inner
        if inner is not None:
            self.__cause__ = inner

    @property
    def status_name(self) -> str:
        return self.status.value if isinstance(self.status, ErrorStatus) else self.status

    @classmethod
    def wrap(cls, error: BaseException) -> QueueError:
        """Return `error` itself if it is a QueueError, otherwise wrap it."""

        if isinstance(error, QueueError):
            return error
        return QueueError(
            f"{type(error).__name__}: {error}",
            status=ErrorStatus.UNEXPECTED_BEHAVIOR,
            inner=error,
        )

    def to_envelope(self, *, version: int) -> dict[str, Any]:
        return {"version": version, "status": self.status_name, "message": str(self)}

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any]) -> QueueError:
        """Rebuild an error reported by a worker subprocess."""

        status = envelope.get("status")
        message = envelope.get("message") or envelope.get("details") or "Unknown worker error"
        return QueueError(
            str(message),
            status=str(status) if status else ErrorStatus.INTERNAL_ERROR,
        )


class QueueValidationError(QueueError, ValueError):
    """Invalid option values or combinations, raised before any mutation."""

    default_status = ErrorStatus.INVALID_PARAMETER


class TaskExistsError(QueueError):
    default_status = ErrorStatus.OBJECT_EXISTS


class LeaseNotFoundError(QueueError):
    default_status = ErrorStatus.OBJECT_DOES_NOT_EXIST


class LeaseExpiredError(QueueError):
    default_status = ErrorStatus.STATE_ERROR


class WorkerFailedError(QueueError):
    """A worker subprocess could not be started or did not report success."""

    default_status = ErrorStatus.INTERNAL_ERROR


def _coerce_status(value: ErrorStatus | str) -> ErrorStatus | str:
    if isinstance(value, ErrorStatus):
        return value
    try:
        return ErrorStatus(value)
    except ValueError:
        return value
