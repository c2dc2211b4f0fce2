"""Runtime configuration for queue managers and worker fan-out."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class QueueSettings:
    """Manager and lease settings."""

    log_operations: bool = False
    lease_lifetime_seconds: int = 3_600
    lease_owner_id: str = "queue"
    touch_period: int = 20


@dataclass(slots=True)
class WorkerSettings:
    """Subprocess worker settings used by multi mode."""

    create_sleep_seconds: float = 1.0
    check_sleep_seconds: float = 1.0
    spawn_attempts: int = 5
    spawn_base_delay_seconds: float = 0.5
    spawn_multiplier: float = 2.0
    python_executable: str = field(default_factory=lambda: sys.executable)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".lease_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    workers: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("LEASE_QUEUE_DB_PATH", ".lease_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("LEASE_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                log_operations=_env_bool("LEASE_QUEUE_LOG_OPERATIONS", default=False),
                lease_lifetime_seconds=int(
                    os.getenv("LEASE_QUEUE_LEASE_LIFETIME_SECONDS", "3600"),
                ),
                lease_owner_id=os.getenv("LEASE_QUEUE_LEASE_OWNER_ID", "queue"),
                touch_period=int(os.getenv("LEASE_QUEUE_TOUCH_PERIOD", "20")),
            ),
            workers=WorkerSettings(
                create_sleep_seconds=float(
                    os.getenv("LEASE_QUEUE_WORKER_CREATE_SLEEP_SECONDS", "1.0"),
                ),
                check_sleep_seconds=float(
                    os.getenv("LEASE_QUEUE_WORKER_CHECK_SLEEP_SECONDS", "1.0"),
                ),
                spawn_attempts=int(os.getenv("LEASE_QUEUE_WORKER_SPAWN_ATTEMPTS", "5")),
                spawn_base_delay_seconds=float(
                    os.getenv("LEASE_QUEUE_WORKER_SPAWN_BASE_DELAY_SECONDS", "0.5"),
                ),
                spawn_multiplier=float(os.getenv("LEASE_QUEUE_WORKER_SPAWN_MULTIPLIER", "2.0")),
                python_executable=os.getenv("LEASE_QUEUE_WORKER_PYTHON", sys.executable),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("LEASE_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.lease_lifetime_seconds <= 0:
            raise ValueError("LEASE_QUEUE_LEASE_LIFETIME_SECONDS must be > 0.")
        if not self.queue.lease_owner_id.strip():
            raise ValueError("LEASE_QUEUE_LEASE_OWNER_ID must not be empty.")
        if self.queue.touch_period <= 0:
            raise ValueError("LEASE_QUEUE_TOUCH_PERIOD must be > 0.")
        if self.workers.create_sleep_seconds < 0:
            raise ValueError("LEASE_QUEUE_WORKER_CREATE_SLEEP_SECONDS must be >= 0.")
        if self.workers.check_sleep_seconds < 0:
            raise ValueError("LEASE_QUEUE_WORKER_CHECK_SLEEP_SECONDS must be >= 0.")
        if self.workers.spawn_attempts <= 0:
            raise ValueError("LEASE_QUEUE_WORKER_SPAWN_ATTEMPTS must be > 0.")
        if self.workers.spawn_base_delay_seconds < 0:
            raise ValueError("LEASE_QUEUE_WORKER_SPAWN_BASE_DELAY_SECONDS must be >= 0.")
        if self.workers.spawn_multiplier < 1:
            raise ValueError("LEASE_QUEUE_WORKER_SPAWN_MULTIPLIER must be >= 1.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
