"""Controllers for queue CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lease_queue.config import Settings
from lease_queue.queue.batch import BatchOptions, BatchProcessor, load_application
from lease_queue.queue.errors import ErrorStatus, QueueError, QueueValidationError
from lease_queue.queue.pruner import PRUNE_MODES, QueuePruner, parse_queue_specs, parse_statuses
from lease_queue.queue.supervisor import ENVELOPE_VERSION
from lease_queue.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchCommand:
    """CLI inputs for the batch command."""

    app_ref: str
    db_path: Path | None
    options: BatchOptions
    params: tuple[str, ...] = ()
    identity: str | None = None


@dataclass(slots=True)
class PruneCommand:
    """CLI inputs for the prune command."""

    db_path: Path | None
    queues: str
    mode: str = "execute"
    status: str | None = None


@dataclass(slots=True)
class CliResult:
    lines: list[str] = field(default_factory=list)
    exit_code: int = 0


class QueueCliController:
    """Coordinates queue command execution and the stdout envelope."""

    def batch(self, command: BatchCommand) -> CliResult:
        """Execute one batch mode.

        Queue errors become an error envelope; in worker mode the exit code stays
        0 so the parent process reports the structured error.
        """

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        try:
            app_options = parse_params(command.params)
            application = load_application(command.app_ref)
            with _database(settings) as database:
                processor = BatchProcessor(
                    application,
                    database,
                    settings,
                    app_ref=command.app_ref,
                    app_options=app_options,
                    identity=command.identity,
                )
                result = processor.execute(command.options)
        except QueueError as error:
            logger.error("Batch %s failed: %s", command.app_ref, error)
            return CliResult(
                lines=[_dump(error.to_envelope(version=ENVELOPE_VERSION))],
                exit_code=0 if command.options.mode == "worker" else 1,
            )
        return CliResult(lines=[_success(result)])

    def prune(self, command: PruneCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        try:
            if command.mode not in PRUNE_MODES:
                raise QueueValidationError(f"Unsupported mode: {command.mode}")
            specs = parse_queue_specs(command.queues)
            statuses = parse_statuses(command.status)
            with _database(settings) as database:
                pruner = QueuePruner(database)
                if command.mode == "list":
                    result: dict[str, Any] = {"queues": pruner.list_queues(specs)}
                else:
                    result = {"deleted": pruner.prune(specs, statuses)}
        except QueueError as error:
            logger.error("Prune failed: %s", error)
            return CliResult(
                lines=[_dump(error.to_envelope(version=ENVELOPE_VERSION))],
                exit_code=1,
            )
        return CliResult(lines=[_success(result)])


def parse_params(params: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated `name=value` application options."""

    parsed: dict[str, str] = {}
    for raw in params:
        name, separator, value = raw.partition("=")
        name = name.strip()
        if not separator or not name:
            raise QueueValidationError(
                f"Invalid --param {raw!r}: expected 'name=value'",
            )
        if name in parsed:
            raise QueueValidationError(
                f"Duplicate --param {name!r}",
                status=ErrorStatus.INCONSISTENT_PARAMETERS,
            )
        parsed[name] = value
    return parsed


@contextmanager
def _database(settings: Settings) -> Iterator[Database]:
    database = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        database.init_schema()
        yield database
    finally:
        database.close()


def _success(result: Any) -> str:
    return _dump({"version": ENVELOPE_VERSION, "status": "SUCCESS", "result": result})


def _dump(envelope: dict[str, Any]) -> str:
    return json.dumps(envelope, default=str, sort_keys=True)
