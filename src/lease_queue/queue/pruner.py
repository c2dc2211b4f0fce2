"""Retention pruning across queue tables."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from lease_queue.queue.errors import QueueError, QueueValidationError
from lease_queue.queue.store import QueueRepository
from lease_queue.queue.task import TaskStatus
from lease_queue.storage.database import Database
from lease_queue.storage.queue_tables import MATCH_QUEUE_NAME, RESERVED_TABLES

logger = logging.getLogger(__name__)

PRUNE_MODES = ("execute", "list")
MATCH_QUEUE_SPECIFIER = re.compile(r"^([A-Za-z0-9_?*]+):(0|[1-9][0-9]*)$")


@dataclass(frozen=True, slots=True)
class QueueSpec:
    """A queue-name wildcard pattern and the maximum task age in days (0 = any age)."""

    pattern: str
    max_age_days: int

    def matches(self, name: str) -> bool:
        regex = "".join(
            "." if char == "?" else ".*" if char == "*" else re.escape(char)
            for char in self.pattern
        )
        return re.fullmatch(regex, name) is not None


def parse_queue_specs(value: str) -> list[QueueSpec]:
    """Parse `pattern:age,pattern:age,...`."""

    if not value.isascii():
        raise QueueValidationError("Queue specifications must be ASCII")
    specs: list[QueueSpec] = []
    for raw in re.split(r"\s*,\s*", value.strip()):
        match = MATCH_QUEUE_SPECIFIER.match(raw)
        if match is None:
            raise QueueValidationError(
                "Invalid maximum age specification: expected value of the form "
                f"'pattern:age'; found {raw!r}",
            )
        pattern = match.group(1)
        if "**" in pattern:
            raise QueueValidationError(
                f"The pattern {pattern!r} contains consecutive wildcard symbols",
            )
        specs.append(QueueSpec(pattern=pattern, max_age_days=int(match.group(2))))
    return specs


def parse_statuses(value: str | None) -> tuple[TaskStatus, ...] | None:
    """Parse a comma-separated status list such as `SUCCESS,FAILURE`; None means all."""

    if value is None:
        return None
    statuses: list[TaskStatus] = []
    for raw in re.split(r"\s*,\s*", value.strip()):
        try:
            status = TaskStatus[raw]
        except KeyError as error:
            raise QueueValidationError(f"Invalid status list: {value}") from error
        if status not in statuses:
            statuses.append(status)
    return tuple(statuses)


class QueuePruner:
    def __init__(self, database: Database) -> None:
        self.database = database

    def list_queues(self, specs: Sequence[QueueSpec]) -> dict[str, int]:
        """Map each matching queue table to the age limit of the first spec matching it."""

        return self._match(specs)[0]

    def prune(
        self,
        specs: Sequence[QueueSpec],
        statuses: Sequence[TaskStatus] | None = None,
    ) -> dict[str, int]:
        """Delete old tasks from every matching queue; returns deleted counts per queue.

        Failures on one queue are logged and do not stop the others.
        """

        tables, by_pattern = self._match(specs)
        if not tables:
            logger.warning("No matching queues")
        else:
            for pattern, matched in by_pattern.items():
                if not matched:
                    logger.warning("No queues match pattern '%s'", pattern)

        selected = tuple(statuses) if statuses else tuple(TaskStatus)
        status_desc = ",".join(status.name for status in selected)
        now = self.database.now()
        deleted: dict[str, int] = {}
        for queue, age in tables.items():
            logger.info(
                "Deleting tasks from %s older than %d days with status in %s",
                queue,
                age,
                status_desc,
            )
            try:
                deleted[queue] = QueueRepository(self.database, queue).delete_matching(
                    statuses=selected,
                    created_before=now - timedelta(days=age) if age else None,
                )
            except QueueError as error:
                logger.error("Failed deleting tasks from %s: %s", queue, error)
        return deleted

    def _match(self, specs: Sequence[QueueSpec]) -> tuple[dict[str, int], dict[str, list[str]]]:
        tables: dict[str, int] = {}
        by_pattern: dict[str, list[str]] = {spec.pattern: [] for spec in specs}
        candidates = [
            name
            for name in sorted(self.database.table_names())
            if name not in RESERVED_TABLES and MATCH_QUEUE_NAME.match(name)
        ]
        for name in candidates:
            for spec in specs:
                if spec.matches(name) and name not in tables:
                    tables[name] = spec.max_age_days
                    by_pattern[spec.pattern].append(name)
        return tables, by_pattern
