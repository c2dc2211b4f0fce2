"""Demo queue application: creates numbered tasks and counts the ones processed."""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from lease_queue.queue.batch import BatchContext, BatchDefaults
from lease_queue.queue.errors import QueueValidationError
from lease_queue.queue.manager import Manager
from lease_queue.queue.task import Task

DEFAULT_TASK_COUNT = 3
HANG_SECONDS = 3_600


class EchoApplication:
    """Demo application.

    Options: `count` (tasks to create), `fail` (comma-separated taskids that
    raise) and `hang` (comma-separated taskids that block until killed).
    """

    queue = "echo_tasks"

    def defaults(self) -> BatchDefaults:
        return BatchDefaults(max_attempts=3, lifetime=3_600)

    def process_options(self, options: Mapping[str, str]) -> dict[str, Any]:
        unknown = set(options) - {"count", "fail", "hang"}
        if unknown:
            raise QueueValidationError(f"Unsupported echo options: {', '.join(sorted(unknown))}")
        processed: dict[str, Any] = {}
        if "count" in options:
            try:
                count = int(options["count"])
            except ValueError as error:
                raise QueueValidationError(f"Invalid count: {options['count']!r}") from error
            if count < 1:
                raise QueueValidationError(f"Invalid count: {count}")
            processed["count"] = count
        for name in ("fail", "hang"):
            if options.get(name):
                processed[name] = tuple(
                    part.strip() for part in options[name].split(",") if part.strip()
                )
        return processed

    def encode_options(self, options: Mapping[str, Any]) -> dict[str, str]:
        encoded: dict[str, str] = {}
        if "count" in options:
            encoded["count"] = str(options["count"])
        for name in ("fail", "hang"):
            if options.get(name):
                encoded[name] = ",".join(options[name])
        return encoded

    def create_tasks(self, context: BatchContext, manager: Manager) -> int:
        count = int(context.app_options.get("count", DEFAULT_TASK_COUNT))
        for index in range(1, count + 1):
            manager.create_task(f"task-{index}", data1=str(index), take_ownership=False)
        return count

    def process_task(self, context: BatchContext, manager: Manager, task: Task) -> int:
        if task.taskid in context.app_options.get("fail", ()):
            raise RuntimeError(f"Echo task {task.taskid} configured to fail")
        if task.taskid in context.app_options.get("hang", ()):
            time.sleep(HANG_SECONDS)
        return 1

    def aggregate(self, context: BatchContext, a: Any, b: Any) -> int:
        return int(a or 0) + int(b or 0)
