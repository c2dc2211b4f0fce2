"""Mode dispatcher turning one queue application into batch executions."""

from __future__ import annotations

import importlib
import json
import logging
import random
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, fields, replace
from typing import Any, Protocol

from lease_queue.config import Settings
from lease_queue.queue.errors import (
    ErrorStatus,
    QueueError,
    QueueValidationError,
    WorkerFailedError,
)
from lease_queue.queue.manager import Manager
from lease_queue.queue.store import QueueRepository
from lease_queue.queue.supervisor import SpawnPolicy, WorkerCommand, WorkerSupervisor
from lease_queue.queue.task import Task, TaskFailure, TaskStatus, TaskSuccess
from lease_queue.storage.database import Database

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1

MODES = ("create", "run", "multi", "worker", "status", "clear", "terminate")
TASK_MODES = frozenset({"create", "run", "multi", "worker"})

MODE_OPTIONS: dict[str, frozenset[str]] = {
    "create": frozenset({"max_attempts", "lifetime", "shuffle"}),
    "run": frozenset(
        {
            "max_attempts",
            "lifetime",
            "shuffle",
            "batch_size",
            "sleep_ms",
            "data1",
            "data2",
            "data3",
            "debug",
        },
    ),
    "multi": frozenset(
        {
            "workers",
            "max_attempts",
            "lifetime",
            "shuffle",
            "batch_size",
            "sleep_ms",
            "data1",
            "data2",
            "data3",
            "debug",
        },
    ),
    "worker": frozenset(
        {"max_attempts", "lifetime", "lease_token", "sleep_ms", "shuffle", "debug"},
    ),
    "status": frozenset(),
    "clear": frozenset(),
    "terminate": frozenset(),
}


@dataclass(frozen=True, slots=True)
class BatchOptions:
    """Tuning options shared by every queue application."""

    mode: str | None = None
    max_attempts: int | None = None
    lifetime: int | None = None
    workers: int | None = None
    batch_size: int | None = None
    sleep_ms: int | None = None
    shuffle: bool | None = None
    lease_token: str | None = None
    data1: tuple[str, ...] | None = None
    data2: tuple[str, ...] | None = None
    data3: tuple[str, ...] | None = None
    debug: str | None = None

    def supplied(self) -> list[str]:
        return [
            item.name
            for item in fields(self)
            if item.name != "mode" and getattr(self, item.name) is not None
        ]


@dataclass(frozen=True, slots=True)
class BatchDefaults:
    max_attempts: int | None = None
    lifetime: int | None = None
    batch_size: int | None = None


def validate_batch_options(
    options: BatchOptions,
    defaults: BatchDefaults | None = None,
) -> BatchOptions:
    """Check option legality for the selected mode and fill in defaults.

    Raises QueueValidationError before anything touches the store.
    """

    defaults = defaults or BatchDefaults()
    mode = options.mode
    if mode is not None and mode not in MODES:
        raise QueueValidationError(f"Invalid mode: {mode}")
    if mode is None:
        mode = "multi" if options.workers is not None else "run"

    legal = MODE_OPTIONS[mode]
    for name in options.supplied():
        if name not in legal:
            raise QueueValidationError(
                f"The option '{name}' is incompatible with mode '{mode}'",
                status=ErrorStatus.INCONSISTENT_PARAMETERS,
            )
    for name in ("max_attempts", "lifetime", "workers", "batch_size"):
        value = getattr(options, name)
        if value is not None and value < 1:
            raise QueueValidationError(f"Invalid {name}: expected positive integer; found {value}")
    if options.sleep_ms is not None and options.sleep_ms < 0:
        raise QueueValidationError(
            f"Invalid sleep_ms: expected non-negative integer; found {options.sleep_ms}",
        )
    for name in ("data1", "data2", "data3"):
        value = getattr(options, name)
        if value is not None and not value:
            raise QueueValidationError(f"{name} must be non-empty")
    if mode == "worker" and options.lease_token is None:
        raise QueueValidationError(
            "Missing lease token for mode 'worker'",
            status=ErrorStatus.MISSING_PARAMETER,
        )
    if mode == "multi" and options.workers is None:
        raise QueueValidationError(
            "Missing worker count for mode 'multi'",
            status=ErrorStatus.MISSING_PARAMETER,
        )

    if mode not in TASK_MODES:
        return replace(options, mode=mode)

    max_attempts = options.max_attempts if options.max_attempts is not None else defaults.max_attempts
    lifetime = options.lifetime if options.lifetime is not None else defaults.lifetime
    if max_attempts is None and lifetime is None:
        raise QueueValidationError(
            "Missing 'max_attempts' or 'lifetime'",
            status=ErrorStatus.MISSING_PARAMETER,
        )
    batch_size = options.batch_size
    if batch_size is None and mode in {"run", "multi"}:
        batch_size = defaults.batch_size or DEFAULT_BATCH_SIZE
    return replace(
        options,
        mode=mode,
        max_attempts=max_attempts,
        lifetime=lifetime,
        batch_size=batch_size,
        sleep_ms=options.sleep_ms or 0,
        shuffle=bool(options.shuffle),
    )


@dataclass(frozen=True, slots=True)
class BatchContext:
    """Everything a queue application hook sees about the current execution."""

    options: BatchOptions
    queue: str
    parameters: str
    app_options: Mapping[str, Any] = field(default_factory=dict)
    identity: str | None = None


class QueueApplication(Protocol):
    """Strategy implemented once per queue application.

    Optional hooks, looked up by name: `process_batch(context, manager, batch)`,
    `aggregate(context, a, b)`, `summarize_status(context, totals)`,
    `process_options(options)`, `encode_options(options)` and `defaults()`.
    """

    queue: str

    def create_tasks(self, context: BatchContext, manager: Manager) -> int: ...

    def process_task(self, context: BatchContext, manager: Manager, task: Task) -> Any: ...


def load_application(app_ref: str) -> QueueApplication:
    """Resolve a `package.module:attribute` reference to an application instance."""

    module_name, _, attribute = app_ref.partition(":")
    if not module_name or not attribute:
        raise QueueValidationError(
            f"Invalid application reference {app_ref!r}: expected 'package.module:attribute'",
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise QueueValidationError(f"Cannot import {module_name!r}", inner=error) from error
    factory = getattr(module, attribute, None)
    if factory is None:
        raise QueueValidationError(f"Module {module_name!r} has no attribute {attribute!r}")
    return factory() if callable(factory) else factory


class BatchProcessor:
    """Dispatches a queue application to one of the batch modes."""

    def __init__(  # noqa: PLR0913
        self,
        application: QueueApplication,
        database: Database,
        settings: Settings,
        *,
        app_ref: str | None = None,
        app_options: Mapping[str, str] | None = None,
        identity: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.application = application
        self.database = database
        self.settings = settings
        self.app_ref = app_ref
        self.identity = identity
        self._sleep = sleep
        raw_options = dict(app_options or {})
        process_options = getattr(application, "process_options", None)
        self.app_options: dict[str, Any] = (
            dict(process_options(raw_options)) if process_options is not None else raw_options
        )

    @property
    def queue(self) -> str:
        return self.application.queue

    @property
    def parameters(self) -> str:
        """Scope key: empty without application options, else their sorted JSON."""

        if not self.app_options:
            return ""
        return json.dumps(self.encoded_app_options(), sort_keys=True)

    @property
    def defaults(self) -> BatchDefaults:
        hook = getattr(self.application, "defaults", None)
        return hook() if hook is not None else BatchDefaults()

    def encoded_app_options(self) -> dict[str, str]:
        hook = getattr(self.application, "encode_options", None)
        if hook is not None:
            return dict(hook(self.app_options))
        return {name: str(value) for name, value in self.app_options.items()}

    def context(self, options: BatchOptions) -> BatchContext:
        return BatchContext(
            options=options,
            queue=self.queue,
            parameters=self.parameters,
            app_options=self.app_options,
            identity=self.identity,
        )

    def execute(self, options: BatchOptions) -> Any:
        validated = validate_batch_options(options, self.defaults)
        context = self.context(validated)
        logger.debug("Queue '%s': executing mode %s", self.queue, validated.mode)
        handlers: dict[str, Callable[[BatchContext], Any]] = {
            "create": self.create,
            "run": self.run,
            "multi": self.multi,
            "worker": self.worker,
            "status": self.status,
            "clear": self.clear,
            "terminate": self.terminate,
        }
        return handlers[str(validated.mode)](context)

    def create(self, context: BatchContext) -> int:
        manager = self._manager(context)
        return int(self.application.create_tasks(context, manager))

    def run(self, context: BatchContext) -> Any:
        manager = self._manager(context)
        if manager.count_tasks() == 0:
            self.application.create_tasks(context, manager)
        result = None
        while True:
            assigned = self.assign_tasks(context)
            if assigned is None:
                break
            batch = assigned.load_tasks(owned=True)
            result = self.aggregate(context, result, self.process_batch(context, assigned, batch))
        return result

    def multi(self, context: BatchContext) -> Any:
        """Fan claimed batches out to worker subprocesses and aggregate their results."""

        manager = self._manager(context)
        if manager.count_tasks() == 0:
            self.application.create_tasks(context, manager)

        command = self.worker_command(context)
        worker_limit = int(context.options.workers or 1)
        supervisors: list[WorkerSupervisor] = []
        has_result = has_error = False
        result = None
        while True:
            for supervisor in list(supervisors):
                try:
                    if supervisor.terminated():
                        supervisors.remove(supervisor)
                        value = supervisor.result()
                        result = self.aggregate(context, result, value)
                        has_result = True
                        logger.info("Worker %s completed", supervisor.name)
                        logger.debug("Worker %s output: %s", supervisor.name, json.dumps(value))
                    elif supervisor.timed_out():
                        supervisors.remove(supervisor)
                        supervisor.abandon()
                        logger.warning("Worker %s timed out", supervisor.name)
                except QueueError as error:
                    if supervisor in supervisors:
                        supervisors.remove(supervisor)
                    supervisor.abandon()
                    logger.error("Failed processing worker %s: %s", supervisor.name, error)
                    has_error = True

            manager.clear_sessions()
            while len(supervisors) < worker_limit:
                assigned = self.assign_tasks(context)
                if assigned is None:
                    break
                supervisor = WorkerSupervisor(
                    assigned,
                    command,
                    self._spawn_policy(),
                    sleep=self._sleep,
                )
                try:
                    supervisor.start()
                except QueueError as error:
                    logger.error("Failed starting worker %s: %s", supervisor.name, error)
                    released = assigned.end_session()
                    logger.info("Released %d tasks of worker %s", released, supervisor.name)
                    has_error = True
                    break
                supervisors.append(supervisor)
                if len(supervisors) < worker_limit:
                    self._sleep(self.settings.workers.create_sleep_seconds)

            if not supervisors:
                break
            self._sleep(self.settings.workers.check_sleep_seconds)

        if has_error and not has_result:
            raise WorkerFailedError("All workers failed")
        return result

    def worker(self, context: BatchContext) -> Any:
        manager = self._manager(context, lease_token=context.options.lease_token)
        batch = manager.load_tasks(owned=True)
        return self.process_batch(context, manager, batch)

    def status(self, context: BatchContext) -> dict[str, Any]:
        counts = self._repository(context).count_by_status(context.parameters)
        totals: dict[str, Any] = {
            "success": counts[TaskStatus.SUCCESS],
            "pending": counts[TaskStatus.PENDING],
            "failure": counts[TaskStatus.FAILURE],
        }
        hook = getattr(self.application, "summarize_status", None)
        return hook(context, totals) if hook is not None else totals

    def clear(self, context: BatchContext) -> int:
        return self._repository(context).release_scope(context.parameters)

    def terminate(self, context: BatchContext) -> int:
        return self._repository(context).delete_scope(context.parameters)

    def assign_tasks(self, context: BatchContext) -> Manager | None:
        """Claim the next batch under a fresh lease; None when nothing is claimable."""

        options = context.options
        manager = self._manager(context)
        claimed = manager.claim_tasks(
            options.batch_size,
            data1=options.data1,
            data2=options.data2,
            data3=options.data3,
        )
        return manager if claimed > 0 else None

    def process_task(self, context: BatchContext, manager: Manager, task: Task) -> Any:
        """Run the application on one task and record its status."""

        try:
            value = self.application.process_task(context, manager, task)
            if context.options.sleep_ms:
                self._sleep(context.options.sleep_ms / 1000.0)
        except Exception as error:  # noqa: BLE001
            wrapped = QueueError.wrap(error)
            logger.error("Queue '%s': task %s failed: %s", self.queue, task.taskid, wrapped)
            task.update(TaskStatus.PENDING, error=wrapped)
            return None
        if isinstance(value, TaskFailure):
            task.update(
                TaskStatus.PENDING,
                error=value.error,
                error_status=value.error_status,
                error_message=value.error_message,
            )
            return None
        task.update(TaskStatus.SUCCESS)
        return value.value if isinstance(value, TaskSuccess) else value

    def process_batch(self, context: BatchContext, manager: Manager, batch: Sequence[Task]) -> Any:
        hook = getattr(self.application, "process_batch", None)
        if hook is not None:
            return hook(context, manager, batch)

        tasks = list(batch)
        if context.options.shuffle:
            random.shuffle(tasks)
        touch_period = self.settings.queue.touch_period
        result = None
        for index, task in enumerate(tasks, start=1):
            result = self.aggregate(context, result, self.process_task(context, manager, task))
            if index % touch_period == 0:
                manager.touch_session()
        return result

    def aggregate(self, context: BatchContext, a: Any, b: Any) -> Any:
        hook = getattr(self.application, "aggregate", None)
        return hook(context, a, b) if hook is not None else None

    def worker_command(self, context: BatchContext) -> WorkerCommand:
        if self.app_ref is None:
            raise QueueValidationError(
                "An application reference is required to start workers",
                status=ErrorStatus.MISSING_PARAMETER,
            )
        options = context.options
        worker_options: dict[str, str | None] = {}
        if options.max_attempts is not None:
            worker_options["max-attempts"] = str(options.max_attempts)
        if options.lifetime is not None:
            worker_options["lifetime"] = str(options.lifetime)
        if options.sleep_ms:
            worker_options["sleep"] = str(options.sleep_ms)
        if options.shuffle:
            worker_options["shuffle"] = None
        return WorkerCommand(
            app_ref=self.app_ref,
            db_path=self.database.db_path,
            options=worker_options,
            app_options=self.encoded_app_options(),
            identity=context.identity,
            debug=options.debug,
            python_executable=self.settings.workers.python_executable,
        )

    def _manager(self, context: BatchContext, *, lease_token: str | None = None) -> Manager:
        queue_settings = self.settings.queue
        fresh_lease = lease_token is None
        return Manager(
            self.database,
            queue=context.queue,
            parameters=context.parameters,
            max_attempts=context.options.max_attempts,
            lifetime=context.options.lifetime,
            lease_token=lease_token,
            lease_lifetime=queue_settings.lease_lifetime_seconds if fresh_lease else None,
            owner_id=(context.identity or queue_settings.lease_owner_id) if fresh_lease else None,
            log_operations=queue_settings.log_operations,
        )

    def _repository(self, context: BatchContext) -> QueueRepository:
        return QueueRepository(self.database, context.queue)

    def _spawn_policy(self) -> SpawnPolicy:
        workers = self.settings.workers
        return SpawnPolicy(
            attempts=workers.spawn_attempts,
            base_delay_seconds=workers.spawn_base_delay_seconds,
            multiplier=workers.spawn_multiplier,
        )
