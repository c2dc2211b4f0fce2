from __future__ import annotations

import json
import random
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path

import allure
import pytest

from lease_queue.apps.echo import EchoApplication
from lease_queue.config import QueueSettings, WorkerSettings
from lease_queue.leases import LeaseAuthority
from lease_queue.queue.batch import BatchOptions, BatchProcessor, load_application
from lease_queue.queue.errors import (
    ErrorStatus,
    LeaseNotFoundError,
    QueueValidationError,
    WorkerFailedError,
)
from lease_queue.queue.manager import Manager
from lease_queue.queue.task import TaskFailure, TaskStatus, TaskSuccess

pytestmark = [
    allure.epic("Batch Processor"),
    allure.feature("Modes"),
]

ECHO_REF = "lease_queue.apps.echo:EchoApplication"


class PartialApplication:
    """Succeeds for taskid 'good', asks for a retry otherwise."""

    queue = "partial"

    def create_tasks(self, context, manager) -> int:
        manager.create_task("good", take_ownership=False)
        manager.create_task("later", take_ownership=False)
        return 2

    def process_task(self, context, manager, task):
        if task.taskid == "good":
            return TaskSuccess("done")
        return TaskFailure(error_status="STATE_ERROR", error_message="not yet")

    def summarize_status(self, context, totals):
        return {**totals, "total": sum(totals.values())}


class RecordingApplication:
    """Records the processing order and the lease expiry seen by each task."""

    queue = "recorded"

    def __init__(self, database, clock=None) -> None:
        self.database = database
        self.clock = clock
        self.order: list[str] = []
        self.tokens: list[str] = []
        self.expiries: list[datetime | None] = []

    def create_tasks(self, context, manager) -> int:
        for taskid in ("a", "b", "c", "d"):
            manager.create_task(taskid, take_ownership=False)
        return 4

    def process_task(self, context, manager, task):
        self.order.append(task.taskid)
        self.tokens.append(manager.lease_token)
        self.expiries.append(LeaseAuthority(self.database).expires_at(manager.lease_token))
        if self.clock is not None:
            self.clock.advance(seconds=10)
        return 1


def _processor(database, settings, app_options=None, sleeps=None, application=None):
    return BatchProcessor(
        application or EchoApplication(),
        database,
        settings,
        app_ref=ECHO_REF,
        app_options=app_options,
        sleep=(sleeps.append if sleeps is not None else lambda seconds: None),
    )


def _record_batches(processor: BatchProcessor) -> list[int]:
    sizes: list[int] = []
    original = processor.process_batch

    def recording(context, manager, batch):
        sizes.append(len(batch))
        return original(context, manager, batch)

    processor.process_batch = recording
    return sizes


def test_parameters_are_sorted_json_of_encoded_options(database, settings) -> None:
    processor = _processor(database, settings, {"fail": "b, a", "count": "2"})

    assert processor.app_options == {"count": 2, "fail": ("b", "a")}
    assert processor.parameters == '{"count": "2", "fail": "b,a"}'
    assert _processor(database, settings).parameters == ""


def test_application_option_errors_surface_before_execution(database, settings) -> None:
    with pytest.raises(QueueValidationError, match="Unsupported echo options"):
        _processor(database, settings, {"colour": "red"})
    with pytest.raises(QueueValidationError, match="Invalid count"):
        _processor(database, settings, {"count": "zero"})


def test_run_creates_and_processes_in_batches(database, settings) -> None:
    processor = _processor(database, settings, {"count": "5"})
    sizes = _record_batches(processor)

    result = processor.execute(BatchOptions(batch_size=3))

    assert result == 5
    assert sizes == [3, 2]
    status = processor.execute(BatchOptions(mode="status"))
    assert status == {"success": 5, "pending": 0, "failure": 0}


def test_run_touches_lease_every_touch_period(database, clock, settings) -> None:
    start = clock()
    application = RecordingApplication(database, clock)
    processor = _processor(database, settings, application=application)

    assert processor.execute(BatchOptions(lifetime=600, batch_size=4)) == 4

    lease_lifetime = timedelta(seconds=settings.queue.lease_lifetime_seconds)
    assert application.order == ["a", "b", "c", "d"]
    assert len(set(application.tokens)) == 1
    assert application.expiries == [
        start + lease_lifetime,
        start + lease_lifetime,
        start + timedelta(seconds=20) + lease_lifetime,
        start + timedelta(seconds=20) + lease_lifetime,
    ]
    assert LeaseAuthority(database).expires_at(application.tokens[0]) == (
        start + timedelta(seconds=40) + lease_lifetime
    )


def test_run_shuffles_each_batch_on_request(database, settings, monkeypatch) -> None:
    monkeypatch.setattr(random, "shuffle", lambda items: items.reverse())
    application = RecordingApplication(database)
    processor = _processor(database, settings, application=application)

    assert processor.execute(BatchOptions(lifetime=600, batch_size=4, shuffle=True)) == 4
    assert application.order == ["d", "c", "b", "a"]


def test_run_filters_claims_by_data(database, settings) -> None:
    processor = _processor(database, settings, {"count": "3"})

    result = processor.execute(BatchOptions(batch_size=5, data1=("1", "3")))

    assert result == 2
    assert processor.execute(BatchOptions(mode="status")) == {
        "success": 2,
        "pending": 1,
        "failure": 0,
    }


def test_failed_task_exhausts_attempts_across_runs(database, clock, settings) -> None:
    settings = replace(settings, queue=QueueSettings(touch_period=2, lease_lifetime_seconds=60))
    processor = _processor(database, settings, {"count": "3", "fail": "task-2"})

    assert processor.execute(BatchOptions(max_attempts=2)) == 2
    (pending,) = Manager(
        database,
        queue="echo_tasks",
        parameters=processor.parameters,
    ).load_tasks(status=TaskStatus.PENDING)
    assert pending.taskid == "task-2"
    assert pending.attempts == 1
    assert pending.session_id is not None
    assert pending.error_status == ErrorStatus.UNEXPECTED_BEHAVIOR.value

    clock.advance(seconds=61)
    assert processor.execute(BatchOptions(max_attempts=2)) is None

    assert processor.execute(BatchOptions(mode="status")) == {
        "success": 2,
        "pending": 0,
        "failure": 1,
    }


def test_retry_outcomes_and_sleep_between_tasks(database, settings) -> None:
    sleeps: list[float] = []
    processor = _processor(database, settings, sleeps=sleeps, application=PartialApplication())

    result = processor.execute(BatchOptions(lifetime=600, batch_size=5, sleep_ms=250))

    assert result is None
    assert sleeps == [0.25, 0.25]
    tasks = {
        task.taskid: task
        for task in Manager(database, queue="partial").load_tasks()
    }
    assert tasks["good"].status is TaskStatus.SUCCESS
    assert tasks["later"].status is TaskStatus.PENDING
    assert tasks["later"].error_message == "not yet"
    assert processor.execute(BatchOptions(mode="status")) == {
        "success": 1,
        "pending": 1,
        "failure": 0,
        "total": 2,
    }


def test_create_status_clear_and_terminate(database, settings) -> None:
    processor = _processor(database, settings)

    assert processor.execute(BatchOptions(mode="create")) == 3
    assert processor.execute(BatchOptions(mode="status")) == {
        "success": 0,
        "pending": 3,
        "failure": 0,
    }

    claimer = Manager(database, queue="echo_tasks", parameters=processor.parameters)
    assert claimer.claim_tasks(2) == 2
    assert processor.execute(BatchOptions(mode="clear")) == 2
    released = claimer.load_tasks()
    assert all(task.session_id is None for task in released)
    assert sorted(task.attempts for task in released) == [0, 1, 1]

    assert processor.execute(BatchOptions(mode="terminate")) == 3
    assert processor.execute(BatchOptions(mode="status")) == {
        "success": 0,
        "pending": 0,
        "failure": 0,
    }


def test_status_is_scoped_to_parameters(database, settings) -> None:
    _processor(database, settings, {"count": "2"}).execute(BatchOptions(mode="create"))
    other = _processor(database, settings, {"count": "4"})

    assert other.execute(BatchOptions(mode="status")) == {
        "success": 0,
        "pending": 0,
        "failure": 0,
    }


def test_worker_mode_processes_pre_claimed_batch(database, settings) -> None:
    processor = _processor(database, settings, {"count": "3"})
    processor.execute(BatchOptions(mode="create"))
    claimer = Manager(database, queue="echo_tasks", parameters=processor.parameters)
    claimer.claim_tasks(2)

    result = processor.execute(BatchOptions(mode="worker", lease_token=claimer.lease_token))

    assert result == 2
    assert processor.execute(BatchOptions(mode="status")) == {
        "success": 2,
        "pending": 1,
        "failure": 0,
    }


def test_worker_mode_with_unknown_lease_fails(database, settings) -> None:
    processor = _processor(database, settings)

    with pytest.raises(LeaseNotFoundError):
        processor.execute(BatchOptions(mode="worker", lease_token="f" * 64))


def test_multi_releases_tasks_when_worker_cannot_start(database, settings, tmp_path: Path) -> None:
    settings = replace(
        settings,
        workers=replace(settings.workers, python_executable=str(tmp_path / "missing-python")),
    )
    sleeps: list[float] = []
    processor = _processor(database, settings, sleeps=sleeps)

    with pytest.raises(WorkerFailedError, match="All workers failed"):
        processor.execute(BatchOptions(workers=2, batch_size=2))

    assert sleeps == [0.0, 0.0]
    tasks = Manager(database, queue="echo_tasks", parameters=processor.parameters).load_tasks()
    assert all(task.session_id is None for task in tasks)
    assert sorted(task.attempts for task in tasks) == [0, 1, 1]
    assert processor.execute(BatchOptions(batch_size=3)) == 3


def test_multi_requires_application_reference(database, settings) -> None:
    processor = BatchProcessor(EchoApplication(), database, settings)

    with pytest.raises(QueueValidationError) as raised:
        processor.execute(BatchOptions(workers=1))
    assert raised.value.status is ErrorStatus.MISSING_PARAMETER


def test_worker_command_forwards_options(database, settings) -> None:
    settings = replace(settings, workers=WorkerSettings(python_executable="/usr/bin/python3"))
    processor = BatchProcessor(
        EchoApplication(),
        database,
        settings,
        app_ref=ECHO_REF,
        app_options={"count": "4"},
        identity="nightly",
    )
    context = processor.context(
        BatchOptions(
            mode="multi",
            workers=2,
            max_attempts=3,
            lifetime=60,
            sleep_ms=5,
            shuffle=True,
        ),
    )

    argv = processor.worker_command(context).build_argv("token")

    assert argv[:3] == ["/usr/bin/python3", "-m", "lease_queue.main"]
    assert argv[argv.index("--identity") + 1] == "nightly"
    assert argv[argv.index("--max-attempts") + 1] == "3"
    assert argv[argv.index("--lifetime") + 1] == "60"
    assert argv[argv.index("--sleep") + 1] == "5"
    assert "--shuffle" in argv
    assert argv[argv.index("--param") + 1] == "count=4"
    assert "--workers" not in argv
    assert json.loads(processor.parameters) == {"count": "4"}


def test_load_application_resolves_references() -> None:
    assert isinstance(load_application(ECHO_REF), EchoApplication)

    with pytest.raises(QueueValidationError, match="package.module:attribute"):
        load_application("lease_queue.apps.echo")
    with pytest.raises(QueueValidationError, match="Cannot import"):
        load_application("lease_queue.apps.missing:App")
    with pytest.raises(QueueValidationError, match="no attribute"):
        load_application("lease_queue.apps.echo:Missing")


def test_run_with_default_count_in_one_batch(database, settings) -> None:
    processor = _processor(database, settings)

    assert processor.execute(BatchOptions(max_attempts=3, batch_size=3)) == 3
    assert processor.execute(BatchOptions(mode="status")) == {
        "success": 3,
        "pending": 0,
        "failure": 0,
    }
