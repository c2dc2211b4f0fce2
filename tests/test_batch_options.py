from __future__ import annotations

import allure
import pytest

from lease_queue.queue.batch import (
    DEFAULT_BATCH_SIZE,
    BatchDefaults,
    BatchOptions,
    validate_batch_options,
)
from lease_queue.queue.errors import ErrorStatus, QueueValidationError

pytestmark = [
    allure.epic("Batch Processor"),
    allure.feature("Option Validation"),
]


def test_mode_defaults_to_run_without_workers() -> None:
    validated = validate_batch_options(BatchOptions(max_attempts=2))

    assert validated.mode == "run"
    assert validated.batch_size == DEFAULT_BATCH_SIZE
    assert validated.sleep_ms == 0
    assert validated.shuffle is False
    assert validated.lifetime is None


def test_mode_defaults_to_multi_with_workers() -> None:
    validated = validate_batch_options(BatchOptions(workers=2, lifetime=60, batch_size=5))

    assert validated.mode == "multi"
    assert validated.batch_size == 5


def test_application_defaults_fill_missing_values() -> None:
    defaults = BatchDefaults(max_attempts=4, lifetime=600, batch_size=10)

    validated = validate_batch_options(BatchOptions(mode="run", lifetime=30), defaults)

    assert validated.max_attempts == 4
    assert validated.lifetime == 30
    assert validated.batch_size == 10


@pytest.mark.parametrize(
    ("options", "status"),
    [
        (BatchOptions(mode="status", workers=2), ErrorStatus.INCONSISTENT_PARAMETERS),
        (
            BatchOptions(mode="create", batch_size=2, lifetime=5),
            ErrorStatus.INCONSISTENT_PARAMETERS,
        ),
        (
            BatchOptions(mode="worker", lease_token="t", lifetime=5, batch_size=3),
            ErrorStatus.INCONSISTENT_PARAMETERS,
        ),
        (
            BatchOptions(mode="run", lease_token="t", lifetime=5),
            ErrorStatus.INCONSISTENT_PARAMETERS,
        ),
        (BatchOptions(mode="worker", lifetime=5), ErrorStatus.MISSING_PARAMETER),
        (BatchOptions(mode="multi", lifetime=5), ErrorStatus.MISSING_PARAMETER),
        (BatchOptions(mode="run"), ErrorStatus.MISSING_PARAMETER),
        (BatchOptions(mode="run", max_attempts=0), ErrorStatus.INVALID_PARAMETER),
        (BatchOptions(mode="multi", workers=0, lifetime=5), ErrorStatus.INVALID_PARAMETER),
        (BatchOptions(mode="run", lifetime=5, sleep_ms=-1), ErrorStatus.INVALID_PARAMETER),
        (BatchOptions(mode="run", lifetime=5, data1=()), ErrorStatus.INVALID_PARAMETER),
        (BatchOptions(mode="bogus"), ErrorStatus.INVALID_PARAMETER),
    ],
)
def test_invalid_option_combinations(options: BatchOptions, status: ErrorStatus) -> None:
    with pytest.raises(QueueValidationError) as raised:
        validate_batch_options(options)

    assert raised.value.status is status


def test_non_task_modes_ignore_defaults() -> None:
    defaults = BatchDefaults(max_attempts=4, lifetime=600)

    for mode in ("status", "clear", "terminate"):
        validated = validate_batch_options(BatchOptions(mode=mode), defaults)
        assert validated.mode == mode
        assert validated.max_attempts is None
        assert validated.batch_size is None


def test_worker_mode_has_no_batch_size() -> None:
    validated = validate_batch_options(
        BatchOptions(mode="worker", lease_token="abc", max_attempts=2, shuffle=True),
    )

    assert validated.batch_size is None
    assert validated.shuffle is True
