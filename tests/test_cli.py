from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import allure
import pytest
from click.testing import CliRunner, Result

from lease_queue import __version__
from lease_queue.main import lease_queue

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Batch and Prune Commands"),
]

ECHO_REF = "lease_queue.apps.echo:EchoApplication"


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    yield
    package_logger = logging.getLogger("lease_queue")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


def _envelope(result: Result) -> dict[str, Any]:
    lines = [line for line in result.stdout.splitlines() if line.startswith("{")]
    assert lines, result.output
    return json.loads(lines[-1])


def _batch(db_path: Path, *args: str) -> Result:
    return CliRunner().invoke(lease_queue, ["batch", ECHO_REF, "--db-path", str(db_path), *args])


def test_version_option() -> None:
    result = CliRunner().invoke(lease_queue, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_run_then_status(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    run = _batch(db_path, "--param", "count=4", "--batch-size", "2")

    assert run.exit_code == 0, run.output
    assert _envelope(run) == {"result": 4, "status": "SUCCESS", "version": 1}

    status = _batch(db_path, "--param", "count=4", "--mode", "status")
    assert status.exit_code == 0
    assert _envelope(status)["result"] == {"success": 4, "pending": 0, "failure": 0}


def test_worker_mode_reports_errors_in_envelope(tmp_path: Path) -> None:
    result = _batch(tmp_path / "cli.db", "--mode", "worker", "--lease-token", "f" * 64)

    assert result.exit_code == 0
    envelope = _envelope(result)
    assert envelope["version"] == 1
    assert envelope["status"] == "OBJECT_DOES_NOT_EXIST"
    assert "result" not in envelope


@pytest.mark.parametrize(
    ("args", "status"),
    [
        (("--mode", "status", "--workers", "2"), "INCONSISTENT_PARAMETERS"),
        (("--mode", "multi", "--lifetime", "60"), "MISSING_PARAMETER"),
        (("--param", "count"), "INVALID_PARAMETER"),
        (("--param", "count=1", "--param", "count=2"), "INCONSISTENT_PARAMETERS"),
        (("--param", "count=0"), "INVALID_PARAMETER"),
    ],
)
def test_invalid_batch_options_exit_non_zero(
    tmp_path: Path,
    args: tuple[str, ...],
    status: str,
) -> None:
    result = _batch(tmp_path / "cli.db", *args)

    assert result.exit_code == 1
    assert _envelope(result)["status"] == status


def test_unknown_application_reference(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        lease_queue,
        ["batch", "lease_queue.apps.echo:Nope", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code == 1
    assert "no attribute" in _envelope(result)["message"]


def test_prune_list_and_execute(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    assert _batch(db_path, "--mode", "create").exit_code == 0
    runner = CliRunner()

    listed = runner.invoke(
        lease_queue,
        ["prune", "--db-path", str(db_path), "--queues", "echo_*:0", "--mode", "list"],
    )
    assert listed.exit_code == 0
    assert _envelope(listed)["result"] == {"queues": {"echo_tasks": 0}}

    pruned = runner.invoke(
        lease_queue,
        ["prune", "--db-path", str(db_path), "--queues", "echo_*:0", "--status", "PENDING"],
    )
    assert pruned.exit_code == 0
    assert _envelope(pruned)["result"] == {"deleted": {"echo_tasks": 3}}


def test_prune_rejects_bad_specification(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        lease_queue,
        ["prune", "--db-path", str(tmp_path / "cli.db"), "--queues", "echo"],
    )

    assert result.exit_code == 1
    assert _envelope(result)["status"] == "INVALID_PARAMETER"
