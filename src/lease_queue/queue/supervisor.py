"""Supervisor for one worker subprocess processing a pre-claimed batch."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import sys
import tempfile
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from lease_queue.leases import is_expired
from lease_queue.queue.errors import ErrorStatus, QueueError, WorkerFailedError
from lease_queue.queue.manager import Manager

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
WORKER_MODULE = "lease_queue.main"


@dataclass(frozen=True, slots=True)
class WorkerCommand:
    """Command line for a `batch --mode worker` subprocess.

    `options` maps long option names to string values; a None value emits a bare
    flag. `app_options` become repeated `--param name=value` arguments.
    """

    app_ref: str
    db_path: Path
    options: Mapping[str, str | None] = field(default_factory=dict)
    app_options: Mapping[str, str] = field(default_factory=dict)
    identity: str | None = None
    debug: str | None = None
    python_executable: str = field(default_factory=lambda: sys.executable)

    def build_argv(self, lease_token: str) -> list[str]:
        argv = [
            self.python_executable,
            "-m",
            WORKER_MODULE,
            "batch",
            self.app_ref,
            "--mode",
            "worker",
            "--lease-token",
            lease_token,
            "--db-path",
            str(self.db_path),
        ]
        if self.identity is not None:
            argv.extend(["--identity", self.identity])
        if self.debug is not None:
            argv.extend(["--debug", self.debug])
        for name, value in self.options.items():
            argv.append(f"--{name}")
            if value is not None:
                argv.append(value)
        for name, value in self.app_options.items():
            argv.extend(["--param", f"{name}={value}"])
        return argv


@dataclass(frozen=True, slots=True)
class SpawnPolicy:
    """Exponential backoff for transient process-spawn failures."""

    attempts: int = 5
    base_delay_seconds: float = 0.5
    multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        delay = self.base_delay_seconds
        for _ in range(self.attempts - 1):
            yield delay
            delay *= self.multiplier


class WorkerSupervisor:
    """Parent-side handle for one worker subprocess bound to a manager's lease."""

    def __init__(
        self,
        manager: Manager,
        command: WorkerCommand,
        spawn_policy: SpawnPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.manager = manager
        self.command = command
        self.spawn_policy = spawn_policy or SpawnPolicy()
        self._sleep = sleep
        self._process: subprocess.Popen[bytes] | None = None
        self._stdout: IO[bytes] | None = None
        self._stderr: IO[bytes] | None = None
        self._returncode: int | None = None

    @property
    def lease_token(self) -> str:
        return self.manager.lease_token

    @property
    def name(self) -> str:
        return self.lease_token[:12]

    def start(self) -> None:
        if self._process is not None:
            raise QueueError(f"Worker {self.name} already started", status=ErrorStatus.STATE_ERROR)

        argv = self.command.build_argv(self.lease_token)
        self._stdout = tempfile.NamedTemporaryFile(  # noqa: SIM115
            prefix="lease-queue-worker-",
            suffix=".out",
            delete=False,
        )
        self._stderr = tempfile.NamedTemporaryFile(  # noqa: SIM115
            prefix="lease-queue-worker-",
            suffix=".err",
            delete=False,
        )
        delays = self.spawn_policy.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                self._process = subprocess.Popen(  # noqa: S603
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=self._stdout,
                    stderr=self._stderr,
                )
            except OSError as error:
                delay = next(delays, None)
                if delay is None:
                    self._cleanup()
                    raise WorkerFailedError(
                        f"Failed starting worker {self.name} (command {shlex.join(argv)!r})",
                        inner=error,
                    ) from error
                logger.warning(
                    "Failed starting worker %s (attempt %d/%d): %s",
                    self.name,
                    attempt,
                    self.spawn_policy.attempts,
                    error,
                )
                self._sleep(delay)
            else:
                break
        logger.debug("Started worker %s (pid %s)", self.name, self._process.pid)

    def terminated(self) -> bool:
        """Non-blocking liveness poll."""

        if self._process is None:
            raise QueueError(f"Worker {self.name} is not running", status=ErrorStatus.STATE_ERROR)
        self._returncode = self._process.poll()
        return self._returncode is not None

    def timed_out(self) -> bool:
        """True once the worker's lease has expired or disappeared."""

        expires_at = self.manager.leases.expires_at(self.lease_token)
        return expires_at is None or is_expired(expires_at, self.manager.database.now())

    def result(self) -> Any:
        """Return the worker's result; call only after `terminated()` returned True.

        Raises WorkerFailedError on a non-zero exit or malformed output, and the
        reported error when the worker printed an error envelope.
        """

        if self._returncode is None or self._stdout is None or self._stderr is None:
            raise QueueError(
                f"Worker {self.name} has not terminated",
                status=ErrorStatus.STATE_ERROR,
            )
        try:
            if self._returncode != 0:
                error_text = _read_text(Path(self._stderr.name))
                raise WorkerFailedError(
                    f"Worker {self.name} failed with exit status {self._returncode} "
                    f"({error_text.strip()})",
                )
            return _parse_envelope(_read_text(Path(self._stdout.name)))
        finally:
            self._cleanup()

    def abandon(self) -> None:
        """Stop the subprocess if it is still running and release its files."""

        if self._process is not None and self._process.poll() is None:
            _terminate_process(self._process)
        self._cleanup()

    def _cleanup(self) -> None:
        if self._process is not None:
            if self._process.poll() is None:
                _terminate_process(self._process)
            self._process = None
        for handle in (self._stdout, self._stderr):
            if handle is None:
                continue
            handle.close()
            Path(handle.name).unlink(missing_ok=True)
        self._stdout = self._stderr = None
        self._returncode = None


def _parse_envelope(output: str) -> Any:
    try:
        envelope = json.loads(output)
    except json.JSONDecodeError as error:
        raise WorkerFailedError(
            f"JSON decoding error: expected worker output; found {output!r}",
            inner=error,
        ) from error
    if not isinstance(envelope, dict):
        raise WorkerFailedError(
            f"Malformed worker output: expected object; found {type(envelope).__name__}",
        )
    if envelope.get("version") != ENVELOPE_VERSION:
        raise WorkerFailedError(
            f"Unsupported worker output version: {envelope.get('version')!r}",
        )
    if envelope.get("status") == "SUCCESS" and "result" in envelope:
        return envelope["result"]
    raise QueueError.from_envelope(envelope)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as error:
        raise WorkerFailedError(f"Failed reading worker output {path}", inner=error) from error


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
