"""CLI entrypoint for lease-queue."""

import logging
import sys
from pathlib import Path

import rich_click as click

from lease_queue import __version__
from lease_queue.controllers import BatchCommand, PruneCommand, QueueCliController
from lease_queue.queue.batch import MODES, BatchOptions
from lease_queue.queue.pruner import PRUNE_MODES

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QueueCliController()
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="lease-queue")
def lease_queue() -> None:
    """Lease-based persistent task queue CLI."""


@lease_queue.command("batch")
@click.argument("app_ref")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--mode",
    type=click.Choice(MODES),
    default=None,
    help="Execution mode; defaults to multi when --workers is given, else run.",
)
@click.option("--max-attempts", type=int, default=None, help="Maximum attempts per task.")
@click.option("--lifetime", type=int, default=None, help="Task lifetime in seconds.")
@click.option("--workers", type=int, default=None, help="Worker subprocess count (multi mode).")
@click.option("--batch-size", type=int, default=None, help="Tasks claimed per batch.")
@click.option("--sleep", "sleep_ms", type=int, default=None, help="Pause after each task, in ms.")
@click.option("--shuffle", is_flag=True, default=False, help="Process each batch in random order.")
@click.option("--lease-token", default=None, help="Pre-claimed lease token (worker mode).")
@click.option("--data1", multiple=True, help="Only claim tasks with this data1. Can be repeated.")
@click.option("--data2", multiple=True, help="Only claim tasks with this data2. Can be repeated.")
@click.option("--data3", multiple=True, help="Only claim tasks with this data3. Can be repeated.")
@click.option("--debug", default=None, help="Debug setting passed through to workers.")
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Application option as name=value. Can be repeated.",
)
@click.option("--identity", default=None, help="Identity recorded as the lease owner.")
def batch(  # noqa: PLR0913
    app_ref: str,
    db_path: Path | None,
    mode: str | None,
    max_attempts: int | None,
    lifetime: int | None,
    workers: int | None,
    batch_size: int | None,
    sleep_ms: int | None,
    shuffle: bool,
    lease_token: str | None,
    data1: tuple[str, ...],
    data2: tuple[str, ...],
    data3: tuple[str, ...],
    debug: str | None,
    params: tuple[str, ...],
    identity: str | None,
) -> None:
    """Run a queue application (`package.module:attribute`) in one batch mode.

    Prints exactly one JSON envelope to stdout; logs go to stderr.
    """

    _configure_logging(debug=debug is not None)
    result = CONTROLLER.batch(
        BatchCommand(
            app_ref=app_ref,
            db_path=db_path,
            options=BatchOptions(
                mode=mode,
                max_attempts=max_attempts,
                lifetime=lifetime,
                workers=workers,
                batch_size=batch_size,
                sleep_ms=sleep_ms,
                shuffle=True if shuffle else None,
                lease_token=lease_token,
                data1=data1 or None,
                data2=data2 or None,
                data3=data3 or None,
                debug=debug,
            ),
            params=params,
            identity=identity,
        ),
    )
    _emit_lines(result.lines)
    if result.exit_code:
        sys.exit(result.exit_code)


@lease_queue.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--queues",
    required=True,
    help="Comma-separated `pattern:age` pairs; `?` and `*` are wildcards, age 0 means any age.",
)
@click.option(
    "--mode",
    type=click.Choice(PRUNE_MODES),
    default="execute",
    show_default=True,
    help="List matching queues or delete their old tasks.",
)
@click.option("--status", default=None, help="Comma-separated statuses, for example SUCCESS,FAILURE.")
def prune(db_path: Path | None, queues: str, mode: str, status: str | None) -> None:
    """Delete old tasks from queues matching the given patterns."""

    _configure_logging(debug=False)
    result = CONTROLLER.prune(
        PruneCommand(db_path=db_path, queues=queues, mode=mode, status=status),
    )
    _emit_lines(result.lines)
    if result.exit_code:
        sys.exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def _configure_logging(*, debug: bool) -> None:
    package_logger = logging.getLogger("lease_queue")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if debug else logging.INFO)


if __name__ == "__main__":  # pragma: no cover
    lease_queue()
