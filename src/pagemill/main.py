"""CLI entrypoint for pagemill."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from pagemill import __version__
from pagemill.pipeline.controllers import (
    CleanupCommand,
    CreateTaskCliCommand,
    InspectTaskCommand,
    ListTasksCommand,
    MutateTaskCommand,
    PipelineCliController,
    RetryPageCommand,
    RunWorkersCommand,
)
from pagemill.pipeline.errors import (
    InvalidTransitionError,
    PageNotFoundError,
    TaskNotFoundError,
)
from pagemill.pipeline.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()

CommandT = TypeVar("CommandT")

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_uploads_dir_option = click.option(
    "--uploads-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Root directory for uploads and page artifacts.",
)


@click.group()
@click.version_option(version=__version__, prog_name="pagemill")
def pagemill() -> None:
    """Document to markdown conversion pipeline."""


@pagemill.group()
def tasks() -> None:
    """Task registration and inspection commands."""


@tasks.command("create")
@click.argument("source_file", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@_db_path_option
@_uploads_dir_option
@click.option(
    "--page-range",
    default="",
    help="Pages to convert, for example `1-3,7,10-20`. Empty means all pages.",
)
@click.option("--model", default=None, help="Completion model options for every page.")
def tasks_create(
    source_file: Path,
    db_path: Path | None,
    uploads_dir: Path | None,
    page_range: str,
    model: str | None,
) -> None:
    """Register a document for conversion."""

    _emit_lines(
        _run(
            PIPELINE_CONTROLLER.create_task,
            CreateTaskCliCommand(
                db_path=db_path,
                uploads_dir=uploads_dir,
                source_file=source_file,
                page_range=page_range,
                model=model,
            ),
        ),
    )


@tasks.command("list")
@_db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        PIPELINE_CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.argument("task_id")
@_db_path_option
@click.option(
    "--show-content/--no-show-content",
    default=False,
    show_default=True,
    help="Print converted page content.",
)
def tasks_inspect(task_id: str, db_path: Path | None, show_content: bool) -> None:
    """Show one task with its pages."""

    _emit_lines(
        PIPELINE_CONTROLLER.inspect_task(
            InspectTaskCommand(db_path=db_path, task_id=task_id, show_content=show_content),
        ),
    )


@tasks.command("cancel")
@click.argument("task_id")
@_db_path_option
@_uploads_dir_option
def tasks_cancel(task_id: str, db_path: Path | None, uploads_dir: Path | None) -> None:
    """Cancel a task; pages already being converted finish but nothing new is claimed."""

    _emit_lines(
        _run(
            PIPELINE_CONTROLLER.cancel_task,
            MutateTaskCommand(db_path=db_path, uploads_dir=uploads_dir, task_id=task_id),
        ),
    )


@tasks.command("delete")
@click.argument("task_id")
@_db_path_option
@_uploads_dir_option
def tasks_delete(task_id: str, db_path: Path | None, uploads_dir: Path | None) -> None:
    """Delete a task, its pages and its uploaded files."""

    _emit_lines(
        _run(
            PIPELINE_CONTROLLER.delete_task,
            MutateTaskCommand(db_path=db_path, uploads_dir=uploads_dir, task_id=task_id),
        ),
    )


@tasks.command("retry-failed")
@click.argument("task_id")
@_db_path_option
@_uploads_dir_option
def tasks_retry_failed(task_id: str, db_path: Path | None, uploads_dir: Path | None) -> None:
    """Re-queue every failed page of a task."""

    _emit_lines(
        _run(
            PIPELINE_CONTROLLER.retry_failed,
            MutateTaskCommand(db_path=db_path, uploads_dir=uploads_dir, task_id=task_id),
        ),
    )


@pagemill.group()
def pages() -> None:
    """Page level commands."""


@pages.command("retry")
@click.argument("page_id", type=int)
@_db_path_option
@_uploads_dir_option
def pages_retry(page_id: int, db_path: Path | None, uploads_dir: Path | None) -> None:
    """Re-queue one failed or completed page."""

    _emit_lines(
        _run(
            PIPELINE_CONTROLLER.retry_page,
            RetryPageCommand(db_path=db_path, uploads_dir=uploads_dir, page_id=page_id),
        ),
    )


@pagemill.group()
def workers() -> None:
    """Worker pool commands."""


@workers.command("run")
@_db_path_option
@_uploads_dir_option
@click.option(
    "--converters",
    type=click.IntRange(min=1, max=32),
    default=None,
    help="Number of converter threads (defaults to `PAGEMILL_CONVERTER_COUNT`).",
)
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Stop once no task is waiting for a worker.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log worker activity.")
def workers_run(  # noqa: PLR0913
    db_path: Path | None,
    uploads_dir: Path | None,
    converters: int | None,
    until_idle: bool,
    max_seconds: float | None,
    verbose: bool,
) -> None:
    """Recover orphaned work, then run splitter, converters and merger."""

    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
        )
    _emit_lines(
        _run(
            PIPELINE_CONTROLLER.run_workers,
            RunWorkersCommand(
                db_path=db_path,
                uploads_dir=uploads_dir,
                converters=converters,
                until_idle=until_idle,
                max_seconds=max_seconds,
            ),
        ),
    )


@workers.command("cleanup")
@_db_path_option
@_uploads_dir_option
def workers_cleanup(db_path: Path | None, uploads_dir: Path | None) -> None:
    """Return work orphaned by a crashed process to claimable states."""

    _emit_lines(
        PIPELINE_CONTROLLER.cleanup(CleanupCommand(db_path=db_path, uploads_dir=uploads_dir)),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (
        TaskNotFoundError,
        PageNotFoundError,
        InvalidTransitionError,
        FileNotFoundError,
        ValueError,
    ) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pagemill()
