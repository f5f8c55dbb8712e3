"""Entry-point for the lecture pipeline."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import NoReturn, Optional

import uvicorn
import typer

from lecture_pipeline.bootstrap import initialize_app
from lecture_pipeline.errors import PipelineError
from lecture_pipeline.logging_utils import build_handlers, configure_logging
from lecture_pipeline.pipeline import LecturePipeline, build_pipeline
from lecture_pipeline.services.work_queue import STAGES
from lecture_pipeline.ui.overview import OverviewUI
from lecture_pipeline.web import create_app


LOGGER = logging.getLogger("lecture_pipeline.cli")


cli = typer.Typer(add_completion=False, help="Lecture pipeline management commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_handlers(storage_root))


def _open_pipeline() -> LecturePipeline:
    config = initialize_app()
    _prepare_logging(config.storage_root)
    return build_pipeline(config)


def _fail(error: PipelineError) -> NoReturn:
    typer.secho(f"Error: {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _report_processing(pipeline: LecturePipeline) -> None:
    totals = pipeline.run_until_idle()
    typer.echo(
        f"Processed {totals['processed']} work item(s); "
        f"{totals['approvals']} approval(s) detected."
    )
    failed = pipeline.queue.list_items(status="failed")
    if failed:
        typer.secho(
            f"{len(failed)} work item(s) failed. Run 'requeue' to retry them.",
            fg=typer.colors.YELLOW,
        )


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None, dispatch=True)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="LECTURE_PIPELINE_ROOT_PATH",
    ),
    dispatch: bool = typer.Option(
        True,
        "--dispatch/--no-dispatch",
        help="Process queued work in the background after uploads and approvals",
    ),
) -> None:
    """Run the FastAPI review service."""

    pipeline = _open_pipeline()
    app = create_app(
        pipeline,
        config=pipeline.config,
        root_path=root_path,
        auto_dispatch=dispatch,
    )
    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=(root_path or "").rstrip("/"),
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    if dispatch:
        # Pick up work left over from a previous run.
        pipeline.process_in_background()
    server.run()


@cli.command()
def ingest(
    path: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Artifact to ingest (.json, .pdf, .pptx, .txt or .md)",
    ),
    locator: Optional[str] = typer.Option(
        None,
        help="Locator used to derive the course and lecture ids (defaults to the file path)",
    ),
    content_type: Optional[str] = typer.Option(None, help="Declared MIME type of the artifact"),
    process: bool = typer.Option(False, "--process", help="Run queued work after ingesting"),
) -> None:
    """Ingest a lecture artifact as a draft awaiting review."""

    pipeline = _open_pipeline()
    declared = content_type or mimetypes.guess_type(path.name)[0]
    try:
        payload = pipeline.ingest(locator or path.as_posix(), path.read_bytes(), declared)
    except PipelineError as error:
        _fail(error)
    typer.echo(f"Queued draft {payload.course_id}/{payload.lecture_id} for storage.")
    if process:
        _report_processing(pipeline)


@cli.command()
def approve(
    draft_id: str = typer.Argument(..., help="Draft identifier"),
    process: bool = typer.Option(False, "--process", help="Run queued work after approving"),
) -> None:
    """Approve a draft, which starts summarization and quiz generation."""

    pipeline = _open_pipeline()
    try:
        draft = pipeline.approve(draft_id)
    except PipelineError as error:
        _fail(error)
    typer.echo(f"Approved {draft.course_id}/{draft.lecture_id}.")
    if process:
        _report_processing(pipeline)


@cli.command()
def reject(draft_id: str = typer.Argument(..., help="Draft identifier")) -> None:
    """Reject (delete) a draft that is still pending review."""

    pipeline = _open_pipeline()
    try:
        draft = pipeline.reject(draft_id)
    except PipelineError as error:
        _fail(error)
    typer.echo(f"Rejected {draft.course_id}/{draft.lecture_id}.")


@cli.command()
def process() -> None:
    """Run queued work until the pipeline is idle."""

    _report_processing(_open_pipeline())


@cli.command()
def worker() -> None:
    """Process queued work continuously until interrupted."""

    pipeline = _open_pipeline()
    typer.echo("Worker running; press Ctrl+C to stop.")
    try:
        pipeline.run_forever()
    except KeyboardInterrupt:
        typer.echo("Stopping worker.")
    finally:
        pipeline.shutdown()


@cli.command()
def requeue(
    stage: Optional[str] = typer.Option(None, help=f"Only requeue one stage ({', '.join(STAGES)})"),
    include_running: bool = typer.Option(
        False,
        "--include-running",
        help="Also requeue items left running by an interrupted process",
    ),
) -> None:
    """Return failed work items to the queue."""

    if stage is not None and stage not in STAGES:
        typer.secho(f"Unknown stage '{stage}'", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    pipeline = _open_pipeline()
    count = pipeline.queue.requeue_failed(stage, include_running=include_running)
    typer.echo(f"Requeued {count} work item(s).")


@cli.command()
def overview(
    course_id: Optional[str] = typer.Option(None, help="Only show one course"),
) -> None:
    """Render an overview of drafts and their pipeline stage."""

    OverviewUI(_open_pipeline()).run(course_id=course_id)


if __name__ == "__main__":
    cli()
