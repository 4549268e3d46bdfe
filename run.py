"""Entry-point for the Manga Publisher service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import typer
import uvicorn

from mangapub.bootstrap import BootstrapError, initialize_app
from mangapub.config import AppConfig
from mangapub.logging_utils import build_handlers, configure_logging
from mangapub.pipeline.errors import PipelineError
from mangapub.pipeline.moderation import ModerationOrchestrator
from mangapub.services.storage import ChapterRepository
from mangapub.ui.report import ModerationReport
from mangapub.web import create_app


LOGGER = logging.getLogger("mangapub.cli")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

cli = typer.Typer(add_completion=False, help="Manga Publisher management commands")


def _prepare_logging(storage_root: Path, *, verbose: bool = False) -> None:
    configure_logging(logging.DEBUG if verbose else logging.INFO, handlers=build_handlers(storage_root))


def _load() -> AppConfig:
    try:
        return initialize_app()
    except BootstrapError as error:
        typer.echo(f"Initialization failed: {error}", err=True)
        raise typer.Exit(code=2) from error


def _build_orchestrator(config: AppConfig) -> Tuple[ChapterRepository, ModerationOrchestrator]:
    repository = ChapterRepository(config)
    return repository, ModerationOrchestrator.from_config(config, repository)


def _fail(error: PipelineError) -> None:
    typer.echo(f"{error.__class__.__name__} during {error.stage}: {error}", err=True)
    if error.key:
        typer.echo(f"  key: {error.key}", err=True)
    raise typer.Exit(code=1) from error


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
) -> None:
    """Run the FastAPI moderation service."""

    app_config = _load()
    _prepare_logging(app_config.storage_root)

    _, orchestrator = _build_orchestrator(app_config)
    app = create_app(orchestrator, config=app_config)

    server_config = uvicorn.Config(app, host=host, port=port, log_config=None)
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving on http://%s:%s", host, port)
    server.run()


@cli.command()
def approve(
    chapter_id: int = typer.Argument(..., help="Chapter identifier"),
    force: bool = typer.Option(False, "--force", help="Re-encode pages even if already published"),
    keep_staging: bool = typer.Option(False, "--keep-staging", help="Leave staged objects in place"),
    timeout: Optional[float] = typer.Option(None, help="Stop scheduling pages after this many seconds"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Publish a chapter from staging into the permanent store."""

    app_config = _load()
    _prepare_logging(app_config.storage_root, verbose=verbose)
    _, orchestrator = _build_orchestrator(app_config)
    try:
        result = orchestrator.approve(
            chapter_id, force=force, delete_staging=not keep_staging, timeout=timeout
        )
    except PipelineError as error:
        _fail(error)
        return
    ModerationReport().approve(result)


@cli.command()
def reject(
    chapter_id: int = typer.Argument(..., help="Chapter identifier"),
    reason: Optional[str] = typer.Option(None, help="Reason recorded on the chapter"),
    terminal: bool = typer.Option(False, "--terminal", help="Mark the chapter rejected instead of draft"),
) -> None:
    """Discard a chapter's pages and sweep its objects."""

    app_config = _load()
    _prepare_logging(app_config.storage_root)
    _, orchestrator = _build_orchestrator(app_config)
    try:
        result = orchestrator.reject(chapter_id, reason=reason, terminal=terminal)
    except PipelineError as error:
        _fail(error)
        return
    ModerationReport().reject(result)


@cli.command()
def pending(limit: int = typer.Option(50, min=1, help="Maximum number of chapters")) -> None:
    """List chapters waiting for moderation."""

    app_config = _load()
    _, orchestrator = _build_orchestrator(app_config)
    ModerationReport().pending(orchestrator.pending(limit=limit))


@cli.command("webp-config")
def webp_config(
    upload_quality: Optional[int] = typer.Option(None, help="Quality used when staging uploads"),
    publish_quality: Optional[int] = typer.Option(None, help="Quality used when publishing"),
    max_width: Optional[int] = typer.Option(None, help="Maximum page width in pixels"),
    max_height: Optional[int] = typer.Option(None, help="Maximum page height in pixels"),
    recompress_threshold: Optional[int] = typer.Option(
        None, help="Recorded WebP quality above which pages are re-encoded"
    ),
    effort: Optional[int] = typer.Option(None, help="Encoder effort (1-6)"),
) -> None:
    """Show the WebP settings, updating any that are given."""

    app_config = _load()
    _, orchestrator = _build_orchestrator(app_config)
    changes = {
        name: value
        for name, value in {
            "upload_quality": upload_quality,
            "publish_quality": publish_quality,
            "max_width": max_width,
            "max_height": max_height,
            "recompress_threshold": recompress_threshold,
            "effort": effort,
        }.items()
        if value is not None
    }
    store = orchestrator.settings
    if changes:
        try:
            current = store.update(changes)
        except ValueError as error:
            raise typer.BadParameter(str(error)) from error
    else:
        current = store.load()
    ModerationReport().webp_config(current)


if __name__ == "__main__":
    cli()
