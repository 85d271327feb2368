"""Entry-point for the Sermon Prep application."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn

from sermon_prep.bootstrap import initialize_app
from sermon_prep.logging_utils import build_log_handlers, configure_logging
from sermon_prep.services.container import SeriesServices, build_services
from sermon_prep.services.errors import SeriesNotFoundError, SeriesSyncError
from sermon_prep.services.sync import SyncReport
from sermon_prep.web import create_app


LOGGER = logging.getLogger("sermon_prep.cli")


cli = typer.Typer(add_completion=False, help="Sermon Prep management commands")


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_log_handlers(storage_root))


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _open_services() -> SeriesServices:
    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)
    return build_services(app_config)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="SERMON_PREP_ROOT_PATH",
    ),
) -> None:
    """Run the HTTP API."""

    services = _open_services()
    normalized_root = _normalize_root_path(root_path)
    app = create_app(services, config=services.config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving on http://%s:%s%s/", host, port, normalized_root)
    try:
        server.run()
    finally:
        services.close()


def _describe(report: SyncReport) -> str:
    return (
        f"Synced {len(report.members)} member(s) of series {report.series_id} "
        f"from {report.source}"
    )


@cli.command()
def resync(series_id: str = typer.Argument(..., help="Identifier of the series to repair")) -> None:
    """Rewrite the back-references of one series from its membership order."""

    services = _open_services()
    try:
        report = asyncio.run(services.engine.resync(series_id))
    except SeriesNotFoundError:
        typer.echo(f"Series not found: {series_id}")
        raise typer.Exit(code=1)
    except SeriesSyncError as error:
        typer.echo(f"Resync failed: {error}")
        raise typer.Exit(code=1)
    finally:
        services.close()
    typer.echo(_describe(report))


@cli.command("resync-all")
def resync_all() -> None:
    """Repair every series; keeps going when one of them fails."""

    services = _open_services()
    failed: List[str] = []
    try:
        series_ids = [series["id"] for series in services.series.list_all_series()]
        for series_id in series_ids:
            try:
                report = asyncio.run(services.engine.resync(series_id))
            except (SeriesNotFoundError, SeriesSyncError) as error:
                LOGGER.warning("Resync of series %s failed: %s", series_id, error)
                failed.append(series_id)
                continue
            typer.echo(_describe(report))
    finally:
        services.close()

    typer.echo(f"Resynced {len(series_ids) - len(failed)} of {len(series_ids)} series.")
    if failed:
        typer.echo(f"Failed: {', '.join(failed)}")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
