"""CLI for cardsync: sync records to Google Calendar, query slots, serve the API."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any

import click

from cardsync.calendar.client import CalendarApiError
from cardsync.calendar.records import JsonFileRecordStore, RecordStore
from cardsync.calendar.service import CalendarSyncService
from cardsync.config import SHARE_ROLES, AppConfig, ConfigError, load_config, load_config_from_env
from cardsync.core.logging import configure_logging
from cardsync.core.metrics import init_metrics
from cardsync.core.telemetry import init_telemetry

logger = logging.getLogger(__name__)

SERVICE_NAME = "cardsync"

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to cardsync.toml (defaults to GOOGLE_*/CARDSYNC_* environment variables)",
)


def _load(config_path: Path | None) -> AppConfig:
    try:
        config = load_config(config_path) if config_path else load_config_from_env()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        service_name=SERVICE_NAME,
    )
    return config


def _build_service(
    config: AppConfig,
    *,
    record_store: RecordStore | None = None,
) -> CalendarSyncService:
    return CalendarSyncService(config, record_store=record_store)


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _with_service(service: CalendarSyncService, action):
    try:
        return await action(service)
    finally:
        await service.aclose()


def _run(service: CalendarSyncService, action) -> Any:
    try:
        return asyncio.run(_with_service(service, action))
    except CalendarApiError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """cardsync: mirror appointment records onto Google Calendar."""


@cli.command()
@_config_option
@click.option(
    "--records",
    "records_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="JSON file holding the record list (defaults to state.records_path)",
)
@click.option("--force", is_flag=True, help="Force a full resync (verify and rewrite every event)")
@click.option("--write-back", is_flag=True, help="Write linkage updates back into the records file")
def sync(config_path: Path | None, records_path: Path | None, force: bool, write_back: bool) -> None:
    """Reconcile the records file with the working calendar."""
    config = _load(config_path)
    path = records_path or (Path(config.state.records_path) if config.state.records_path else None)
    if path is None:
        raise click.ClickException("No records file given (use --records or state.records_path)")
    if not path.exists():
        raise click.ClickException(f"Records file not found: {path}")

    service = _build_service(config, record_store=JsonFileRecordStore(path))
    result = _run(
        service,
        lambda svc: svc.sync(force_resync=force, persist_updates=write_back, actor="cli"),
    )
    _emit(result.to_wire())
    if result.errors:
        sys.exit(1)


@cli.command()
@_config_option
@click.option("--from-date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--top", type=int, default=3, show_default=True)
@click.option("--duration", "duration_min", type=int, default=None, help="Slot length in minutes")
@click.option("--window-days", type=int, default=None)
@click.option("--timezone", default=None)
def slots(
    config_path: Path | None,
    from_date,
    top: int,
    duration_min: int | None,
    window_days: int | None,
    timezone: str | None,
) -> None:
    """Suggest free appointment slots."""
    config = _load(config_path)
    start_day: date | None = from_date.date() if from_date is not None else None
    service = _build_service(config)
    suggestions = _run(
        service,
        lambda svc: svc.suggest_slots(
            timezone=timezone,
            duration_min=duration_min,
            top=top,
            window_days=window_days,
            from_date=start_day,
        ),
    )
    if not suggestions.slots:
        click.echo("No free slots found")
        return
    for slot in suggestions.slots:
        click.echo(f"{slot.label}  ({slot.start.isoformat()} - {slot.end.isoformat()})")


@cli.command()
@_config_option
def health(config_path: Path | None) -> None:
    """Check that the working calendar is reachable and writable."""
    config = _load(config_path)
    service = _build_service(config)
    report = _run(service, lambda svc: svc.health())
    _emit(report.model_dump(mode="json", by_alias=True))
    if report.error or not report.calendar_configured:
        sys.exit(1)


@cli.command()
@_config_option
@click.option("--share", "shared_with", multiple=True, help="E-mail to share the calendar with")
@click.option("--role", type=click.Choice(SHARE_ROLES), default=None)
def setup(config_path: Path | None, shared_with: tuple[str, ...], role: str | None) -> None:
    """Create (if needed) and share the working calendar."""
    config = _load(config_path)
    service = _build_service(config)
    report = _run(
        service,
        lambda svc: svc.setup(shared_with=list(shared_with) or None, role=role),
    )
    _emit(report.model_dump(mode="json", by_alias=True))


@cli.command()
@_config_option
@click.option("--host", default=None, help="Bind host (defaults to api.host)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to api.port)")
def serve(config_path: Path | None, host: str | None, port: int | None) -> None:
    """Serve the HTTP API with the daily resync scheduler."""
    import uvicorn

    from cardsync.api.app import create_app

    config = _load(config_path)
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)
    service = _build_service(config)
    app = create_app(service, run_scheduler=True)
    bind_host = host or config.api.host
    bind_port = port or config.api.port
    click.echo(f"Serving cardsync API on {bind_host}:{bind_port}")
    uvicorn.run(app, host=bind_host, port=bind_port, log_config=None)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
