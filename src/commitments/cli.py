"""CLI for the commitments engine — resolve dates, analyze journals, manage reminders."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import asyncpg
import click

from commitments import __version__
from commitments.adjudicator import Adjudicator, SimilarityTitleMatcher
from commitments.calendar_sync import (
    CalendarSyncAdapter,
    GoogleCalendarSyncAdapter,
    GoogleOAuthCredentials,
)
from commitments.config import CommitmentsConfig, load_config
from commitments.core.logging import configure_logging
from commitments.core.telemetry import init_telemetry
from commitments.errors import CommitmentsError, ConfigError
from commitments.extractor import OllamaCandidateExtractor
from commitments.history import PostgresHistoryProvider, StoreHistoryProvider
from commitments.lifecycle import LifecycleSettings, ReminderLifecycleManager
from commitments.migrations import run_migrations
from commitments.models import CandidateEvent
from commitments.resolver import coerce_zone, evaluate
from commitments.store import InMemoryReminderStore, PostgresReminderStore

logger = logging.getLogger(__name__)


def _parse_now(
    ctx: click.Context,  # noqa: ARG001
    param: click.Parameter,  # noqa: ARG001
    value: str | None,
) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO-8601 timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _echo_json(payload: dict[str, Any] | list[Any]) -> None:
    click.echo(json.dumps(payload, indent=2))


def _load(config_path: Path | None) -> CommitmentsConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    log_file = Path(config.logging.log_file) if config.logging.log_file else None
    configure_logging(config.logging.level, config.logging.format, log_file)
    init_telemetry()
    return config


def _build_sync_adapter(config: CommitmentsConfig) -> CalendarSyncAdapter | None:
    calendar = config.calendar
    if not calendar.enabled:
        return None
    if not calendar.credentials_json:
        raise ConfigError("calendar.enabled is true but calendar.credentials_json is not set")
    credentials = GoogleOAuthCredentials.from_json(calendar.credentials_json)
    return GoogleCalendarSyncAdapter(
        credentials,
        calendar_id=calendar.calendar_id,
        timeout_seconds=calendar.timeout_seconds,
    )


@asynccontextmanager
async def open_manager(
    config: CommitmentsConfig,
    *,
    require_database: bool = False,
) -> AsyncIterator[ReminderLifecycleManager]:
    """Wire a lifecycle manager from *config* and release its resources on exit.

    Without ``database.dsn`` an in-memory store is used, which only makes
    sense for one-shot dry runs.
    """
    if require_database and not config.database.dsn:
        raise ConfigError("This command needs database.dsn to be configured")

    pool: asyncpg.Pool | None = None
    if config.database.dsn:
        pool = await asyncpg.create_pool(config.database.dsn)
        store = PostgresReminderStore(pool)
        history = PostgresHistoryProvider(
            pool,
            journal_limit=config.history.journal_limit,
            reminder_limit=config.history.reminder_limit,
        )
    else:
        store = InMemoryReminderStore()
        history = StoreHistoryProvider(
            store,
            journal_limit=config.history.journal_limit,
            reminder_limit=config.history.reminder_limit,
        )

    extractor = OllamaCandidateExtractor(
        base_url=config.extractor.base_url,
        model=config.extractor.model,
        timeout_seconds=config.extractor.timeout_seconds,
    )
    sync_adapter: CalendarSyncAdapter | None = None
    try:
        sync_adapter = _build_sync_adapter(config)
        tz = coerce_zone(config.resolver.timezone)
        yield ReminderLifecycleManager(
            store,
            extractor=extractor,
            history=history,
            sync_adapter=sync_adapter,
            adjudicator=Adjudicator(
                SimilarityTitleMatcher(config.adjudicator.similarity_threshold), tz=tz
            ),
            tz=tz,
            settings=LifecycleSettings.from_config(config),
        )
    finally:
        await extractor.shutdown()
        if sync_adapter is not None:
            await sync_adapter.shutdown()
        if pool is not None:
            await pool.close()


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except CommitmentsError as exc:
        raise click.ClickException(str(exc)) from exc


_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to commitments.toml (default: ./commitments.toml if present)",
)

_owner_option = click.option("--owner", "owner_id", required=True, help="Owner identifier")


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Commitments — turn journal mentions into dated reminders."""


@cli.command()
@click.argument("date_expression")
@click.option("--time", "time_expression", default=None, help="Time expression, e.g. '3pm'")
@click.option("--now", callback=_parse_now, default=None, help="Reference instant (ISO-8601)")
@click.option("--timezone", "timezone_name", default="UTC", show_default=True)
def resolve(
    date_expression: str,
    time_expression: str | None,
    now: datetime | None,
    timezone_name: str,
) -> None:
    """Resolve a natural-language date (and optional time) to a UTC instant."""
    try:
        tz = coerce_zone(timezone_name)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--timezone") from exc

    candidate = CandidateEvent(
        title="resolve",
        raw_date_expression=date_expression,
        raw_time_expression=time_expression,
    )
    event = evaluate(candidate, now or datetime.now(UTC), tz=tz)
    if event is None:
        click.echo(f"Could not resolve date: {date_expression!r}")
        sys.exit(1)
    if not event.valid:
        click.echo(f"Date is in the past: {event.timestamp_utc.isoformat()}")
        sys.exit(1)
    click.echo(event.timestamp_utc.isoformat())


@cli.command()
@click.argument("journal_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_owner_option
@click.option("--journal-id", required=True, help="Identifier of the journal being analyzed")
@click.option("--now", callback=_parse_now, default=None, help="Reference instant (ISO-8601)")
@_config_option
def analyze(
    journal_file: Path,
    owner_id: str,
    journal_id: str,
    now: datetime | None,
    config_path: Path | None,
) -> None:
    """Run one analysis pass over a journal file and print the result as JSON."""
    config = _load(config_path)
    journal_text = journal_file.read_text(encoding="utf-8")

    async def _analyze() -> dict[str, Any]:
        async with open_manager(config) as manager:
            result = await manager.analyze_and_reconcile(
                journal_text, owner_id, journal_id, reference_now=now
            )
            return result.to_dict()

    payload = _run(_analyze())
    _echo_json(payload)
    if payload["status"] == "offline":
        sys.exit(1)


@cli.command("list")
@_owner_option
@click.option("--all", "include_cancelled", is_flag=True, help="Include cancelled reminders")
@_config_option
def list_cmd(owner_id: str, include_cancelled: bool, config_path: Path | None) -> None:
    """List an owner's reminders ordered by event time."""
    config = _load(config_path)

    async def _list() -> list[dict[str, Any]]:
        async with open_manager(config, require_database=True) as manager:
            reminders = await manager.list_reminders(
                owner_id, include_cancelled=include_cancelled
            )
            return [reminder.to_dict() for reminder in reminders]

    _echo_json(_run(_list()))


@cli.command()
@click.argument("title")
@_owner_option
@click.option(
    "--at", "event_at", required=True, callback=_parse_now, help="Event instant (ISO-8601)"
)
@click.option("--description", default="", help="Free-text description")
@_config_option
def propose(
    title: str,
    owner_id: str,
    event_at: datetime,
    description: str,
    config_path: Path | None,
) -> None:
    """Propose a reminder by hand; it stays proposed until confirmed."""
    config = _load(config_path)

    async def _propose() -> dict[str, Any]:
        async with open_manager(config, require_database=True) as manager:
            try:
                reminder = await manager.propose(
                    owner_id, title, event_at, description=description
                )
            except ValueError as exc:
                raise click.ClickException(str(exc)) from exc
            return reminder.to_dict()

    _echo_json(_run(_propose()))


@cli.command()
@click.argument("reminder_id", type=click.UUID)
@_owner_option
@_config_option
def confirm(reminder_id: uuid.UUID, owner_id: str, config_path: Path | None) -> None:
    """Confirm a proposed reminder so it can be synced."""
    config = _load(config_path)

    async def _confirm() -> dict[str, Any]:
        async with open_manager(config, require_database=True) as manager:
            reminder = await manager.confirm(reminder_id, owner_id)
            return reminder.to_dict()

    _echo_json(_run(_confirm()))


@cli.command()
@click.argument("reminder_id", type=click.UUID)
@_owner_option
@_config_option
def cancel(reminder_id: uuid.UUID, owner_id: str, config_path: Path | None) -> None:
    """Cancel a reminder, removing its external calendar event when synced."""
    config = _load(config_path)

    async def _cancel() -> dict[str, Any]:
        async with open_manager(config, require_database=True) as manager:
            result = await manager.cancel_reminder(reminder_id, owner_id)
            return result.to_dict()

    _echo_json(_run(_cancel()))


@cli.command()
@_owner_option
@_config_option
def sync(owner_id: str, config_path: Path | None) -> None:
    """Retry calendar sync for every confirmed reminder of an owner."""
    config = _load(config_path)

    async def _sync() -> list[dict[str, Any]]:
        async with open_manager(config, require_database=True) as manager:
            outcomes = await manager.sync_pending(owner_id)
            return [outcome.to_dict() for outcome in outcomes]

    outcomes = _run(_sync())
    _echo_json(outcomes)
    if any(not o["success"] and not o["skipped"] for o in outcomes):
        sys.exit(1)


@cli.command()
@_config_option
def migrate(config_path: Path | None) -> None:
    """Upgrade the database schema to the latest revision."""
    config = _load(config_path)
    if not config.database.dsn:
        raise click.ClickException("This command needs database.dsn to be configured")
    asyncio.run(run_migrations(config.database.dsn))
    click.echo("Schema is up to date")
