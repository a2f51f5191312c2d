"""Tests for reminder stores and history providers."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from commitments.errors import (
    InvalidTransitionError,
    ReminderNotFoundError,
    UpstreamUnavailableError,
)
from commitments.history import PostgresHistoryProvider, StoreHistoryProvider
from commitments.models import JournalExcerpt, ReminderStatus
from commitments.store import InMemoryReminderStore, PostgresReminderStore
from tests._helpers import FIXED_NOW, OTHER_OWNER, OWNER, make_reminder

pytestmark = pytest.mark.unit


def _row(**overrides) -> dict:
    row = {
        "id": uuid.uuid4(),
        "owner_id": OWNER,
        "source_journal_id": "journal-1",
        "title": "Dentist",
        "description": "",
        "event_timestamp_utc": datetime(2025, 11, 19, 14, 0, tzinfo=UTC),
        "original_sentence": "Dentist at 2pm.",
        "status": "confirmed",
        "external_calendar_event_id": None,
        "last_sync_error": None,
        "created_at": FIXED_NOW,
        "updated_at": None,
    }
    row.update(overrides)
    return row


def _mock_pool() -> MagicMock:
    pool = MagicMock()
    pool.fetchrow = AsyncMock()
    pool.fetch = AsyncMock(return_value=[])
    return pool


# ---------------------------------------------------------------------------
# InMemoryReminderStore
# ---------------------------------------------------------------------------


class TestInMemoryReminderStore:
    async def test_returns_copies(self) -> None:
        store = InMemoryReminderStore()
        reminder = await store.create(make_reminder())

        reminder.title = "mutated"

        assert (await store.get(reminder.id)).title == "Dentist"

    async def test_duplicate_id_rejected(self) -> None:
        store = InMemoryReminderStore()
        reminder = make_reminder()
        await store.create(reminder)
        with pytest.raises(ValueError, match="already exists"):
            await store.create(reminder)

    async def test_save_unknown_raises(self) -> None:
        with pytest.raises(ReminderNotFoundError):
            await InMemoryReminderStore().save(make_reminder())

    async def test_mark_synced_only_from_confirmed(self) -> None:
        store = InMemoryReminderStore()
        confirmed = await store.create(make_reminder())
        proposed = await store.create(make_reminder(status=ReminderStatus.PROPOSED))

        synced = await store.mark_synced(confirmed.id, "evt-1", FIXED_NOW)

        assert synced.status is ReminderStatus.SYNCED
        assert synced.external_calendar_event_id == "evt-1"
        assert synced.updated_at == FIXED_NOW
        with pytest.raises(InvalidTransitionError):
            await store.mark_synced(proposed.id, "evt-2", FIXED_NOW)
        with pytest.raises(ReminderNotFoundError):
            await store.mark_synced(uuid.uuid4(), "evt-3", FIXED_NOW)

    async def test_record_sync_error_only_while_confirmed(self) -> None:
        store = InMemoryReminderStore()
        confirmed = await store.create(make_reminder())
        cancelled = await store.create(make_reminder(status=ReminderStatus.CANCELLED))

        updated = await store.record_sync_error(confirmed.id, "backend exploded", FIXED_NOW)

        assert updated.last_sync_error == "backend exploded"
        assert updated.updated_at == FIXED_NOW
        assert await store.record_sync_error(cancelled.id, "late", FIXED_NOW) is None
        untouched = await store.get(cancelled.id)
        assert untouched.status is ReminderStatus.CANCELLED
        assert untouched.last_sync_error is None
        assert await store.record_sync_error(uuid.uuid4(), "gone", FIXED_NOW) is None

    async def test_recent_active_newest_first(self) -> None:
        store = InMemoryReminderStore()
        old = await store.create(make_reminder(created_at=FIXED_NOW - timedelta(days=2)))
        new = await store.create(make_reminder(created_at=FIXED_NOW))
        await store.create(make_reminder(status=ReminderStatus.CANCELLED))
        await store.create(make_reminder(owner_id=OTHER_OWNER))

        recent = await store.recent_active(OWNER, 10)

        assert [r.id for r in recent] == [new.id, old.id]
        assert [r.id for r in await store.recent_active(OWNER, 1)] == [new.id]

    async def test_list_filters_by_status(self) -> None:
        store = InMemoryReminderStore()
        confirmed = await store.create(make_reminder())
        await store.create(make_reminder(status=ReminderStatus.PROPOSED))

        listed = await store.list_for_owner(OWNER, status=ReminderStatus.CONFIRMED)

        assert [r.id for r in listed] == [confirmed.id]


# ---------------------------------------------------------------------------
# PostgresReminderStore
# ---------------------------------------------------------------------------


class TestPostgresReminderStore:
    async def test_create_inserts_all_columns(self) -> None:
        pool = _mock_pool()
        reminder = make_reminder()
        pool.fetchrow.return_value = _row(id=reminder.id)

        stored = await PostgresReminderStore(pool).create(reminder)

        sql, *args = pool.fetchrow.call_args.args
        assert "INSERT INTO reminders" in sql
        assert len(args) == 12
        assert args[0] == reminder.id
        assert args[7] == "confirmed"
        assert stored.id == reminder.id

    async def test_get_missing_returns_none(self) -> None:
        pool = _mock_pool()
        pool.fetchrow.return_value = None
        assert await PostgresReminderStore(pool).get(uuid.uuid4()) is None

    async def test_save_missing_raises(self) -> None:
        pool = _mock_pool()
        pool.fetchrow.return_value = None
        with pytest.raises(ReminderNotFoundError):
            await PostgresReminderStore(pool).save(make_reminder())

    async def test_mark_synced_is_single_conditional_update(self) -> None:
        pool = _mock_pool()
        row = _row(status="synced", external_calendar_event_id="evt-1")
        pool.fetchrow.return_value = row

        synced = await PostgresReminderStore(pool).mark_synced(row["id"], "evt-1", FIXED_NOW)

        sql = pool.fetchrow.call_args.args[0]
        assert "status = 'synced'" in sql
        assert "status = 'confirmed'" in sql
        assert synced.status is ReminderStatus.SYNCED
        assert pool.fetchrow.await_count == 1

    async def test_mark_synced_on_cancelled_raises_invalid_transition(self) -> None:
        pool = _mock_pool()
        reminder_id = uuid.uuid4()
        pool.fetchrow.side_effect = [None, _row(id=reminder_id, status="cancelled")]

        with pytest.raises(InvalidTransitionError, match="cancelled"):
            await PostgresReminderStore(pool).mark_synced(reminder_id, "evt-1", FIXED_NOW)

    async def test_mark_synced_unknown_raises_not_found(self) -> None:
        pool = _mock_pool()
        pool.fetchrow.side_effect = [None, None]

        with pytest.raises(ReminderNotFoundError):
            await PostgresReminderStore(pool).mark_synced(uuid.uuid4(), "evt-1", FIXED_NOW)

    async def test_record_sync_error_is_conditional_on_confirmed(self) -> None:
        pool = _mock_pool()
        row = _row(last_sync_error="backend exploded", updated_at=FIXED_NOW)
        pool.fetchrow.return_value = row

        updated = await PostgresReminderStore(pool).record_sync_error(
            row["id"], "backend exploded", FIXED_NOW
        )

        sql, *args = pool.fetchrow.call_args.args
        assert "SET last_sync_error = $2" in sql
        assert "status = 'confirmed'" in sql
        assert "status = 'synced'" not in sql
        assert args == [row["id"], "backend exploded", FIXED_NOW]
        assert updated.last_sync_error == "backend exploded"

    async def test_record_sync_error_after_cancel_returns_none(self) -> None:
        pool = _mock_pool()
        pool.fetchrow.return_value = None

        assert (
            await PostgresReminderStore(pool).record_sync_error(uuid.uuid4(), "late", FIXED_NOW)
            is None
        )

    async def test_list_for_owner_builds_filters(self) -> None:
        pool = _mock_pool()
        pool.fetch.return_value = [_row()]

        reminders = await PostgresReminderStore(pool).list_for_owner(
            OWNER, status=ReminderStatus.CONFIRMED
        )

        sql, *args = pool.fetch.call_args.args
        assert "status <> 'cancelled'" in sql
        assert "status = $2" in sql
        assert "ORDER BY event_timestamp_utc" in sql
        assert args == [OWNER, "confirmed"]
        assert reminders[0].title == "Dentist"

    async def test_list_including_cancelled(self) -> None:
        pool = _mock_pool()

        await PostgresReminderStore(pool).list_for_owner(OWNER, include_cancelled=True)

        sql, *args = pool.fetch.call_args.args
        assert "cancelled" not in sql
        assert args == [OWNER]


# ---------------------------------------------------------------------------
# History providers
# ---------------------------------------------------------------------------


class TestStoreHistoryProvider:
    async def test_snapshot_bounds_and_forwarding(self) -> None:
        store = InMemoryReminderStore()
        for offset in range(4):
            await store.create(make_reminder(created_at=FIXED_NOW - timedelta(hours=offset)))
        journal_source = AsyncMock(
            return_value=[JournalExcerpt(content=f"entry {i}", date=date(2025, 11, i + 1)) for i in range(5)]
        )
        provider = StoreHistoryProvider(
            store, journal_source, journal_limit=3, reminder_limit=2
        )

        snapshot = await provider.history(OWNER, "journal-9")

        journal_source.assert_awaited_once_with(OWNER, "journal-9", 3)
        assert len(snapshot.recent_journals) == 3
        assert len(snapshot.existing_reminders) == 2

    async def test_without_journal_source(self) -> None:
        snapshot = await StoreHistoryProvider(InMemoryReminderStore()).history(OWNER, None)
        assert snapshot.recent_journals == []
        assert snapshot.existing_reminders == []


class TestPostgresHistoryProvider:
    async def test_reads_journals_and_active_reminders(self) -> None:
        pool = _mock_pool()
        pool.fetch.side_effect = [
            [{"content": "Dentist soon", "date": datetime(2025, 11, 13, 8, 0, tzinfo=UTC)}],
            [_row()],
        ]
        provider = PostgresHistoryProvider(pool, journal_limit=5, reminder_limit=50)

        snapshot = await provider.history(OWNER, "journal-2")

        journal_call, reminder_call = pool.fetch.call_args_list
        assert "FROM journals" in journal_call.args[0]
        assert journal_call.args[1:] == (OWNER, "journal-2", 5)
        assert "status <> 'cancelled'" in reminder_call.args[0]
        assert reminder_call.args[1:] == (OWNER, 50)
        assert snapshot.recent_journals == [
            JournalExcerpt(content="Dentist soon", date=date(2025, 11, 13))
        ]
        assert snapshot.existing_reminders[0].title == "Dentist"

    async def test_connection_failure_is_upstream_unavailable(self) -> None:
        pool = _mock_pool()
        pool.fetch.side_effect = ConnectionRefusedError("connection refused")
        provider = PostgresHistoryProvider(pool)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await provider.history(OWNER, None)

        assert exc_info.value.collaborator == "history"
        assert "connection refused" in str(exc_info.value)

    async def test_closed_pool_is_upstream_unavailable(self) -> None:
        pool = _mock_pool()
        pool.fetch.side_effect = [[], asyncpg.InterfaceError("pool is closed")]

        with pytest.raises(UpstreamUnavailableError, match="history unavailable"):
            await PostgresHistoryProvider(pool).history(OWNER, None)

    async def test_zero_journal_limit_skips_journal_query(self) -> None:
        pool = _mock_pool()
        pool.fetch.return_value = [_row()]

        snapshot = await PostgresHistoryProvider(pool, journal_limit=0).history(OWNER, None)

        assert pool.fetch.await_count == 1
        assert "FROM reminders" in pool.fetch.call_args.args[0]
        assert snapshot.recent_journals == []
        assert len(snapshot.existing_reminders) == 1
