"""History providers: recent journals and active reminders for an owner.

The snapshot is point-in-time.  Two concurrent passes for different journals
of the same owner may each miss the other's fresh reminders; that only risks
an occasional missed duplicate, never corrupted state.

``recent_journals`` rides along in the snapshot for extractors and callers that
want surrounding context; duplicate adjudication only reads
``existing_reminders``.  A journal limit of 0 skips the journal read.

Database and connection failures surface as ``UpstreamUnavailableError`` so an
analysis pass can report itself offline.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable
from datetime import date, datetime

import asyncpg

from commitments.errors import UpstreamUnavailableError
from commitments.models import HistorySnapshot, JournalExcerpt, Reminder
from commitments.store import ReminderStore

logger = logging.getLogger(__name__)

DEFAULT_JOURNAL_LIMIT = 5
DEFAULT_REMINDER_LIMIT = 50

JournalSource = Callable[[str, str | None, int], Awaitable[list[JournalExcerpt]]]


class HistoryProvider(abc.ABC):
    """Supplies the point-in-time history a pass adjudicates against."""

    @abc.abstractmethod
    async def history(self, owner_id: str, excluding_journal_id: str | None) -> HistorySnapshot:
        """Return the K most recent other journals and M most recent active reminders."""
        ...


async def _no_journals(
    owner_id: str,  # noqa: ARG001
    excluding_journal_id: str | None,  # noqa: ARG001
    limit: int,  # noqa: ARG001
) -> list[JournalExcerpt]:
    return []


class StoreHistoryProvider(HistoryProvider):
    """History backed by a ``ReminderStore`` plus an optional journal source."""

    def __init__(
        self,
        store: ReminderStore,
        journal_source: JournalSource | None = None,
        *,
        journal_limit: int = DEFAULT_JOURNAL_LIMIT,
        reminder_limit: int = DEFAULT_REMINDER_LIMIT,
    ) -> None:
        self._store = store
        self._journal_source = journal_source or _no_journals
        self._journal_limit = journal_limit
        self._reminder_limit = reminder_limit

    async def history(self, owner_id: str, excluding_journal_id: str | None) -> HistorySnapshot:
        journals = await self._journal_source(owner_id, excluding_journal_id, self._journal_limit)
        reminders = await self._store.recent_active(owner_id, self._reminder_limit)
        return HistorySnapshot(
            recent_journals=list(journals)[: self._journal_limit],
            existing_reminders=reminders,
        )


def _coerce_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class PostgresHistoryProvider(HistoryProvider):
    """History read from the ``journals`` and ``reminders`` tables."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        journal_limit: int = DEFAULT_JOURNAL_LIMIT,
        reminder_limit: int = DEFAULT_REMINDER_LIMIT,
    ) -> None:
        self._pool = pool
        self._journal_limit = journal_limit
        self._reminder_limit = reminder_limit

    async def history(self, owner_id: str, excluding_journal_id: str | None) -> HistorySnapshot:
        try:
            journal_rows = await self._journal_rows(owner_id, excluding_journal_id)
            reminder_rows = await self._pool.fetch(
                """
                SELECT * FROM reminders
                WHERE owner_id = $1 AND status <> 'cancelled'
                ORDER BY created_at DESC
                LIMIT $2
                """,
                owner_id,
                self._reminder_limit,
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            logger.warning("History read failed for owner %s: %s", owner_id, exc)
            raise UpstreamUnavailableError("history", f"{type(exc).__name__}: {exc}") from exc
        return HistorySnapshot(
            recent_journals=[
                JournalExcerpt(content=row["content"], date=_coerce_date(row["date"]))
                for row in journal_rows
            ],
            existing_reminders=[Reminder.from_row(dict(row)) for row in reminder_rows],
        )

    async def _journal_rows(self, owner_id: str, excluding_journal_id: str | None) -> list:
        if self._journal_limit <= 0:
            return []
        return await self._pool.fetch(
            """
            SELECT content, date FROM journals
            WHERE owner_id = $1 AND ($2::text IS NULL OR id::text <> $2)
            ORDER BY date DESC
            LIMIT $3
            """,
            owner_id,
            excluding_journal_id,
            self._journal_limit,
        )
