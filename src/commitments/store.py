"""Reminder persistence.

``ReminderStore`` is the boundary the lifecycle manager writes through.  Two
implementations ship: an in-process store used by tests and dry runs, and a
PostgreSQL store over an ``asyncpg`` pool (schema in
``alembic/versions/commitments``).
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import uuid
from datetime import datetime

import asyncpg

from commitments.errors import InvalidTransitionError, ReminderNotFoundError
from commitments.models import Reminder, ReminderStatus

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "owner_id",
    "source_journal_id",
    "title",
    "description",
    "event_timestamp_utc",
    "original_sentence",
    "status",
    "external_calendar_event_id",
    "last_sync_error",
    "created_at",
    "updated_at",
)


class ReminderStore(abc.ABC):
    """Storage contract for reminders."""

    @abc.abstractmethod
    async def create(self, reminder: Reminder) -> Reminder:
        """Persist a new reminder and return the stored copy."""
        ...

    @abc.abstractmethod
    async def get(self, reminder_id: uuid.UUID) -> Reminder | None:
        """Fetch a reminder by id."""
        ...

    @abc.abstractmethod
    async def save(self, reminder: Reminder) -> Reminder:
        """Write back mutable fields of an existing reminder."""
        ...

    @abc.abstractmethod
    async def mark_synced(
        self,
        reminder_id: uuid.UUID,
        external_event_id: str,
        at: datetime,
    ) -> Reminder:
        """Atomically move a ``confirmed`` reminder to ``synced`` with its external id."""
        ...

    @abc.abstractmethod
    async def record_sync_error(
        self,
        reminder_id: uuid.UUID,
        message: str,
        at: datetime,
    ) -> Reminder | None:
        """Attach *message* to a reminder that is still ``confirmed``.

        Returns ``None`` (and writes nothing) when the reminder is gone or has
        moved on to another status.
        """
        ...

    @abc.abstractmethod
    async def list_for_owner(
        self,
        owner_id: str,
        *,
        include_cancelled: bool = False,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        """Return an owner's reminders ordered by event time."""
        ...

    @abc.abstractmethod
    async def recent_active(self, owner_id: str, limit: int) -> list[Reminder]:
        """Return the *limit* most recently created non-cancelled reminders."""
        ...


class InMemoryReminderStore(ReminderStore):
    """Dictionary-backed store; returns copies so callers cannot alias rows."""

    def __init__(self) -> None:
        self._rows: dict[uuid.UUID, Reminder] = {}

    async def create(self, reminder: Reminder) -> Reminder:
        if reminder.id in self._rows:
            raise ValueError(f"Reminder {reminder.id} already exists")
        self._rows[reminder.id] = dataclasses.replace(reminder)
        return dataclasses.replace(reminder)

    async def get(self, reminder_id: uuid.UUID) -> Reminder | None:
        row = self._rows.get(reminder_id)
        return dataclasses.replace(row) if row is not None else None

    async def save(self, reminder: Reminder) -> Reminder:
        if reminder.id not in self._rows:
            raise ReminderNotFoundError(reminder.id)
        self._rows[reminder.id] = dataclasses.replace(reminder)
        return dataclasses.replace(reminder)

    async def mark_synced(
        self,
        reminder_id: uuid.UUID,
        external_event_id: str,
        at: datetime,
    ) -> Reminder:
        row = self._rows.get(reminder_id)
        if row is None:
            raise ReminderNotFoundError(reminder_id)
        if row.status != ReminderStatus.CONFIRMED:
            raise InvalidTransitionError(
                f"Cannot transition from '{row.status.value}' to 'synced'"
            )
        updated = dataclasses.replace(
            row,
            status=ReminderStatus.SYNCED,
            external_calendar_event_id=external_event_id,
            last_sync_error=None,
            updated_at=at,
        )
        self._rows[reminder_id] = updated
        return dataclasses.replace(updated)

    async def record_sync_error(
        self,
        reminder_id: uuid.UUID,
        message: str,
        at: datetime,
    ) -> Reminder | None:
        row = self._rows.get(reminder_id)
        if row is None or row.status != ReminderStatus.CONFIRMED:
            return None
        updated = dataclasses.replace(row, last_sync_error=message, updated_at=at)
        self._rows[reminder_id] = updated
        return dataclasses.replace(updated)

    async def list_for_owner(
        self,
        owner_id: str,
        *,
        include_cancelled: bool = False,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        rows = [
            dataclasses.replace(row)
            for row in self._rows.values()
            if row.owner_id == owner_id
            and (include_cancelled or row.is_active)
            and (status is None or row.status == status)
        ]
        return sorted(rows, key=lambda r: (r.event_timestamp_utc, r.created_at))

    async def recent_active(self, owner_id: str, limit: int) -> list[Reminder]:
        rows = [
            dataclasses.replace(row)
            for row in self._rows.values()
            if row.owner_id == owner_id and row.is_active
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]


class PostgresReminderStore(ReminderStore):
    """Reminder store over the ``reminders`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(self, reminder: Reminder) -> Reminder:
        placeholders = ", ".join(f"${idx}" for idx in range(1, len(_COLUMNS) + 1))
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO reminders ({", ".join(_COLUMNS)})
            VALUES ({placeholders})
            RETURNING *
            """,
            reminder.id,
            reminder.owner_id,
            reminder.source_journal_id,
            reminder.title,
            reminder.description,
            reminder.event_timestamp_utc,
            reminder.original_sentence,
            reminder.status.value,
            reminder.external_calendar_event_id,
            reminder.last_sync_error,
            reminder.created_at,
            reminder.updated_at,
        )
        return Reminder.from_row(dict(row))

    async def get(self, reminder_id: uuid.UUID) -> Reminder | None:
        row = await self._pool.fetchrow("SELECT * FROM reminders WHERE id = $1", reminder_id)
        if row is None:
            return None
        return Reminder.from_row(dict(row))

    async def save(self, reminder: Reminder) -> Reminder:
        row = await self._pool.fetchrow(
            """
            UPDATE reminders
            SET title = $2,
                description = $3,
                event_timestamp_utc = $4,
                status = $5,
                external_calendar_event_id = $6,
                last_sync_error = $7,
                updated_at = $8
            WHERE id = $1
            RETURNING *
            """,
            reminder.id,
            reminder.title,
            reminder.description,
            reminder.event_timestamp_utc,
            reminder.status.value,
            reminder.external_calendar_event_id,
            reminder.last_sync_error,
            reminder.updated_at,
        )
        if row is None:
            raise ReminderNotFoundError(reminder.id)
        return Reminder.from_row(dict(row))

    async def mark_synced(
        self,
        reminder_id: uuid.UUID,
        external_event_id: str,
        at: datetime,
    ) -> Reminder:
        row = await self._pool.fetchrow(
            """
            UPDATE reminders
            SET status = 'synced',
                external_calendar_event_id = $2,
                last_sync_error = NULL,
                updated_at = $3
            WHERE id = $1 AND status = 'confirmed'
            RETURNING *
            """,
            reminder_id,
            external_event_id,
            at,
        )
        if row is not None:
            return Reminder.from_row(dict(row))

        current = await self.get(reminder_id)
        if current is None:
            raise ReminderNotFoundError(reminder_id)
        raise InvalidTransitionError(
            f"Cannot transition from '{current.status.value}' to 'synced'"
        )

    async def record_sync_error(
        self,
        reminder_id: uuid.UUID,
        message: str,
        at: datetime,
    ) -> Reminder | None:
        row = await self._pool.fetchrow(
            """
            UPDATE reminders
            SET last_sync_error = $2,
                updated_at = $3
            WHERE id = $1 AND status = 'confirmed'
            RETURNING *
            """,
            reminder_id,
            message,
            at,
        )
        if row is None:
            return None
        return Reminder.from_row(dict(row))

    async def list_for_owner(
        self,
        owner_id: str,
        *,
        include_cancelled: bool = False,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        where = ["owner_id = $1"]
        args: list[object] = [owner_id]
        if not include_cancelled:
            where.append("status <> 'cancelled'")
        if status is not None:
            args.append(status.value)
            where.append(f"status = ${len(args)}")
        rows = await self._pool.fetch(
            f"""
            SELECT * FROM reminders
            WHERE {" AND ".join(where)}
            ORDER BY event_timestamp_utc ASC, created_at ASC
            """,
            *args,
        )
        return [Reminder.from_row(dict(row)) for row in rows]

    async def recent_active(self, owner_id: str, limit: int) -> list[Reminder]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM reminders
            WHERE owner_id = $1 AND status <> 'cancelled'
            ORDER BY created_at DESC
            LIMIT $2
            """,
            owner_id,
            limit,
        )
        return [Reminder.from_row(dict(row)) for row in rows]
