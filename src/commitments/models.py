"""Data models for candidates, resolved events, reminders, and pass results.

``CandidateEvent`` is a pydantic model because it carries untrusted extractor
output.  ``Reminder`` is a dataclass that maps 1:1 to the ``reminders``
database table and includes JSON serialisation helpers for CLI output and
database round-tripping.
"""

from __future__ import annotations

import enum
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from commitments.errors import SkipReason


class ReminderStatus(enum.StrEnum):
    """Valid statuses for a reminder."""

    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    SYNCED = "synced"
    CANCELLED = "cancelled"


class Decision(enum.StrEnum):
    """Adjudicator verdict for a resolved event."""

    NEW = "new"
    DUPLICATE = "duplicate"


class CandidateEvent(BaseModel):
    """Raw, unresolved mention of a possible event, as emitted by an extractor."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    title: str = Field(min_length=1)
    raw_date_expression: str = Field(min_length=1)
    raw_time_expression: str | None = None
    context_sentence: str = ""

    @field_validator("title", "raw_date_expression")
    @classmethod
    def _normalize_required(cls, value: str) -> str:
        normalized = " ".join(value.split())
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator("raw_time_expression")
    @classmethod
    def _normalize_time(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized or normalized.lower() in {"null", "none"}:
            return None
        return normalized

    @field_validator("context_sentence", mode="before")
    @classmethod
    def _normalize_context(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()


@dataclass(frozen=True)
class ResolvedEvent:
    """A candidate after deterministic date/time normalisation."""

    title: str
    timestamp_utc: datetime
    source_context: str
    valid: bool = True
    rejection: SkipReason | None = None


def _parse_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _parse_datetime(value: Any) -> datetime:
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_optional_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return _parse_datetime(value)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


@dataclass
class Reminder:
    """The persistent, owner-scoped record tracking one commitment.

    Maps 1:1 to the ``reminders`` database table.
    ``external_calendar_event_id`` is set if and only if ``status`` is
    ``synced``.
    """

    id: uuid.UUID
    owner_id: str
    title: str
    event_timestamp_utc: datetime
    status: ReminderStatus
    created_at: datetime
    description: str = ""
    original_sentence: str = ""
    source_journal_id: str | None = None
    external_calendar_event_id: str | None = None
    last_sync_error: str | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status != ReminderStatus.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "owner_id": self.owner_id,
            "source_journal_id": self.source_journal_id,
            "title": self.title,
            "description": self.description,
            "event_timestamp_utc": self.event_timestamp_utc.isoformat(),
            "original_sentence": self.original_sentence,
            "status": self.status.value,
            "external_calendar_event_id": self.external_calendar_event_id,
            "last_sync_error": self.last_sync_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Reminder:
        """Build a Reminder from a database row or a ``to_dict()`` payload."""
        return cls(
            id=_parse_uuid(row["id"]),
            owner_id=str(row["owner_id"]),
            source_journal_id=_optional_str(row.get("source_journal_id")),
            title=row["title"],
            description=row.get("description") or "",
            event_timestamp_utc=_parse_datetime(row["event_timestamp_utc"]),
            original_sentence=row.get("original_sentence") or "",
            status=ReminderStatus(row["status"]),
            external_calendar_event_id=row.get("external_calendar_event_id"),
            last_sync_error=row.get("last_sync_error"),
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_optional_datetime(row.get("updated_at")),
        )


@dataclass(frozen=True)
class JournalExcerpt:
    """A recent journal entry supplied by the history provider."""

    content: str
    date: date


@dataclass(frozen=True)
class HistorySnapshot:
    """Point-in-time view of an owner's recent journals and active reminders."""

    recent_journals: list[JournalExcerpt] = field(default_factory=list)
    existing_reminders: list[Reminder] = field(default_factory=list)


@dataclass(frozen=True)
class Adjudication:
    """Adjudicator verdict.

    ``matched_reminder_id`` is set for duplicates of a stored reminder;
    ``matched_batch_index`` is set for duplicates of an earlier candidate in
    the same pass.
    """

    decision: Decision
    matched_reminder_id: uuid.UUID | None = None
    matched_batch_index: int | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.decision == Decision.DUPLICATE


@dataclass(frozen=True)
class DuplicateReport:
    """A candidate dropped as a duplicate, reported back for transparency."""

    title: str
    event_date: date
    matched_reminder_id: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "event_date": self.event_date.isoformat(),
            "matched_reminder_id": (
                str(self.matched_reminder_id) if self.matched_reminder_id else None
            ),
        }


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one calendar sync attempt."""

    reminder_id: uuid.UUID
    success: bool
    external_event_id: str | None = None
    message: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "reminder_id": str(self.reminder_id),
            "success": self.success,
            "external_event_id": self.external_event_id,
            "message": self.message,
            "skipped": self.skipped,
        }


PassStatus = Literal["ok", "offline"]


@dataclass
class ReconcileResult:
    """Outcome of one journal-analysis pass.

    ``status == "offline"`` means the extractor or history provider could not
    be reached; it is distinct from an ``ok`` pass that found nothing.
    """

    status: PassStatus = "ok"
    created_reminders: list[Reminder] = field(default_factory=list)
    skipped_as_duplicate: int = 0
    skipped_as_past: int = 0
    skipped_as_unparseable: int = 0
    duplicates: list[DuplicateReport] = field(default_factory=list)
    sync_outcomes: list[SyncOutcome] = field(default_factory=list)
    upstream_error: str | None = None

    @property
    def sync_failures(self) -> list[SyncOutcome]:
        return [o for o in self.sync_outcomes if not o.success and not o.skipped]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "created_reminders": [r.to_dict() for r in self.created_reminders],
            "skipped_as_duplicate": self.skipped_as_duplicate,
            "skipped_as_past": self.skipped_as_past,
            "skipped_as_unparseable": self.skipped_as_unparseable,
            "duplicates": [d.to_dict() for d in self.duplicates],
            "sync_outcomes": [o.to_dict() for o in self.sync_outcomes],
            "upstream_error": self.upstream_error,
        }


@dataclass(frozen=True)
class CancelResult:
    """Outcome of a cancellation, including the best-effort external delete."""

    reminder: Reminder
    external_delete_attempted: bool = False
    external_delete_ok: bool | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reminder": self.reminder.to_dict(),
            "external_delete_attempted": self.external_delete_attempted,
            "external_delete_ok": self.external_delete_ok,
            "message": self.message,
        }
