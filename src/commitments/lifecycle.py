"""Reminder lifecycle manager — owns the reminder state machine.

State machine::

    proposed ──confirm──▶ confirmed ──sync──▶ synced
        │                     │                  │
        └──────cancel─────────┴──────cancel──────┴──▶ cancelled (terminal)

System-detected reminders are created directly in ``confirmed``; manually
proposed reminders start in ``proposed`` and need an explicit confirm.  A
failed sync leaves the reminder ``confirmed`` with ``last_sync_error`` set,
so the attempt can simply be retried.  Cancelling a ``synced`` reminder
issues a best-effort external delete that never blocks the local cancel.

``analyze_and_reconcile`` runs one journal-analysis pass: extractor and
history are fetched concurrently, every candidate is resolved against an
explicit reference instant, survivors are adjudicated against history and
against each other, NEW ones become reminders, and calendar sync runs for
each of them independently.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, tzinfo

from commitments.adjudicator import Adjudicator, SimilarityTitleMatcher
from commitments.calendar_sync import (
    DEFAULT_EVENT_DURATION_MINUTES,
    CalendarEventRequest,
    CalendarSyncAdapter,
    EventNotification,
    default_notifications,
    sanitize_error_message,
)
from commitments.config import CommitmentsConfig
from commitments.core.logging import set_owner_context
from commitments.core.telemetry import get_tracer, tag_owner_span
from commitments.errors import (
    AuthorizationError,
    CalendarSyncError,
    InvalidTransitionError,
    ReminderNotFoundError,
    SkipReason,
    UpstreamUnavailableError,
)
from commitments.extractor import CandidateExtractor
from commitments.history import HistoryProvider
from commitments.models import (
    CancelResult,
    CandidateEvent,
    DuplicateReport,
    HistorySnapshot,
    ReconcileResult,
    Reminder,
    ReminderStatus,
    ResolvedEvent,
    SyncOutcome,
)
from commitments.resolver import coerce_zone, evaluate
from commitments.store import ReminderStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Valid status transitions: source -> set of valid targets
_VALID_TRANSITIONS: dict[ReminderStatus, set[ReminderStatus]] = {
    ReminderStatus.PROPOSED: {ReminderStatus.CONFIRMED, ReminderStatus.CANCELLED},
    ReminderStatus.CONFIRMED: {ReminderStatus.SYNCED, ReminderStatus.CANCELLED},
    ReminderStatus.SYNCED: {ReminderStatus.CANCELLED},
    ReminderStatus.CANCELLED: set(),
}


def validate_transition(current: ReminderStatus, target: ReminderStatus) -> None:
    """Validate that a status transition is allowed.

    Raises InvalidTransitionError if the transition is not in the valid set.
    """
    valid = _VALID_TRANSITIONS.get(current, set())
    if target not in valid:
        raise InvalidTransitionError(
            f"Cannot transition from '{current.value}' to '{target.value}'"
        )


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class LifecycleSettings:
    """Timeouts and sync behaviour for the lifecycle manager."""

    extractor_timeout_seconds: float = 60.0
    history_timeout_seconds: float = 10.0
    sync_timeout_seconds: float = 30.0
    auto_sync: bool = True
    event_duration_minutes: int = DEFAULT_EVENT_DURATION_MINUTES
    notifications: list[EventNotification] = field(default_factory=default_notifications)

    @classmethod
    def from_config(cls, config: CommitmentsConfig) -> LifecycleSettings:
        return cls(
            extractor_timeout_seconds=config.extractor.timeout_seconds,
            history_timeout_seconds=config.history.timeout_seconds,
            sync_timeout_seconds=config.calendar.timeout_seconds,
            auto_sync=config.calendar.auto_sync,
            event_duration_minutes=config.calendar.event_duration_minutes,
            notifications=[
                EventNotification(method="popup", minutes=config.calendar.popup_minutes),
                EventNotification(method="email", minutes=config.calendar.email_minutes),
            ],
        )


class ReminderLifecycleManager:
    """Creates, confirms, syncs, and cancels reminders."""

    def __init__(
        self,
        store: ReminderStore,
        *,
        extractor: CandidateExtractor | None = None,
        history: HistoryProvider | None = None,
        sync_adapter: CalendarSyncAdapter | None = None,
        adjudicator: Adjudicator | None = None,
        tz: tzinfo | str = UTC,
        clock: Clock = _utc_now,
        settings: LifecycleSettings | None = None,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._history = history
        self._sync_adapter = sync_adapter
        self._tz = coerce_zone(tz)
        self._adjudicator = adjudicator or Adjudicator(SimilarityTitleMatcher(), tz=self._tz)
        self._clock = clock
        self._settings = settings or LifecycleSettings()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require(self, reminder_id: uuid.UUID) -> Reminder:
        reminder = await self._store.get(reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)
        return reminder

    @staticmethod
    def _check_owner(reminder: Reminder, owner_id: str) -> None:
        if reminder.owner_id != owner_id:
            logger.warning(
                "Ownership check failed for reminder %s (owner=%s)", reminder.id, owner_id
            )
            raise AuthorizationError(reminder.id, owner_id)

    def _start_of_today(self, now: datetime) -> datetime:
        local = now.astimezone(self._tz)
        return datetime.combine(local.date(), time.min, tzinfo=self._tz)

    def _event_request(self, reminder: Reminder) -> CalendarEventRequest:
        description = reminder.description
        if not description and reminder.original_sentence:
            description = f"From your journal:\n{reminder.original_sentence}"
        return CalendarEventRequest(
            title=reminder.title,
            description=description,
            start_at=reminder.event_timestamp_utc,
            duration_minutes=self._settings.event_duration_minutes,
            notifications=list(self._settings.notifications),
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_from_decision(
        self,
        event: ResolvedEvent,
        owner_id: str,
        source_journal_id: str | None,
    ) -> Reminder:
        """Persist a system-detected event as an auto-confirmed reminder."""
        if not event.valid:
            raise ValueError("Only valid resolved events can become reminders")
        now = self._clock()
        reminder = Reminder(
            id=uuid.uuid4(),
            owner_id=owner_id,
            source_journal_id=source_journal_id,
            title=event.title,
            description="",
            event_timestamp_utc=event.timestamp_utc,
            original_sentence=event.source_context,
            status=ReminderStatus.CONFIRMED,
            created_at=now,
            updated_at=now,
        )
        stored = await self._store.create(reminder)
        logger.info(
            "Created reminder %s '%s' at %s",
            stored.id,
            stored.title,
            stored.event_timestamp_utc.isoformat(),
        )
        return stored

    async def propose(
        self,
        owner_id: str,
        title: str,
        event_timestamp_utc: datetime,
        *,
        description: str = "",
        original_sentence: str = "",
        source_journal_id: str | None = None,
    ) -> Reminder:
        """Create a manually proposed reminder awaiting explicit confirmation."""
        normalized_title = " ".join(title.split())
        if not normalized_title:
            raise ValueError("title must be a non-empty string")
        if event_timestamp_utc.tzinfo is None:
            event_timestamp_utc = event_timestamp_utc.replace(tzinfo=UTC)
        now = self._clock()
        if event_timestamp_utc < self._start_of_today(now):
            raise ValueError("Cannot propose a reminder for a past date")

        reminder = Reminder(
            id=uuid.uuid4(),
            owner_id=owner_id,
            source_journal_id=source_journal_id,
            title=normalized_title,
            description=description.strip(),
            event_timestamp_utc=event_timestamp_utc.astimezone(UTC),
            original_sentence=original_sentence.strip(),
            status=ReminderStatus.PROPOSED,
            created_at=now,
            updated_at=now,
        )
        return await self._store.create(reminder)

    async def confirm(self, reminder_id: uuid.UUID, owner_id: str) -> Reminder:
        """Confirm a proposed reminder (ownership-checked)."""
        reminder = await self._require(reminder_id)
        self._check_owner(reminder, owner_id)
        validate_transition(reminder.status, ReminderStatus.CONFIRMED)
        reminder.status = ReminderStatus.CONFIRMED
        reminder.updated_at = self._clock()
        return await self._store.save(reminder)

    async def list_reminders(
        self,
        owner_id: str,
        *,
        include_cancelled: bool = False,
    ) -> list[Reminder]:
        """Return an owner's reminders ordered by event time."""
        return await self._store.list_for_owner(owner_id, include_cancelled=include_cancelled)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def attempt_sync(self, reminder: Reminder) -> SyncOutcome:
        """Mirror a confirmed reminder into the external calendar.

        Re-invoking on a synced reminder is a no-op.  Adapter failures and
        timeouts leave the reminder ``confirmed`` with the reason attached.
        """
        current = await self._require(reminder.id)

        if current.status == ReminderStatus.SYNCED:
            return SyncOutcome(
                reminder_id=current.id,
                success=True,
                external_event_id=current.external_calendar_event_id,
                message="already synced",
                skipped=True,
            )
        if self._sync_adapter is None:
            return SyncOutcome(
                reminder_id=current.id,
                success=False,
                message="calendar sync is not configured",
                skipped=True,
            )
        validate_transition(current.status, ReminderStatus.SYNCED)

        with get_tracer().start_as_current_span("commitments.sync") as span:
            span.set_attribute("commitments.reminder_id", str(current.id))
            span.set_attribute("commitments.provider", self._sync_adapter.name)
            try:
                external_id = await asyncio.wait_for(
                    self._sync_adapter.create_event(self._event_request(current)),
                    timeout=self._settings.sync_timeout_seconds,
                )
            except TimeoutError:
                return await self._record_sync_failure(
                    current,
                    f"calendar sync timed out after {self._settings.sync_timeout_seconds:g}s",
                )
            except CalendarSyncError as exc:
                return await self._record_sync_failure(current, sanitize_error_message(str(exc)))
            except Exception as exc:
                logger.error(
                    "Calendar adapter raised while syncing reminder %s", current.id, exc_info=True
                )
                return await self._record_sync_failure(
                    current, sanitize_error_message(f"{type(exc).__name__}: {exc}")
                )

            try:
                synced = await self._store.mark_synced(current.id, external_id, self._clock())
            except InvalidTransitionError:
                # Cancelled while the external create was in flight.
                logger.warning(
                    "Reminder %s changed state during sync; removing external event %s",
                    current.id,
                    external_id,
                )
                await self._delete_external(external_id)
                return SyncOutcome(
                    reminder_id=current.id,
                    success=False,
                    message="reminder changed state during sync",
                )

        logger.info("Synced reminder %s as external event %s", synced.id, external_id)
        return SyncOutcome(reminder_id=synced.id, success=True, external_event_id=external_id)

    async def _record_sync_failure(self, reminder: Reminder, message: str) -> SyncOutcome:
        logger.warning("Calendar sync failed for reminder %s: %s", reminder.id, message)
        updated = await self._store.record_sync_error(reminder.id, message, self._clock())
        if updated is None:
            logger.info(
                "Reminder %s left confirmed during sync; sync error not recorded", reminder.id
            )
        return SyncOutcome(reminder_id=reminder.id, success=False, message=message)

    async def _sync_all(self, reminders: list[Reminder]) -> list[SyncOutcome]:
        """Sync reminders independently; one failure never aborts the others."""
        results = await asyncio.gather(
            *(self.attempt_sync(reminder) for reminder in reminders),
            return_exceptions=True,
        )
        outcomes: list[SyncOutcome] = []
        for reminder, result in zip(reminders, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "Unexpected error syncing reminder %s", reminder.id, exc_info=result
                )
                outcomes.append(
                    SyncOutcome(
                        reminder_id=reminder.id,
                        success=False,
                        message=sanitize_error_message(f"{type(result).__name__}: {result}"),
                    )
                )
            else:
                outcomes.append(result)
        return outcomes

    async def sync_pending(self, owner_id: str) -> list[SyncOutcome]:
        """Retry sync for every confirmed reminder of *owner_id*."""
        pending = await self._store.list_for_owner(owner_id, status=ReminderStatus.CONFIRMED)
        if not pending:
            return []
        return await self._sync_all(pending)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def _delete_external(self, external_id: str) -> tuple[bool, str | None]:
        if self._sync_adapter is None:
            return False, "calendar sync is not configured; external event left in place"
        try:
            await asyncio.wait_for(
                self._sync_adapter.delete_event(external_id),
                timeout=self._settings.sync_timeout_seconds,
            )
        except TimeoutError:
            message = f"external delete timed out after {self._settings.sync_timeout_seconds:g}s"
        except CalendarSyncError as exc:
            message = sanitize_error_message(str(exc))
        except Exception as exc:
            logger.error(
                "Calendar adapter raised deleting external event %s", external_id, exc_info=True
            )
            message = sanitize_error_message(f"{type(exc).__name__}: {exc}")
        else:
            return True, None
        logger.warning("Best-effort delete of external event %s failed: %s", external_id, message)
        return False, message

    async def cancel(self, reminder: Reminder, owner_id: str) -> CancelResult:
        """Cancel a reminder; synced reminders also get a best-effort external delete."""
        current = await self._require(reminder.id)
        self._check_owner(current, owner_id)
        validate_transition(current.status, ReminderStatus.CANCELLED)

        external_id = (
            current.external_calendar_event_id
            if current.status == ReminderStatus.SYNCED
            else None
        )
        current.status = ReminderStatus.CANCELLED
        current.external_calendar_event_id = None
        current.updated_at = self._clock()
        cancelled = await self._store.save(current)
        logger.info("Cancelled reminder %s", cancelled.id)

        if external_id is None:
            return CancelResult(reminder=cancelled)

        deleted, message = await self._delete_external(external_id)
        return CancelResult(
            reminder=cancelled,
            external_delete_attempted=self._sync_adapter is not None,
            external_delete_ok=deleted,
            message=message,
        )

    async def cancel_reminder(self, reminder_id: uuid.UUID, owner_id: str) -> CancelResult:
        """Cancel by id (ownership-checked)."""
        reminder = await self._require(reminder_id)
        return await self.cancel(reminder, owner_id)

    # ------------------------------------------------------------------
    # Analysis pass
    # ------------------------------------------------------------------

    async def _extract(self, journal_text: str, reference_date: str) -> list[CandidateEvent]:
        assert self._extractor is not None
        try:
            return await asyncio.wait_for(
                self._extractor.extract(journal_text, reference_date),
                timeout=self._settings.extractor_timeout_seconds,
            )
        except TimeoutError as exc:
            raise UpstreamUnavailableError(
                "extractor",
                f"timed out after {self._settings.extractor_timeout_seconds:g}s",
            ) from exc

    async def _fetch_history(self, owner_id: str, journal_id: str | None) -> HistorySnapshot:
        assert self._history is not None
        try:
            return await asyncio.wait_for(
                self._history.history(owner_id, journal_id),
                timeout=self._settings.history_timeout_seconds,
            )
        except TimeoutError as exc:
            raise UpstreamUnavailableError(
                "history",
                f"timed out after {self._settings.history_timeout_seconds:g}s",
            ) from exc

    async def analyze_and_reconcile(
        self,
        journal_text: str,
        owner_id: str,
        journal_id: str | None,
        *,
        reference_now: datetime | None = None,
    ) -> ReconcileResult:
        """Run one journal-analysis pass and report per-candidate outcomes.

        The duplicate check covers every active reminder the history provider
        returns, including ones created by earlier passes over this same
        journal.  Candidates of the current pass are only checked against
        each other, since none of them exist yet.
        """
        if self._extractor is None or self._history is None:
            raise RuntimeError("analyze_and_reconcile requires an extractor and a history provider")

        now = reference_now or self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        reference_date = now.astimezone(self._tz).date().isoformat()
        set_owner_context(owner_id)

        with get_tracer().start_as_current_span("commitments.analyze") as span:
            tag_owner_span(span, owner_id)
            if journal_id is not None:
                span.set_attribute("commitments.journal_id", journal_id)

            extracted, fetched = await asyncio.gather(
                self._extract(journal_text, reference_date),
                self._fetch_history(owner_id, journal_id),
                return_exceptions=True,
            )
            for outcome in (extracted, fetched):
                if isinstance(outcome, UpstreamUnavailableError):
                    logger.warning("Analysis pass offline: %s", outcome)
                    span.set_attribute("commitments.status", "offline")
                    return ReconcileResult(status="offline", upstream_error=str(outcome))
                if isinstance(outcome, BaseException):
                    raise outcome
            assert isinstance(extracted, list)
            assert isinstance(fetched, HistorySnapshot)

            result = ReconcileResult()
            resolved: list[ResolvedEvent] = []
            for candidate in extracted:
                event = evaluate(candidate, now, tz=self._tz)
                if event is None:
                    result.skipped_as_unparseable += 1
                    logger.debug(
                        "Dropped unparseable candidate '%s' (%r)",
                        candidate.title,
                        candidate.raw_date_expression,
                        extra={"skip_reason": SkipReason.PARSE_FAILURE},
                    )
                elif not event.valid:
                    result.skipped_as_past += 1
                    logger.debug(
                        "Dropped past candidate '%s'",
                        candidate.title,
                        extra={"skip_reason": event.rejection or SkipReason.PAST_EVENT},
                    )
                else:
                    resolved.append(event)

            verdicts = self._adjudicator.adjudicate_batch(resolved, fetched.existing_reminders)
            for event, verdict in zip(resolved, verdicts, strict=True):
                if verdict.is_duplicate:
                    result.skipped_as_duplicate += 1
                    logger.debug(
                        "Dropped duplicate candidate '%s' (matches reminder %s)",
                        event.title,
                        verdict.matched_reminder_id,
                        extra={"skip_reason": SkipReason.DUPLICATE},
                    )
                    result.duplicates.append(
                        DuplicateReport(
                            title=event.title,
                            event_date=self._adjudicator.calendar_date(event.timestamp_utc),
                            matched_reminder_id=verdict.matched_reminder_id,
                        )
                    )
                    continue
                result.created_reminders.append(
                    await self.create_from_decision(event, owner_id, journal_id)
                )

            if result.created_reminders and self._sync_adapter and self._settings.auto_sync:
                result.sync_outcomes = await self._sync_all(result.created_reminders)
                refreshed = [await self._store.get(r.id) for r in result.created_reminders]
                result.created_reminders = [
                    fresh or original
                    for fresh, original in zip(refreshed, result.created_reminders, strict=True)
                ]

            span.set_attribute("commitments.status", result.status)
            span.set_attribute("commitments.created", len(result.created_reminders))
            logger.info(
                "Analysis pass for journal %s: %d candidate(s), %d created, "
                "%d duplicate, %d past, %d unparseable, %d sync failure(s)",
                journal_id,
                len(extracted),
                len(result.created_reminders),
                result.skipped_as_duplicate,
                result.skipped_as_past,
                result.skipped_as_unparseable,
                len(result.sync_failures),
            )
            return result


