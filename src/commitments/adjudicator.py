"""Duplicate/relevance adjudication for resolved events.

Two events denote the same occurrence when their calendar dates (in the
reference timezone) are equal and their titles are equivalent.  Time of day
is deliberately ignored: a 9am mention and a 3pm mention on the same date are
the same appointment.  A DUPLICATE verdict only suppresses creation; it never
touches the stored reminder.

Title equivalence is pluggable: any ``(str, str) -> bool`` callable works.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, tzinfo
from difflib import SequenceMatcher
from typing import Protocol

from commitments.models import Adjudication, Decision, ResolvedEvent

logger = logging.getLogger(__name__)

TitleMatcher = Callable[[str, str], bool]

DEFAULT_SIMILARITY_THRESHOLD = 0.85

_NON_WORD_RE = re.compile(r"[^\w\s]")
_STOP_WORDS = frozenset(
    {
        "a",
        "an",
        "the",
        "my",
        "our",
        "with",
        "for",
        "to",
        "at",
        "on",
        "of",
        "and",
        "s",
    }
)
# Nouns that describe the kind of commitment rather than which one it is.
_GENERIC_EVENT_WORDS = frozenset(
    {
        "appointment",
        "appt",
        "meeting",
        "event",
        "session",
        "deadline",
        "reminder",
        "due",
    }
)


class ExistingReminder(Protocol):
    """The reminder fields the adjudicator reads."""

    id: uuid.UUID
    title: str
    event_timestamp_utc: datetime

    @property
    def is_active(self) -> bool: ...


def normalize_title(title: str) -> str:
    """Lowercase, strip punctuation, and collapse whitespace."""
    return " ".join(_NON_WORD_RE.sub(" ", title.lower()).split())


def _core_tokens(normalized: str) -> frozenset[str]:
    return frozenset(
        token
        for token in normalized.split()
        if token not in _STOP_WORDS and token not in _GENERIC_EVENT_WORDS
    )


class SimilarityTitleMatcher:
    """String-heuristic title equivalence.

    Titles are equivalent when, after normalisation, they are equal, their
    similarity ratio reaches ``threshold``, or they share exactly the same
    distinctive tokens once stop words and generic event nouns are dropped
    ("Dentist" vs "Dentist appointment").  A title that merely adds a
    qualifier ("Exam" vs "Physics exam") is a different commitment.
    """

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD) -> None:
        if not 0.0 < threshold <= 1.0:
            raise ValueError("threshold must be in (0, 1]")
        self.threshold = threshold

    def __call__(self, left: str, right: str) -> bool:
        a = normalize_title(left)
        b = normalize_title(right)
        if not a or not b:
            return False
        if a == b:
            return True
        if SequenceMatcher(None, a, b).ratio() >= self.threshold:
            return True
        core_a = _core_tokens(a)
        core_b = _core_tokens(b)
        if not core_a or not core_b:
            return False
        return core_a == core_b


def exact_title_matcher(left: str, right: str) -> bool:
    """Case-insensitive exact title equivalence."""
    return normalize_title(left) == normalize_title(right)


class Adjudicator:
    """Classifies resolved events as NEW or DUPLICATE."""

    def __init__(
        self,
        title_matcher: TitleMatcher | None = None,
        *,
        tz: tzinfo = UTC,
    ) -> None:
        self._titles_match = title_matcher or SimilarityTitleMatcher()
        self._tz = tz

    def calendar_date(self, instant: datetime) -> date:
        """Return the calendar date of *instant* in the reference timezone."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=UTC)
        return instant.astimezone(self._tz).date()

    def same_occurrence(
        self,
        left_title: str,
        left_at: datetime,
        right_title: str,
        right_at: datetime,
    ) -> bool:
        if self.calendar_date(left_at) != self.calendar_date(right_at):
            return False
        return self._titles_match(left_title, right_title)

    def adjudicate(
        self,
        event: ResolvedEvent,
        existing_reminders: Sequence[ExistingReminder],
    ) -> Adjudication:
        """Compare *event* against stored reminders; cancelled ones never match."""
        for reminder in existing_reminders:
            if not reminder.is_active:
                continue
            if self.same_occurrence(
                event.title,
                event.timestamp_utc,
                reminder.title,
                reminder.event_timestamp_utc,
            ):
                logger.debug(
                    "'%s' duplicates reminder %s ('%s')",
                    event.title,
                    reminder.id,
                    reminder.title,
                )
                return Adjudication(Decision.DUPLICATE, matched_reminder_id=reminder.id)
        return Adjudication(Decision.NEW)

    def adjudicate_batch(
        self,
        events: Sequence[ResolvedEvent],
        existing_reminders: Sequence[ExistingReminder],
    ) -> list[Adjudication]:
        """Adjudicate a pass's events against history, then against each other.

        Only events already judged NEW in this batch count as batch-internal
        matches, so the first mention of an occurrence always wins.
        """
        verdicts: list[Adjudication] = []
        accepted: list[int] = []
        for index, event in enumerate(events):
            verdict = self.adjudicate(event, existing_reminders)
            if not verdict.is_duplicate:
                for earlier in accepted:
                    other = events[earlier]
                    if self.same_occurrence(
                        event.title,
                        event.timestamp_utc,
                        other.title,
                        other.timestamp_utc,
                    ):
                        verdict = Adjudication(Decision.DUPLICATE, matched_batch_index=earlier)
                        break
            if not verdict.is_duplicate:
                accepted.append(index)
            verdicts.append(verdict)
        return verdicts
