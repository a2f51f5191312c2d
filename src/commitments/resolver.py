"""Temporal resolver: natural-language date/time mentions to absolute instants.

Pure and deterministic.  "Now" is always the explicit ``reference_now``
argument; nothing in this module reads the clock.  All calendar arithmetic
happens in one fixed reference timezone and results are returned in UTC.

Date rules, first match wins:

1. Relative tokens: ``today``, ``tomorrow``, ``day after tomorrow``,
   ``next week``, ``next <weekday>``, ``in N days`` / ``in N weeks``.
2. Explicit dates: ``November 19``, ``19th of Nov``, ``Dec 15, 2026``,
   ``2026-12-15``.  Without a year, a date that already passed this year
   rolls forward one year.
3. Day-only ordinals: ``on the 19th``.  The current month is used unless
   the day already passed, in which case the following month is used.
4. A time embedded in the date expression (``tomorrow at 10am``) is only
   honoured alongside ``today``/``tomorrow`` tokens.

Times default to 09:00 when missing or unparseable.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from commitments.errors import SkipReason
from commitments.models import CandidateEvent, ResolvedEvent

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TIME = time(9, 0)

_MONTH_NAMES = (
    "january",
    "february",
    "march",
    "april",
    "may",
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
)
_WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)
_NUMBER_WORDS = {
    "a": 1,
    "an": 1,
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
}

_TODAY_RE = re.compile(r"\btoday\b")
_DAY_AFTER_TOMORROW_RE = re.compile(r"\bday\s+after\s+tomorrow\b")
_TOMORROW_RE = re.compile(r"\btomorrow\b")
_NEXT_WEEK_RE = re.compile(r"\bnext\s+week\b")
_NEXT_WEEKDAY_RE = re.compile(r"\bnext\s+(?P<weekday>[a-z]{3,9})\b")
_IN_N_RE = re.compile(r"\bin\s+(?P<count>\d{1,3}|[a-z]+)\s+(?P<unit>days?|weeks?)\b")

_ORDINAL = r"(?:st|nd|rd|th)?"
_YEAR = r"(?:,?\s+(?P<year>\d{4}))?"
_MONTH_DAY_RE = re.compile(rf"\b(?P<month>[a-z]{{3,9}})\.?\s+(?P<day>\d{{1,2}}){_ORDINAL}\b{_YEAR}")
_DAY_MONTH_RE = re.compile(
    rf"\b(?P<day>\d{{1,2}}){_ORDINAL}\s+(?:of\s+)?(?P<month>[a-z]{{3,9}})\b\.?{_YEAR}"
)
_ISO_DATE_RE = re.compile(r"\b(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})\b")
_DAY_ONLY_RE = re.compile(r"\b(?:on\s+)?(?:the\s+)?(?P<day>\d{1,2})(?:st|nd|rd|th)\b")

_TIME_RE = re.compile(
    r"(?P<at>\bat\s+)?(?<![\d:.])(?P<hour>\d{1,2})(?:[:.](?P<minute>\d{2}))?"
    r"\s*(?P<meridiem>[ap]\.?m\b\.?)?(?![\d])"
)
_NOON_RE = re.compile(r"\b(?:noon|midday)\b")
_MIDNIGHT_RE = re.compile(r"\bmidnight\b")
_PM_HINT_RE = re.compile(r"\b(?:afternoon|evening|tonight)\b")
_AM_HINT_RE = re.compile(r"\bmorning\b")


def coerce_zone(name: str | tzinfo | None) -> tzinfo:
    """Return a tzinfo for *name*, defaulting to UTC."""
    if name is None:
        return UTC
    if isinstance(name, tzinfo):
        return name
    normalized = name.strip()
    if not normalized or normalized.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(normalized)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc


def match_month(token: str) -> int | None:
    """Return the 1-based month for a full name or prefix of at least three letters."""
    normalized = token.strip().lower().rstrip(".")
    if len(normalized) < 3:
        return None
    for index, name in enumerate(_MONTH_NAMES, start=1):
        if name.startswith(normalized):
            return index
    return None


def match_weekday(token: str) -> int | None:
    """Return the Monday-based weekday index for a full name or 3+ letter prefix."""
    normalized = token.strip().lower()
    if len(normalized) < 3:
        return None
    if normalized in {"tues", "thur", "thurs"}:
        normalized = normalized[:3]
    for index, name in enumerate(_WEEKDAY_NAMES):
        if name.startswith(normalized):
            return index
    return None


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _parse_count(token: str) -> int | None:
    if token.isdigit():
        return int(token)
    return _NUMBER_WORDS.get(token)


def _resolve_relative(text: str, today: date) -> tuple[date, bool] | None:
    """Rule 1.  Returns (date, embedded_time_allowed) or None when no token matches."""
    if _TODAY_RE.search(text):
        return today, True
    if _DAY_AFTER_TOMORROW_RE.search(text):
        return today + timedelta(days=2), True
    if _TOMORROW_RE.search(text):
        return today + timedelta(days=1), True
    if _NEXT_WEEK_RE.search(text):
        return today + timedelta(days=7), False

    for match in _NEXT_WEEKDAY_RE.finditer(text):
        weekday = match_weekday(match.group("weekday"))
        if weekday is None:
            continue
        offset = weekday - today.weekday()
        if offset <= 0:
            offset += 7
        return today + timedelta(days=offset), False

    match = _IN_N_RE.search(text)
    if match is not None:
        count = _parse_count(match.group("count"))
        if count is not None:
            days = count * 7 if match.group("unit").startswith("week") else count
            return today + timedelta(days=days), False
    return None


class _Unparseable(Exception):
    """A date token was recognised but does not denote a real date."""


def _resolve_explicit(text: str, today: date) -> date | None:
    """Rule 2.  Raises _Unparseable for a recognised but impossible date."""
    iso = _ISO_DATE_RE.search(text)
    if iso is not None:
        resolved = _safe_date(int(iso.group("year")), int(iso.group("month")), int(iso.group("day")))
        if resolved is None:
            raise _Unparseable(iso.group(0))
        return resolved

    for pattern in (_MONTH_DAY_RE, _DAY_MONTH_RE):
        for match in pattern.finditer(text):
            month = match_month(match.group("month"))
            if month is None:
                continue
            day = int(match.group("day"))
            if not 1 <= day <= 31:
                raise _Unparseable(match.group(0))
            year_token = match.group("year")
            year = int(year_token) if year_token else today.year
            resolved = _safe_date(year, month, day)
            if resolved is None:
                raise _Unparseable(match.group(0))
            if year_token is None and resolved < today:
                resolved = _safe_date(year + 1, month, day)
                if resolved is None:
                    raise _Unparseable(match.group(0))
            return resolved
    return None


def _resolve_day_only(text: str, today: date) -> date | None:
    """Rule 3.  Raises _Unparseable when the day does not exist in the target month."""
    match = _DAY_ONLY_RE.search(text)
    if match is None:
        return None
    day = int(match.group("day"))
    if not 1 <= day <= 31:
        raise _Unparseable(match.group(0))
    anchor = today.replace(day=1)
    if day < today.day:
        anchor = anchor + relativedelta(months=1)
    resolved = _safe_date(anchor.year, anchor.month, day)
    if resolved is None:
        raise _Unparseable(match.group(0))
    return resolved


def resolve_date(expression: str, today: date) -> tuple[date, bool] | None:
    """Resolve a date expression relative to *today*.

    Returns ``(date, embedded_time_allowed)`` or ``None`` when the
    expression cannot be parsed.
    """
    text = " ".join(expression.lower().split())
    if not text:
        return None

    relative = _resolve_relative(text, today)
    if relative is not None:
        return relative

    try:
        explicit = _resolve_explicit(text, today)
        if explicit is not None:
            return explicit, False
        day_only = _resolve_day_only(text, today)
    except _Unparseable as exc:
        logger.debug("Unparseable date token %r in %r", str(exc), expression)
        return None
    if day_only is not None:
        return day_only, False
    return None


def _build_time(hour: int, minute: int, meridiem: str | None) -> time | None:
    if minute > 59:
        return None
    if meridiem is not None:
        if not 1 <= hour <= 12:
            return None
        if meridiem == "p" and hour != 12:
            hour += 12
        elif meridiem == "a" and hour == 12:
            hour = 0
    if hour > 23:
        return None
    return time(hour, minute)


def parse_time(expression: str, *, embedded: bool = False) -> time | None:
    """Parse a time of day, or return None when nothing usable is found.

    With ``embedded=True`` (a time inside a date expression) a bare number is
    not enough: a meridiem, ``HH:MM`` form, or an ``at`` prefix is required.
    """
    text = " ".join(expression.lower().split())
    if not text:
        return None
    if _NOON_RE.search(text):
        return time(12, 0)
    if _MIDNIGHT_RE.search(text):
        return time(0, 0)

    for match in _TIME_RE.finditer(text):
        minute_token = match.group("minute")
        meridiem_token = match.group("meridiem")
        if embedded and not (meridiem_token or minute_token or match.group("at")):
            continue
        meridiem = meridiem_token[0] if meridiem_token else None
        hour = int(match.group("hour"))
        if meridiem is None and hour < 12:
            if _PM_HINT_RE.search(text):
                meridiem = "p"
            elif _AM_HINT_RE.search(text):
                meridiem = "a"
        return _build_time(hour, int(minute_token) if minute_token else 0, meridiem)
    return None


def evaluate(
    candidate: CandidateEvent,
    reference_now: datetime,
    *,
    tz: tzinfo = UTC,
) -> ResolvedEvent | None:
    """Resolve *candidate*, keeping past results so callers can count them.

    Returns ``None`` for unparseable dates, a ``ResolvedEvent`` with
    ``valid=False`` for dates before the start of ``reference_now``'s day,
    and a valid ``ResolvedEvent`` otherwise.
    """
    if reference_now.tzinfo is None:
        reference_now = reference_now.replace(tzinfo=UTC)
    local_now = reference_now.astimezone(tz)
    today = local_now.date()

    resolved = resolve_date(candidate.raw_date_expression, today)
    if resolved is None:
        return None
    event_date, embedded_time_allowed = resolved

    time_of_day: time | None = None
    if candidate.raw_time_expression:
        time_of_day = parse_time(candidate.raw_time_expression)
    elif embedded_time_allowed:
        time_of_day = parse_time(candidate.raw_date_expression, embedded=True)
    if time_of_day is None:
        time_of_day = DEFAULT_EVENT_TIME

    local_event = datetime.combine(event_date, time_of_day, tzinfo=tz)
    day_start = datetime.combine(today, time.min, tzinfo=tz)
    timestamp_utc = local_event.astimezone(UTC)

    if local_event < day_start:
        return ResolvedEvent(
            title=candidate.title,
            timestamp_utc=timestamp_utc,
            source_context=candidate.context_sentence,
            valid=False,
            rejection=SkipReason.PAST_EVENT,
        )
    return ResolvedEvent(
        title=candidate.title,
        timestamp_utc=timestamp_utc,
        source_context=candidate.context_sentence,
    )


def resolve(
    candidate: CandidateEvent,
    reference_now: datetime,
    *,
    tz: tzinfo = UTC,
) -> ResolvedEvent | None:
    """Resolve *candidate* to a valid event, or None when unparseable or past."""
    event = evaluate(candidate, reference_now, tz=tz)
    if event is None or not event.valid:
        return None
    return event
