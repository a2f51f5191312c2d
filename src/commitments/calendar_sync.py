"""Calendar sync adapters with a provider-agnostic contract.

This module defines:
- ``CalendarEventRequest``: the event a reminder is mirrored as
- ``CalendarSyncAdapter``: adapter interface used by the lifecycle manager
- ``GoogleCalendarSyncAdapter``: Google Calendar v3 over httpx

The lifecycle manager only distinguishes success (an opaque external id) from
failure (a ``CalendarSyncError`` whose message it records).  It never
interprets provider-specific errors.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any, Literal
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from commitments.errors import (
    CalendarCredentialError,
    CalendarRequestError,
    CalendarSyncError,
    CalendarTokenRefreshError,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

DEFAULT_EVENT_DURATION_MINUTES = 60
DEFAULT_POPUP_LEAD_MINUTES = 30
DEFAULT_EMAIL_LEAD_MINUTES = 60

RATE_LIMIT_RETRY_STATUS_CODES = frozenset({429, 503})
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

_ALREADY_DELETED_STATUS_CODES = frozenset({404, 410})

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
# Tokens are refreshed this long before Google says they expire.
TOKEN_EXPIRY_MARGIN_SECONDS = 60

_MAX_ERROR_MESSAGE_LENGTH = 200


class EventNotification(BaseModel):
    """One reminder lead time attached to the external event."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: Literal["popup", "email"]
    minutes: int = Field(ge=0)


def default_notifications() -> list[EventNotification]:
    return [
        EventNotification(method="popup", minutes=DEFAULT_POPUP_LEAD_MINUTES),
        EventNotification(method="email", minutes=DEFAULT_EMAIL_LEAD_MINUTES),
    ]


class CalendarEventRequest(BaseModel):
    """Payload for mirroring a reminder into an external calendar."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    description: str = ""
    start_at: datetime
    duration_minutes: int = Field(default=DEFAULT_EVENT_DURATION_MINUTES, ge=1)
    notifications: list[EventNotification] = Field(default_factory=default_notifications)

    @field_validator("start_at")
    @classmethod
    def _normalize_start(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def end_at(self) -> datetime:
        return self.start_at + timedelta(minutes=self.duration_minutes)


class CalendarSyncAdapter(abc.ABC):
    """Adapter interface for external calendars."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def create_event(self, request: CalendarEventRequest) -> str:
        """Create an event and return its opaque external id."""
        ...

    @abc.abstractmethod
    async def delete_event(self, external_event_id: str) -> None:
        """Delete an event.  Deleting an already-deleted event succeeds."""
        ...

    async def shutdown(self) -> None:
        """Release adapter resources."""
        return None


_CREDENTIAL_FIELDS = ("client_id", "client_secret", "refresh_token")

# Google's downloaded client files nest the client id/secret under one of these.
_CLIENT_FILE_SECTIONS = ("installed", "web")


class GoogleOAuthCredentials(BaseModel):
    """Client id, secret and refresh token for the offline OAuth grant."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        """Parse a flat credential object or a Google client file plus refresh token."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON is not valid JSON: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise CalendarCredentialError("Credential JSON must be an object")

        merged: dict[str, Any] = {}
        for section in _CLIENT_FILE_SECTIONS:
            if isinstance(payload.get(section), dict):
                merged.update(payload[section])
        merged.update(payload)
        values = {key: merged.get(key) for key in _CREDENTIAL_FIELDS}

        missing = [key for key, value in values.items() if value is None]
        if missing:
            raise CalendarCredentialError(f"Credential JSON is missing: {', '.join(missing)}")
        blank = [
            key
            for key, value in values.items()
            if not isinstance(value, str) or not value.strip()
        ]
        if blank:
            raise CalendarCredentialError(
                f"Credential fields must be non-empty strings: {', '.join(blank)}"
            )
        return cls(**values)


_SECRET_KEYS = r"client_secret|refresh_token|access_token|token"
_SECRET_PATTERNS = (
    (re.compile(rf"(?i)\b({_SECRET_KEYS})\s*=\s*[^\s,;]+"), r"\1=[REDACTED]"),
    (
        re.compile(rf"""(?i)(["']?(?:{_SECRET_KEYS})["']?\s*:\s*)(["']).*?\2"""),
        r'\1"[REDACTED]"',
    ),
)


def sanitize_error_message(message: str) -> str:
    """Redact credentials, collapse whitespace, and truncate."""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return " ".join(message.split())[:_MAX_ERROR_MESSAGE_LENGTH]


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _google_error_text(response: httpx.Response) -> str:
    """Best human-readable reason from a Google error response."""
    error = _json_object(response).get("error")
    if isinstance(error, dict):
        error = error.get("message")
    if isinstance(error, str) and error.strip():
        return sanitize_error_message(error)
    return sanitize_error_message(response.text) or "empty error response"


def _raise_for_status(response: httpx.Response) -> None:
    if not _is_success(response):
        raise CalendarRequestError(
            status_code=response.status_code,
            message=_google_error_text(response),
        )


def _retry_delay(response: httpx.Response, attempt: int) -> float:
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            logger.debug("Ignoring non-numeric Retry-After header: %r", retry_after)
    return RATE_LIMIT_BASE_BACKOFF_SECONDS * 2**attempt


def _utc_rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_google_event_body(request: CalendarEventRequest) -> dict[str, Any]:
    """Translate a CalendarEventRequest into a Google Calendar API event body."""
    return {
        "summary": request.title,
        "description": request.description,
        "status": "confirmed",
        "start": {"dateTime": _utc_rfc3339(request.start_at), "timeZone": "UTC"},
        "end": {"dateTime": _utc_rfc3339(request.end_at), "timeZone": "UTC"},
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": notification.method, "minutes": notification.minutes}
                for notification in request.notifications
            ],
        },
    }


class _AccessTokenCache:
    """Holds the current access token until shortly before it expires."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._token: str | None = None
        self._expires_at = datetime.min.replace(tzinfo=UTC)
        self._lock = asyncio.Lock()

    async def token(self, *, refresh: bool = False) -> str:
        async with self._lock:
            if refresh or self._token is None or datetime.now(UTC) >= self._expires_at:
                token, lifetime_seconds = await self._grant()
                self._token = token
                self._expires_at = datetime.now(UTC) + timedelta(
                    seconds=max(lifetime_seconds - TOKEN_EXPIRY_MARGIN_SECONDS, 30)
                )
            return self._token

    async def _grant(self) -> tuple[str, int]:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(f"Token refresh request failed: {exc}") from exc

        if not _is_success(response):
            raise CalendarTokenRefreshError(
                f"Token refresh failed ({response.status_code}): {_google_error_text(response)}"
            )

        payload = _json_object(response)
        token = payload.get("access_token")
        if not isinstance(token, str) or not token.strip():
            raise CalendarTokenRefreshError("Token response has no access_token")

        expires_in = payload.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, int | float):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
        elif expires_in <= 0:
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
        return token.strip(), int(expires_in)


class GoogleCalendarSyncAdapter(CalendarSyncAdapter):
    """Google Calendar v3 adapter.

    A 401 triggers exactly one forced token refresh.  429 and 503 responses
    are retried up to ``RATE_LIMIT_MAX_RETRIES`` times, waiting for
    ``Retry-After`` when present and exponential backoff otherwise.
    """

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        *,
        calendar_id: str = "primary",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._events_url = (
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events"
        )
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._tokens = _AccessTokenCache(credentials, self._http_client)

    @property
    def name(self) -> str:
        return "google"

    async def _send_once(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None,
        *,
        refresh_token: bool = False,
    ) -> httpx.Response:
        token = await self._tokens.token(refresh=refresh_token)
        try:
            return await self._http_client.request(
                method,
                url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarSyncError(f"Google Calendar request failed: {exc}") from exc

    async def _send(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        response = await self._send_once(method, url, body)
        if response.status_code == 401:
            logger.debug("Calendar API rejected the access token; refreshing once")
            response = await self._send_once(method, url, body, refresh_token=True)

        for attempt in range(RATE_LIMIT_MAX_RETRIES):
            if response.status_code not in RATE_LIMIT_RETRY_STATUS_CODES:
                break
            delay = _retry_delay(response, attempt)
            logger.warning(
                "Calendar API returned %d, retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                delay,
                attempt + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(delay)
            response = await self._send_once(method, url, body)
        return response

    async def create_event(self, request: CalendarEventRequest) -> str:
        response = await self._send("POST", self._events_url, build_google_event_body(request))
        _raise_for_status(response)
        event_id = _json_object(response).get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise CalendarSyncError("Google Calendar response is missing an event id")
        return event_id

    async def delete_event(self, external_event_id: str) -> None:
        event_id = external_event_id.strip()
        if not event_id:
            raise ValueError("external_event_id must be a non-empty string")

        response = await self._send("DELETE", f"{self._events_url}/{quote(event_id, safe='')}")
        if response.status_code in _ALREADY_DELETED_STATUS_CODES:
            logger.debug("Event %s is already gone (HTTP %d)", event_id, response.status_code)
            return
        _raise_for_status(response)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
