"""Unit tests for GoogleCalendarSyncAdapter and its helpers.

Covers:
- Event body: UTC start/end, fixed duration, popup + email overrides
- Bearer token sent; calendar_id URL-encoded
- One forced token refresh on 401
- Backoff on 429 honouring Retry-After
- Non-2xx raises CalendarRequestError; missing id raises CalendarSyncError
- DELETE treats 404/410 as success
- Credential JSON parsing and error message redaction
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from commitments.calendar_sync import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    CalendarEventRequest,
    EventNotification,
    GoogleCalendarSyncAdapter,
    GoogleOAuthCredentials,
    build_google_event_body,
    sanitize_error_message,
)
from commitments.errors import (
    CalendarCredentialError,
    CalendarRequestError,
    CalendarSyncError,
    CalendarTokenRefreshError,
)

pytestmark = pytest.mark.unit

EVENTS_URL = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _credentials() -> GoogleOAuthCredentials:
    return GoogleOAuthCredentials(
        client_id="client-id",
        client_secret="client-secret",
        refresh_token="refresh-token",
    )


def _mock_response(
    *,
    status_code: int,
    url: str,
    method: str = "GET",
    json_body: dict | None = None,
    text: str = "",
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    request = httpx.Request(method, url)
    if json_body is not None:
        return httpx.Response(
            status_code=status_code, json=json_body, request=request, headers=headers
        )
    return httpx.Response(status_code=status_code, text=text, request=request, headers=headers)


def _make_mock_http_client() -> MagicMock:
    """Return a mock httpx.AsyncClient pre-wired with a valid OAuth token response."""
    mock_client = MagicMock(spec=httpx.AsyncClient)
    token_response = MagicMock()
    token_response.status_code = 200
    token_response.json.return_value = {"access_token": "access-token", "expires_in": 3600}
    mock_client.post = AsyncMock(return_value=token_response)
    return mock_client


def _request() -> CalendarEventRequest:
    return CalendarEventRequest(
        title="Dentist",
        description="From your journal:\nDentist at 2pm.",
        start_at=datetime(2025, 11, 19, 14, 0, tzinfo=UTC),
    )


# ---------------------------------------------------------------------------
# Event body
# ---------------------------------------------------------------------------


class TestBuildGoogleEventBody:
    def test_default_body(self) -> None:
        body = build_google_event_body(_request())

        assert body["summary"] == "Dentist"
        assert body["description"] == "From your journal:\nDentist at 2pm."
        assert body["start"] == {"dateTime": "2025-11-19T14:00:00Z", "timeZone": "UTC"}
        assert body["end"] == {"dateTime": "2025-11-19T15:00:00Z", "timeZone": "UTC"}
        assert body["reminders"] == {
            "useDefault": False,
            "overrides": [
                {"method": "popup", "minutes": 30},
                {"method": "email", "minutes": 60},
            ],
        }

    def test_naive_start_is_treated_as_utc(self) -> None:
        request = CalendarEventRequest(title="Gym", start_at=datetime(2025, 11, 20, 7, 30))
        assert build_google_event_body(request)["start"]["dateTime"] == "2025-11-20T07:30:00Z"

    def test_custom_duration_and_notifications(self) -> None:
        request = CalendarEventRequest(
            title="Gym",
            start_at=datetime(2025, 11, 20, 7, 30, tzinfo=UTC),
            duration_minutes=90,
            notifications=[EventNotification(method="popup", minutes=10)],
        )
        body = build_google_event_body(request)
        assert body["end"]["dateTime"] == "2025-11-20T09:00:00Z"
        assert body["reminders"]["overrides"] == [{"method": "popup", "minutes": 10}]


# ---------------------------------------------------------------------------
# create_event
# ---------------------------------------------------------------------------


class TestCreateEvent:
    async def test_returns_external_id(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=200, url=EVENTS_URL, method="POST", json_body={"id": "evt-abc"}
            )
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        assert await adapter.create_event(_request()) == "evt-abc"

        call = mock_client.request.call_args
        assert call.args == ("POST", EVENTS_URL)
        assert call.kwargs["headers"]["Authorization"] == "Bearer access-token"
        assert call.kwargs["json"]["summary"] == "Dentist"
        token_call = mock_client.post.call_args
        assert token_call.args[0] == GOOGLE_OAUTH_TOKEN_URL
        assert token_call.kwargs["data"]["grant_type"] == "refresh_token"

    async def test_calendar_id_is_url_encoded(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=200, url=EVENTS_URL, method="POST", json_body={"id": "evt-abc"}
            )
        )
        adapter = GoogleCalendarSyncAdapter(
            _credentials(), calendar_id="team@example.com", http_client=mock_client
        )

        await adapter.create_event(_request())

        url = mock_client.request.call_args.args[1]
        assert url == f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/team%40example.com/events"

    async def test_access_token_is_cached(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=200, url=EVENTS_URL, method="POST", json_body={"id": "evt-abc"}
            )
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        await adapter.create_event(_request())
        await adapter.create_event(_request())

        assert mock_client.post.await_count == 1

    async def test_non_2xx_raises_request_error(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=400,
                url=EVENTS_URL,
                method="POST",
                json_body={"error": {"message": "Invalid start time"}},
            )
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        with pytest.raises(CalendarRequestError) as exc_info:
            await adapter.create_event(_request())

        assert exc_info.value.status_code == 400
        assert "Invalid start time" in str(exc_info.value)

    async def test_missing_event_id_raises(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=200, url=EVENTS_URL, method="POST", json_body={"status": "ok"}
            )
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        with pytest.raises(CalendarSyncError, match="missing an event id"):
            await adapter.create_event(_request())

    async def test_transport_error_raises_sync_error(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(side_effect=httpx.ConnectError("boom"))
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        with pytest.raises(CalendarSyncError, match="request failed"):
            await adapter.create_event(_request())

    async def test_401_forces_one_token_refresh(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            side_effect=[
                _mock_response(status_code=401, url=EVENTS_URL, method="POST", text="expired"),
                _mock_response(
                    status_code=200, url=EVENTS_URL, method="POST", json_body={"id": "evt-2"}
                ),
            ]
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        assert await adapter.create_event(_request()) == "evt-2"
        assert mock_client.post.await_count == 2
        assert mock_client.request.await_count == 2

    async def test_429_backs_off_using_retry_after(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sleep = AsyncMock()
        monkeypatch.setattr("commitments.calendar_sync.asyncio.sleep", sleep)
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            side_effect=[
                _mock_response(
                    status_code=429,
                    url=EVENTS_URL,
                    method="POST",
                    text="slow down",
                    headers={"Retry-After": "7"},
                ),
                _mock_response(status_code=503, url=EVENTS_URL, method="POST", text="busy"),
                _mock_response(
                    status_code=200, url=EVENTS_URL, method="POST", json_body={"id": "evt-3"}
                ),
            ]
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        assert await adapter.create_event(_request()) == "evt-3"
        assert [call.args[0] for call in sleep.await_args_list] == [7.0, 2.0]

    async def test_rate_limit_gives_up_after_max_retries(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("commitments.calendar_sync.asyncio.sleep", AsyncMock())
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=503, url=EVENTS_URL, method="POST", text="unavailable"
            )
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        with pytest.raises(CalendarRequestError) as exc_info:
            await adapter.create_event(_request())

        assert exc_info.value.status_code == 503
        assert mock_client.request.await_count == 4

    async def test_token_refresh_failure(self) -> None:
        mock_client = MagicMock(spec=httpx.AsyncClient)
        mock_client.post = AsyncMock(
            return_value=_mock_response(
                status_code=400,
                url=GOOGLE_OAUTH_TOKEN_URL,
                method="POST",
                json_body={"error": "invalid_grant"},
            )
        )
        mock_client.request = AsyncMock()
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        with pytest.raises(CalendarTokenRefreshError, match="invalid_grant"):
            await adapter.create_event(_request())

        mock_client.request.assert_not_awaited()


# ---------------------------------------------------------------------------
# delete_event
# ---------------------------------------------------------------------------


class TestDeleteEvent:
    async def test_sends_delete(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=204, url=f"{EVENTS_URL}/evt-1", method="DELETE"
            )
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        await adapter.delete_event("evt-1")

        assert mock_client.request.call_args.args == ("DELETE", f"{EVENTS_URL}/evt-1")

    async def test_event_id_is_url_encoded(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(status_code=204, url=EVENTS_URL, method="DELETE")
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        await adapter.delete_event("evt/with space")

        assert mock_client.request.call_args.args[1] == f"{EVENTS_URL}/evt%2Fwith%20space"

    @pytest.mark.parametrize("status_code", [404, 410])
    async def test_already_deleted_is_success(self, status_code: int) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=status_code, url=f"{EVENTS_URL}/evt-1", method="DELETE", text="gone"
            )
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        await adapter.delete_event("evt-1")

    async def test_server_error_raises(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.request = AsyncMock(
            return_value=_mock_response(
                status_code=500, url=f"{EVENTS_URL}/evt-1", method="DELETE", text="oops"
            )
        )
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        with pytest.raises(CalendarRequestError) as exc_info:
            await adapter.delete_event("evt-1")

        assert exc_info.value.status_code == 500

    async def test_empty_id_raises_value_error(self) -> None:
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=_make_mock_http_client())
        with pytest.raises(ValueError, match="non-empty"):
            await adapter.delete_event("   ")


# ---------------------------------------------------------------------------
# Credentials, redaction, lifecycle
# ---------------------------------------------------------------------------


class TestCredentials:
    def test_flat_json(self) -> None:
        creds = GoogleOAuthCredentials.from_json(
            json.dumps({"client_id": "a", "client_secret": "b", "refresh_token": "c"})
        )
        assert (creds.client_id, creds.client_secret, creds.refresh_token) == ("a", "b", "c")

    def test_nested_installed_json(self) -> None:
        creds = GoogleOAuthCredentials.from_json(
            json.dumps(
                {
                    "installed": {"client_id": "a", "client_secret": "b"},
                    "refresh_token": "c",
                }
            )
        )
        assert creds.client_id == "a"
        assert creds.refresh_token == "c"

    def test_missing_fields(self) -> None:
        with pytest.raises(CalendarCredentialError, match="refresh_token"):
            GoogleOAuthCredentials.from_json(json.dumps({"client_id": "a", "client_secret": "b"}))

    def test_blank_fields(self) -> None:
        with pytest.raises(CalendarCredentialError, match="non-empty"):
            GoogleOAuthCredentials.from_json(
                json.dumps({"client_id": " ", "client_secret": "b", "refresh_token": "c"})
            )

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
    def test_invalid_json(self, raw: str) -> None:
        with pytest.raises(CalendarCredentialError):
            GoogleOAuthCredentials.from_json(raw)


class TestSanitizeErrorMessage:
    def test_redacts_credentials(self) -> None:
        message = sanitize_error_message(
            'failed refresh_token=abc123 and {"client_secret": "s3cr3t"}'
        )
        assert "abc123" not in message
        assert "s3cr3t" not in message
        assert "[REDACTED]" in message

    def test_collapses_whitespace_and_truncates(self) -> None:
        message = sanitize_error_message("line one\n\n   line two " + "x" * 500)
        assert message.startswith("line one line two ")
        assert len(message) == 200


class TestShutdown:
    async def test_injected_client_is_not_closed(self) -> None:
        mock_client = _make_mock_http_client()
        mock_client.aclose = AsyncMock()
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=mock_client)

        await adapter.shutdown()

        mock_client.aclose.assert_not_awaited()

    def test_name(self) -> None:
        adapter = GoogleCalendarSyncAdapter(_credentials(), http_client=_make_mock_http_client())
        assert adapter.name == "google"
