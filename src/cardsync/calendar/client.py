"""Google Calendar REST client with OAuth refresh-token auth and retry/backoff.

This module defines:
- The calendar error hierarchy (``CalendarApiError`` and subclasses)
- ``GoogleOAuthCredentials`` / ``GoogleOAuthClient``: refresh-token exchange with
  an instance-level access-token cache
- ``GoogleCalendarClient``: ``call()`` plus the typed event, calendar-list,
  ACL and freeBusy helpers used by the reconciliation engine and slot query
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Private extended property carrying the owning record id on every event.
CARD_ID_PRIVATE_KEY = "cardId"

# Retry on 429 Too Many Requests and any 5xx. Two additional attempts after the first.
RETRY_MAX_ATTEMPTS = 2
RETRY_BASE_BACKOFF_SECONDS = 0.5
NOT_FOUND_STATUS_CODES = {404, 410}

# Access tokens are treated as expired this long before Google says they are.
TOKEN_EXPIRY_MARGIN_SECONDS = 30
DEFAULT_TOKEN_EXPIRES_IN_SECONDS = 3000
MIN_TOKEN_EXPIRES_IN_SECONDS = 60

LOOKUP_MAX_RESULTS_CEILING = 20
ERROR_MESSAGE_MAX_CHARS = 200


class CalendarApiError(RuntimeError):
    """Base error raised by the Google Calendar client and its callers."""


class CalendarNotConfiguredError(CalendarApiError):
    """Raised when Google sync is disabled or credentials are incomplete."""


class CalendarTokenRefreshError(CalendarApiError):
    """Raised when the refresh-token exchange fails."""


class CalendarTransportError(CalendarApiError):
    """Raised when the HTTP request itself fails (DNS, connect, timeout)."""


class CalendarNotFoundError(CalendarApiError):
    """Raised when the working calendar cannot be found and creation is not allowed."""


class RemoteApiError(CalendarApiError):
    """Raised when Google Calendar answers with a non-2xx status."""

    def __init__(self, *, method: str, path: str, status_code: int, detail: str) -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Google API {method} {path} failed ({status_code}): {detail}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code in NOT_FOUND_STATUS_CODES

    @property
    def is_retryable(self) -> bool:
        return is_retryable_status(self.status_code)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def is_not_found_error(exc: BaseException) -> bool:
    """True when *exc* is a remote 404/410."""
    return isinstance(exc, RemoteApiError) and exc.is_not_found


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


class GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._clock = clock or (lambda: datetime.now(UTC))
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        margin = timedelta(seconds=TOKEN_EXPIRY_MARGIN_SECONDS)
        return self._clock() < self._access_token_expires_at - margin

    async def _refresh_access_token(self) -> None:
        requested_at = self._clock()
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
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)

        self._access_token = access_token.strip()
        self._access_token_expires_at = requested_at + timedelta(seconds=expires_in_seconds)
        logger.debug("Google access token refreshed (expires_in=%ds)", expires_in_seconds)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_EXPIRES_IN_SECONDS
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return DEFAULT_TOKEN_EXPIRES_IN_SECONDS
    if isinstance(value, int | float) and value > 0:
        return max(MIN_TOKEN_EXPIRES_IN_SECONDS, int(value))
    return DEFAULT_TOKEN_EXPIRES_IN_SECONDS


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:ERROR_MESSAGE_MAX_CHARS]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:ERROR_MESSAGE_MAX_CHARS]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:ERROR_MESSAGE_MAX_CHARS]
    return "Request failed without an error payload"


def _redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # Bearer headers echoed back in transport errors
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(exc: BaseException) -> str:
    """Return a redacted, whitespace-normalized, truncated message for *exc*.

    Used for everything that ends up on a record (``google_sync_error``) or in a
    run result, so credentials never leak into persisted state.
    """
    raw_message = str(exc) or type(exc).__name__
    redacted = _redact_credential_values(raw_message)
    return " ".join(redacted.split())[:ERROR_MESSAGE_MAX_CHARS]


def event_card_id(event: dict[str, Any] | None) -> str:
    """Return the ``cardId`` private marker of a Google event, or ``""``."""
    if not isinstance(event, dict):
        return ""
    extended = event.get("extendedProperties")
    if not isinstance(extended, dict):
        return ""
    private = extended.get("private")
    if not isinstance(private, dict):
        return ""
    candidate = private.get(CARD_ID_PRIVATE_KEY)
    return candidate.strip() if isinstance(candidate, str) else ""


def _encode(segment: str) -> str:
    return quote(segment, safe="")


class GoogleCalendarClient:
    """Authenticated Google Calendar v3 client.

    One instance per process: it owns the access-token cache. Every remote
    call goes through :meth:`call`, which applies the retry policy.
    """

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        max_retries: int = RETRY_MAX_ATTEMPTS,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = GoogleOAuthClient(credentials, self._http_client, clock=clock)
        self._max_retries = max_retries

    async def call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Issue one Google Calendar request and return its decoded JSON body.

        Retries 429/5xx responses up to ``max_retries`` additional times. The
        wait honours a positive ``Retry-After`` header (seconds) and otherwise
        grows linearly: ``attempt * 0.5s``. Any other non-2xx status raises
        :class:`RemoteApiError` immediately.
        """
        method = method.upper()
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        attempt = 0
        while True:
            attempt += 1
            response = await self._request_with_bearer(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
            )
            if 200 <= response.status_code < 300:
                return _decode_json_body(response, method=method, path=normalized_path)

            error = RemoteApiError(
                method=method,
                path=normalized_path,
                status_code=response.status_code,
                detail=_safe_google_error_message(response),
            )
            if not error.is_retryable or attempt > self._max_retries:
                raise error

            backoff = _retry_after_seconds(response) or attempt * RETRY_BASE_BACKOFF_SECONDS
            logger.warning(
                "Calendar API %s %s returned %d, retrying in %.1fs (attempt %d/%d)",
                method,
                normalized_path,
                response.status_code,
                backoff,
                attempt,
                self._max_retries,
            )
            await asyncio.sleep(backoff)

    async def _request_with_bearer(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        response = await self._request_once(
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            force_refresh=False,
        )
        if response.status_code == 401:
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                force_refresh=True,
            )
        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise CalendarTransportError(f"Google Calendar request failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any] | None:
        """Fetch one event; ``None`` when Google answers 404/410."""
        if not event_id:
            return None
        try:
            return await self.call(
                "GET",
                f"/calendars/{_encode(calendar_id)}/events/{_encode(event_id)}",
            )
        except RemoteApiError as exc:
            if exc.is_not_found:
                return None
            raise

    async def list_events_by_card(
        self,
        calendar_id: str,
        card_id: str,
        *,
        max_results: int = 10,
    ) -> list[dict[str, Any]]:
        """Return live events whose private ``cardId`` marker equals *card_id*."""
        bounded = max(1, min(LOOKUP_MAX_RESULTS_CEILING, int(max_results)))
        payload = await self.call(
            "GET",
            f"/calendars/{_encode(calendar_id)}/events",
            params={
                "privateExtendedProperty": f"{CARD_ID_PRIVATE_KEY}={card_id}",
                "showDeleted": "false",
                "singleEvents": "true",
                "maxResults": str(bounded),
                "orderBy": "startTime",
            },
        )
        items = payload.get("items")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict) and isinstance(item.get("id"), str)]

    async def create_event(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self.call(
            "POST",
            f"/calendars/{_encode(calendar_id)}/events",
            json_body=body,
        )

    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        return await self.call(
            "PATCH",
            f"/calendars/{_encode(calendar_id)}/events/{_encode(event_id)}",
            json_body=body,
        )

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        ignore_not_found: bool = True,
    ) -> bool:
        """Delete an event. Returns ``False`` when nothing was deleted.

        A 404/410 means the event is already gone; with ``ignore_not_found``
        that is reported as ``False`` instead of raising.
        """
        if not event_id:
            return False
        try:
            await self.call(
                "DELETE",
                f"/calendars/{_encode(calendar_id)}/events/{_encode(event_id)}",
            )
        except RemoteApiError as exc:
            if ignore_not_found and exc.is_not_found:
                logger.debug("delete_event: event '%s' already gone", event_id)
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # Calendars, ACL, freeBusy
    # ------------------------------------------------------------------

    async def list_calendars(self, *, page_token: str | None = None) -> dict[str, Any]:
        params = {"pageToken": page_token} if page_token else None
        return await self.call("GET", "/users/me/calendarList", params=params)

    async def get_calendar_list_entry(self, calendar_id: str) -> dict[str, Any]:
        return await self.call("GET", f"/users/me/calendarList/{_encode(calendar_id)}")

    async def create_calendar(self, *, summary: str, timezone: str) -> dict[str, Any]:
        return await self.call(
            "POST",
            "/calendars",
            json_body={"summary": summary, "timeZone": timezone},
        )

    async def insert_acl(self, calendar_id: str, *, role: str, email: str) -> dict[str, Any]:
        return await self.call(
            "POST",
            f"/calendars/{_encode(calendar_id)}/acl",
            json_body={"role": role, "scope": {"type": "user", "value": email}},
        )

    async def patch_acl(self, calendar_id: str, *, role: str, email: str) -> dict[str, Any]:
        rule_id = _encode(f"user:{email}")
        return await self.call(
            "PATCH",
            f"/calendars/{_encode(calendar_id)}/acl/{rule_id}",
            json_body={"role": role},
        )

    async def free_busy(
        self,
        calendar_id: str,
        *,
        time_min: datetime,
        time_max: datetime,
        timezone: str,
    ) -> list[dict[str, Any]]:
        """Return the raw ``busy`` windows Google reports for *calendar_id*."""
        payload = await self.call(
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": google_rfc3339(time_min),
                "timeMax": google_rfc3339(time_max),
                "timeZone": timezone,
                "items": [{"id": calendar_id}],
            },
        )
        calendars_payload = payload.get("calendars")
        if not isinstance(calendars_payload, dict):
            return []
        calendar_payload = calendars_payload.get(calendar_id)
        if not isinstance(calendar_payload, dict):
            return []
        busy_payload = calendar_payload.get("busy")
        if not isinstance(busy_payload, list):
            return []
        return [window for window in busy_payload if isinstance(window, dict)]

    async def aclose(self) -> None:
        """Release the HTTP client when this instance created it."""
        if self._owns_http_client:
            await self._http_client.aclose()


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _decode_json_body(response: httpx.Response, *, method: str, path: str) -> dict[str, Any]:
    if response.status_code == 204 or not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as exc:
        raise CalendarApiError(
            f"Google API {method} {path} returned invalid JSON for a successful response"
        ) from exc
    if not isinstance(payload, dict):
        raise CalendarApiError(f"Google API {method} {path} returned an unexpected JSON shape")
    return payload


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
