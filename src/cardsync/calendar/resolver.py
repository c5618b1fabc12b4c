"""Working-calendar resolution, health reporting and calendar sharing setup."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cardsync.calendar.client import (
    CalendarApiError,
    CalendarNotConfiguredError,
    CalendarNotFoundError,
    GoogleCalendarClient,
    RemoteApiError,
    sanitize_error_message,
)
from cardsync.calendar.models import CalendarHealth

if TYPE_CHECKING:
    from cardsync.config import GoogleSettings

logger = logging.getLogger(__name__)

WRITABLE_ACCESS_ROLES = frozenset({"owner", "writer"})


class CalendarResolver:
    """Resolves the calendar id the engine writes to.

    Order: configured ``calendar_id``, then the id cached on this instance,
    then a name search over every ``calendarList`` page, then creation when
    the caller allows it.
    """

    def __init__(self, settings: GoogleSettings, client: GoogleCalendarClient | None) -> None:
        self._settings = settings
        self._client = client
        self._resolved_calendar_id: str | None = None

    @property
    def cached_calendar_id(self) -> str | None:
        return self._resolved_calendar_id

    def _require_client(self) -> GoogleCalendarClient:
        if self._client is None or not self._settings.is_configured:
            raise CalendarNotConfiguredError("Google Calendar is not configured")
        return self._client

    async def resolve(self, *, create_if_missing: bool = False) -> str:
        client = self._require_client()
        if self._settings.calendar_id:
            return self._settings.calendar_id
        if self._resolved_calendar_id:
            return self._resolved_calendar_id

        found = await self._find_by_name(client, self._settings.calendar_name)
        if found:
            self._resolved_calendar_id = found
            logger.info("Resolved calendar '%s' to id %s", self._settings.calendar_name, found)
            return found

        if not create_if_missing:
            raise CalendarNotFoundError(
                f"Google calendar '{self._settings.calendar_name}' was not found"
            )

        created = await client.create_calendar(
            summary=self._settings.calendar_name,
            timezone=self._settings.timezone,
        )
        created_id = created.get("id")
        if not isinstance(created_id, str) or not created_id.strip():
            raise CalendarApiError("Google calendar creation returned no id")
        self._resolved_calendar_id = created_id.strip()
        logger.info(
            "Created calendar '%s' with id %s",
            self._settings.calendar_name,
            self._resolved_calendar_id,
        )
        return self._resolved_calendar_id

    @staticmethod
    async def _find_by_name(client: GoogleCalendarClient, name: str) -> str | None:
        wanted = name.strip()
        page_token: str | None = None
        while True:
            payload = await client.list_calendars(page_token=page_token)
            items = payload.get("items")
            if isinstance(items, list):
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    summary = str(item.get("summary") or "").strip()
                    calendar_id = item.get("id")
                    if summary == wanted and isinstance(calendar_id, str) and calendar_id:
                        return calendar_id
            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                return None
            page_token = next_token

    async def health(self) -> CalendarHealth:
        """Report whether the working calendar is reachable and writable.

        Never raises for remote failures; the failure message is returned in
        ``error`` instead.
        """
        settings = self._settings
        if not settings.enabled:
            return CalendarHealth(enabled=False, configured=False)

        base = CalendarHealth(
            enabled=True,
            configured=settings.is_configured,
            calendar_id=settings.calendar_id,
            calendar_name=settings.calendar_name,
            timezone=settings.timezone,
            shared_with=list(settings.shared_with),
        )
        if not settings.is_configured or self._client is None:
            return base.model_copy(update={"error": "Google credentials are incomplete"})

        try:
            calendar_id = await self.resolve(create_if_missing=False)
            entry = await self._client.get_calendar_list_entry(calendar_id)
        except CalendarApiError as exc:
            logger.warning("Calendar health check failed: %s", sanitize_error_message(exc))
            return base.model_copy(
                update={
                    "calendar_id": settings.calendar_id or self._resolved_calendar_id or "",
                    "error": sanitize_error_message(exc),
                }
            )

        access_role = str(entry.get("accessRole") or "")
        return base.model_copy(
            update={
                "calendar_configured": True,
                "calendar_id": calendar_id,
                "access_role": access_role,
                "can_write": access_role in WRITABLE_ACCESS_ROLES,
            }
        )

    async def ensure_setup(
        self,
        *,
        shared_with: list[str] | None = None,
        role: str | None = None,
    ) -> CalendarHealth:
        """Resolve or create the calendar and share it with each address.

        An ACL insert answered with 409 means a rule for the user already
        exists; its role is updated in place.
        """
        client = self._require_client()
        recipients = list(self._settings.shared_with if shared_with is None else shared_with)
        share_role = role or self._settings.share_role

        calendar_id = await self.resolve(create_if_missing=True)
        for email in recipients:
            try:
                await client.insert_acl(calendar_id, role=share_role, email=email)
            except RemoteApiError as exc:
                if exc.status_code != 409:
                    raise
                await client.patch_acl(calendar_id, role=share_role, email=email)
            logger.info("Shared calendar %s with %s as %s", calendar_id, email, share_role)

        health = await self.health()
        return health.model_copy(update={"calendar_id": calendar_id, "shared_with": recipients})
