"""Tests for calendar resolution, health reporting and sharing setup."""

from __future__ import annotations

import pytest

from cardsync.calendar.client import (
    CalendarNotConfiguredError,
    CalendarNotFoundError,
    RemoteApiError,
)
from cardsync.calendar.resolver import CalendarResolver
from conftest import make_config

pytestmark = pytest.mark.unit


def _resolver(calendar_client, **google) -> CalendarResolver:
    return CalendarResolver(make_config(google=google).google, calendar_client)


class TestResolve:
    async def test_configured_id_wins_without_remote_calls(self, calendar_client, fake_google):
        resolver = _resolver(calendar_client, calendar_id="explicit@group.calendar.google.com")
        assert await resolver.resolve() == "explicit@group.calendar.google.com"
        assert fake_google.requests == []

    async def test_name_search_follows_pagination(self, calendar_client, fake_google):
        fake_google.calendar_page_size = 2
        fake_google.add_calendar("Personal")
        fake_google.add_calendar("Holidays")
        wanted = fake_google.add_calendar("Service Appointments")

        resolver = _resolver(calendar_client)

        assert await resolver.resolve() == wanted
        page_tokens = [
            request.params.get("pageToken")
            for request in fake_google.requests
            if request.path == "/users/me/calendarList"
        ]
        assert page_tokens == [None, "2"]

    async def test_resolved_id_is_cached(self, calendar_client, fake_google, calendar_id):
        resolver = _resolver(calendar_client)
        assert await resolver.resolve() == calendar_id
        assert await resolver.resolve() == calendar_id
        assert len(fake_google.requests) == 1
        assert resolver.cached_calendar_id == calendar_id

    async def test_missing_calendar_without_create(self, calendar_client):
        resolver = _resolver(calendar_client)
        with pytest.raises(CalendarNotFoundError, match="Service Appointments"):
            await resolver.resolve()

    async def test_missing_calendar_is_created_with_timezone(self, calendar_client, fake_google):
        resolver = _resolver(calendar_client, timezone="Europe/Berlin")

        calendar_id = await resolver.resolve(create_if_missing=True)

        create = next(request for request in fake_google.requests if request.path == "/calendars")
        assert create.body == {"summary": "Service Appointments", "timeZone": "Europe/Berlin"}
        assert calendar_id == fake_google.calendars[0]["id"]

    async def test_unconfigured_resolver_raises(self):
        resolver = CalendarResolver(make_config(google={"enabled": False}).google, None)
        with pytest.raises(CalendarNotConfiguredError):
            await resolver.resolve()


class TestHealth:
    async def test_disabled(self):
        resolver = CalendarResolver(make_config(google={"enabled": False}).google, None)
        health = await resolver.health()
        assert health.enabled is False
        assert health.configured is False
        assert health.error == ""

    async def test_incomplete_credentials(self):
        settings = make_config(google={"refresh_token": ""}).google
        health = await CalendarResolver(settings, None).health()
        assert health.enabled is True
        assert health.configured is False
        assert health.error == "Google credentials are incomplete"

    async def test_writable_calendar(self, calendar_client, calendar_id):
        health = await _resolver(calendar_client).health()
        assert health.calendar_configured is True
        assert health.calendar_id == calendar_id
        assert health.access_role == "owner"
        assert health.can_write is True
        assert health.error == ""

    async def test_read_only_calendar(self, calendar_client, fake_google):
        fake_google.add_calendar("Service Appointments", access_role="reader")
        health = await _resolver(calendar_client).health()
        assert health.access_role == "reader"
        assert health.can_write is False

    async def test_missing_calendar_is_reported_not_raised(self, calendar_client, fake_google):
        health = await _resolver(calendar_client).health()
        assert health.calendar_configured is False
        assert "was not found" in health.error
        # Health checks never create the calendar.
        assert fake_google.calendars == []

    async def test_remote_failure_is_reported(self, calendar_client, fake_google, calendar_id):
        fake_google.fail("GET", "/users/me/calendarList/", 403, message="Forbidden")
        health = await _resolver(calendar_client).health()
        assert health.calendar_configured is False
        assert "(403): Forbidden" in health.error


class TestEnsureSetup:
    async def test_shares_with_configured_addresses(self, calendar_client, fake_google, calendar_id):
        resolver = _resolver(
            calendar_client,
            shared_with="office@example.com; tech@example.com",
            share_role="reader",
        )

        health = await resolver.ensure_setup()

        rules = fake_google.acl[calendar_id]
        assert set(rules) == {"user:office@example.com", "user:tech@example.com"}
        assert {rule["role"] for rule in rules.values()} == {"reader"}
        assert health.shared_with == ["office@example.com", "tech@example.com"]
        assert health.calendar_id == calendar_id

    async def test_existing_rule_is_patched(self, calendar_client, fake_google, calendar_id):
        resolver = _resolver(calendar_client)
        await resolver.ensure_setup(shared_with=["office@example.com"], role="reader")

        await resolver.ensure_setup(shared_with=["office@example.com"], role="writer")

        assert fake_google.acl[calendar_id]["user:office@example.com"]["role"] == "writer"
        patches = [request for request in fake_google.requests if request.method == "PATCH"]
        assert [request.path for request in patches] == [
            f"/calendars/{calendar_id}/acl/user:office@example.com"
        ]

    async def test_creates_missing_calendar(self, calendar_client, fake_google):
        health = await _resolver(calendar_client).ensure_setup(shared_with=[])
        assert health.calendar_configured is True
        assert len(fake_google.calendars) == 1

    async def test_other_acl_errors_propagate(self, calendar_client, fake_google, calendar_id):
        fake_google.fail("POST", "/acl", 400, message="Invalid scope")
        with pytest.raises(RemoteApiError, match="Invalid scope"):
            await _resolver(calendar_client).ensure_setup(shared_with=["bad"])
