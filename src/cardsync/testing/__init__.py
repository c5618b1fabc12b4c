"""Test support utilities for the cardsync package.

Helpers here have no dependency on pytest itself, so they can be used from
any test tree or from an interactive session against a fake calendar.
"""

from __future__ import annotations

from cardsync.testing.fake_google import FakeGoogleCalendar, RecordedRequest

__all__ = ["FakeGoogleCalendar", "RecordedRequest"]
