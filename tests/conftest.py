"""Shared fixtures: an injectable clock and fresh in-memory stores."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from jengahacks.store.memory import MemoryAbuseStore, MemoryRegistrationStore

# Exactly on an hour boundary, so hourly windows start here
T0 = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock usable wherever a ``Clock`` is accepted."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current += timedelta(**delta)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def abuse_store():
    return MemoryAbuseStore()


@pytest.fixture
def registration_store():
    return MemoryRegistrationStore()
