"""Shared fixtures wired from the fakes in ``tests._helpers``."""

from __future__ import annotations

import pytest

from commitments.history import StoreHistoryProvider
from commitments.lifecycle import ReminderLifecycleManager
from commitments.store import InMemoryReminderStore
from tests._helpers import FIXED_NOW, FakeCalendarAdapter, FakeExtractor


@pytest.fixture
def store() -> InMemoryReminderStore:
    return InMemoryReminderStore()


@pytest.fixture
def calendar() -> FakeCalendarAdapter:
    return FakeCalendarAdapter()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def manager(
    store: InMemoryReminderStore,
    extractor: FakeExtractor,
    calendar: FakeCalendarAdapter,
) -> ReminderLifecycleManager:
    return ReminderLifecycleManager(
        store,
        extractor=extractor,
        history=StoreHistoryProvider(store),
        sync_adapter=calendar,
        clock=lambda: FIXED_NOW,
    )
