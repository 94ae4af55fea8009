"""Shared fixtures for the FX engine test suite."""

from unittest.mock import AsyncMock

import pytest

from fxengine.config import FXSettings, load_settings
from fxengine.events.service import EventService
from fxengine.execution.broker import PaperBroker
from fxengine.storage.kv import InMemoryKVStore
from fxengine.storage.state import ForexStateStore

from fx_helpers import FakeMarket


@pytest.fixture
def settings() -> FXSettings:
    return load_settings(
        universe_pairs=["EURUSD", "GBPUSD", "USDJPY"],
        ai_api_key="",
        reference_equity_usd=None,
    )


@pytest.fixture
def kv() -> InMemoryKVStore:
    return InMemoryKVStore()


@pytest.fixture
def store(kv: InMemoryKVStore, settings: FXSettings) -> ForexStateStore:
    return ForexStateStore(kv, settings)


@pytest.fixture
def calendar() -> AsyncMock:
    """Calendar source returning no events unless a test sets ``return_value``."""
    mock = AsyncMock()
    mock.fetch_events.return_value = []
    return mock


@pytest.fixture
def event_service(settings: FXSettings, store: ForexStateStore, calendar: AsyncMock) -> EventService:
    return EventService(settings, store, calendar)


@pytest.fixture
def market() -> FakeMarket:
    return FakeMarket()


@pytest.fixture
def broker() -> PaperBroker:
    return PaperBroker()
