"""Tests for calendar row normalisation and the HTTP client."""

from datetime import UTC, datetime

import pytest

from fxengine.config import load_settings
from fxengine.core.errors import CalendarFetchError
from fxengine.core.reasons import ReasonCode
from fxengine.core.types import EventImpact
from fxengine.events.calendar import (
    CalendarClient,
    build_event_id,
    calendar_window,
    normalize_calendar_payload,
    normalize_calendar_url,
    normalize_event_row,
    normalize_metric_value,
    parse_event_timestamp,
)
from fxengine.events.gate import evaluate_event_gate


class _FakeResponse:
    def __init__(self, status: int, payload, body: str = "") -> None:
        self.status = status
        self.reason = "Server Error"
        self._payload = payload
        self._body = body

    async def json(self, content_type=None):
        return self._payload

    async def text(self) -> str:
        return self._body

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc) -> bool:
        return False


class _FakeSession:
    def __init__(self, response: _FakeResponse) -> None:
        self.response = response
        self.urls: list[str] = []

    def get(self, url: str) -> _FakeResponse:
        self.urls.append(url)
        return self.response

    async def close(self) -> None:
        return None


def _row(**overrides) -> dict:
    row = {
        "title": "CPI m/m",
        "country": "USD",
        "date": "2026-02-17T08:30:00-05:00",
        "impact": "High",
        "forecast": "0.3%",
        "previous": "0.2%",
    }
    row.update(overrides)
    return row


def test_normalize_event_row() -> None:
    """Offsets are converted to UTC and impact text is mapped."""
    event = normalize_event_row(_row(actual="1,200"))
    assert event is not None
    assert event.currency == "USD"
    assert event.timestamp == datetime(2026, 2, 17, 13, 30, tzinfo=UTC)
    assert event.impact == EventImpact.HIGH
    assert event.name == "CPI m/m"
    assert event.forecast == "0.3%"
    assert event.actual == 1200.0


def test_country_names_resolve_to_currency() -> None:
    event = normalize_event_row(_row(country="United Kingdom"))
    assert event is not None
    assert event.currency == "GBP"


def test_three_letter_country_codes_use_the_table() -> None:
    """ISO country codes map to their currency; ISO currency codes pass through."""
    assert normalize_event_row(_row(country="JPN")).currency == "JPY"
    assert normalize_event_row(_row(country="USA")).currency == "USD"
    assert normalize_event_row(_row(country="CHE")).currency == "CHF"
    assert normalize_event_row(_row(country="EMU")).currency == "EUR"
    assert normalize_event_row(_row(country="CAD")).currency == "CAD"
    assert normalize_event_row(_row(country="JPN", currency="jpy")).currency == "JPY"


def test_japan_event_blocks_usdjpy() -> None:
    event = normalize_event_row(
        {"country": "JPN", "date": "2026-02-17T10:00:00Z", "title": "BoJ Rate", "impact": "High"}
    )
    now = datetime(2026, 2, 17, 10, 0, tzinfo=UTC)
    decision = evaluate_event_gate("USDJPY", [event], stale_data=False, now=now)
    assert decision.block_new_entries
    assert decision.reason_codes == [ReasonCode.EVENT_WINDOW_ACTIVE_BLOCK]


def test_unresolvable_rows_dropped() -> None:
    assert normalize_event_row(_row(title="")) is None
    assert normalize_event_row(_row(country="Atlantis")) is None
    assert normalize_event_row(_row(date="not a date")) is None
    assert normalize_event_row("row") is None


def test_timestamp_without_zone_is_utc() -> None:
    assert parse_event_timestamp("2026-02-17 13:30:00") == datetime(2026, 2, 17, 13, 30, tzinfo=UTC)
    assert parse_event_timestamp("2026-02-17T13:30:00Z") == datetime(2026, 2, 17, 13, 30, tzinfo=UTC)
    assert parse_event_timestamp("") is None


def test_metric_values() -> None:
    assert normalize_metric_value("-0.5") == -0.5
    assert normalize_metric_value("n/a") is None
    assert normalize_metric_value(True) is None
    assert normalize_metric_value("3.1K") == "3.1K"


def test_event_id_is_deterministic() -> None:
    ts = datetime(2026, 2, 17, 13, 30, tzinfo=UTC)
    first = build_event_id("USD", ts, "CPI m/m")
    assert first == build_event_id("USD", ts, "cpi M/M")
    assert first != build_event_id("EUR", ts, "CPI m/m")
    assert len(first) == 20


def test_payload_window_dedupe_and_order() -> None:
    """Rows outside the window are dropped, duplicates collapse, output is time-ordered."""
    payload = [
        _row(title="Retail Sales", date="2026-02-18T12:00:00Z"),
        _row(date="2026-02-17T13:30:00Z"),
        _row(date="2026-02-17T13:30:00Z"),
        _row(title="Old", date="2026-02-01T13:30:00Z"),
        {"junk": True},
    ]
    events = normalize_calendar_payload(payload, "2026-02-16", "2026-02-24")
    assert [event.name for event in events] == ["CPI m/m", "Retail Sales"]


def test_payload_must_be_array() -> None:
    with pytest.raises(CalendarFetchError):
        normalize_calendar_payload({"events": []}, "2026-02-16", "2026-02-24")


def test_calendar_window() -> None:
    assert calendar_window(datetime(2026, 2, 17, 10, tzinfo=UTC)) == ("2026-02-16", "2026-02-24")
    assert normalize_calendar_url("example.com/cal.json") == "https://example.com/cal.json"


@pytest.mark.asyncio
async def test_client_fetches_and_normalizes(caplog: pytest.LogCaptureFixture) -> None:
    """A 200 response is normalised into events."""
    caplog.set_level("DEBUG", logger="fxengine.events.calendar")
    session = _FakeSession(_FakeResponse(200, [_row(date="2026-02-17T13:30:00Z")]))
    client = CalendarClient(load_settings(), session=session)

    events = await client.fetch_events("2026-02-16", "2026-02-24")

    assert len(events) == 1
    assert session.urls == [client.url]
    assert any(
        r.name == "fxengine.events.calendar" and "Calendar fetched 1 events" in r.getMessage()
        for r in caplog.records
    )
    await client.close()


@pytest.mark.asyncio
async def test_client_raises_on_http_error() -> None:
    """Non-2xx responses raise with the status attached."""
    session = _FakeSession(_FakeResponse(503, None, body="unavailable"))
    client = CalendarClient(load_settings(), session=session)

    with pytest.raises(CalendarFetchError) as exc_info:
        await client.fetch_events("2026-02-16", "2026-02-24")
    assert exc_info.value.status == 503
