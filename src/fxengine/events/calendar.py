"""Economic calendar client.

Fetches the weekly ForexFactory-style JSON calendar and normalises each raw row
into an ``EconomicEvent``.  Row shapes vary between feeds, so each field is
looked up under several keys and rows that cannot be resolved are dropped.
"""

import hashlib
import re
from datetime import datetime, timedelta
from typing import Any

import aiohttp

from fxengine.config import FXSettings
from fxengine.core.errors import CalendarFetchError
from fxengine.core.sessions import as_utc
from fxengine.core.types import EconomicEvent, EventImpact
from fxengine.logging import get_logger

logger = get_logger(__name__)

CALENDAR_SOURCE = "forexfactory"

COUNTRY_TO_CURRENCY: dict[str, str] = {
    "US": "USD",
    "USA": "USD",
    "UNITEDSTATES": "USD",
    "EUR": "EUR",
    "EU": "EUR",
    "EMU": "EUR",
    "EUROAREA": "EUR",
    "EUROZONE": "EUR",
    "GB": "GBP",
    "GBR": "GBP",
    "UNITEDKINGDOM": "GBP",
    "UK": "GBP",
    "JP": "JPY",
    "JPN": "JPY",
    "JAPAN": "JPY",
    "CH": "CHF",
    "CHE": "CHF",
    "SWITZERLAND": "CHF",
    "CA": "CAD",
    "CAN": "CAD",
    "CANADA": "CAD",
    "AU": "AUD",
    "AUS": "AUD",
    "AUSTRALIA": "AUD",
    "NZ": "NZD",
    "NZL": "NZD",
    "NEWZEALAND": "NZD",
}

_ISO_CURRENCY = re.compile(r"^[A-Z]{3}$")
_NUMERIC = re.compile(r"^[+-]?\d*\.?\d+$")
_TZ_SUFFIX = re.compile(r"([zZ]|[+\-]\d{2}:?\d{2})$")
_NULL_TOKENS = {"null", "n/a", "na", "--"}


def normalize_impact(value: Any) -> EventImpact:
    raw = str(value if value is not None else "").strip().upper()
    if "HIGH" in raw:
        return EventImpact.HIGH
    if "MEDIUM" in raw:
        return EventImpact.MEDIUM
    if "LOW" in raw:
        return EventImpact.LOW
    return EventImpact.UNKNOWN


def resolve_country_currency(value: Any) -> str | None:
    raw = str(value if value is not None else "").strip().upper()
    if not raw:
        return None
    return COUNTRY_TO_CURRENCY.get(re.sub(r"[^A-Z]", "", raw))


def _resolve_currency(row: dict[str, Any]) -> str | None:
    """Explicit currency fields first, then the country table, then a bare ISO code in ``country``."""
    direct = str(row.get("currency") or row.get("ccy") or "").strip().upper()
    if _ISO_CURRENCY.match(direct):
        return direct
    mapped = resolve_country_currency(row.get("country") or row.get("countryCode"))
    if mapped:
        return mapped
    country = str(row.get("country") or "").strip().upper()
    return country if _ISO_CURRENCY.match(country) else None


def parse_event_timestamp(raw_value: Any) -> datetime | None:
    """Parse a calendar timestamp; values without a zone are taken as UTC."""
    raw = str(raw_value if raw_value is not None else "").strip()
    if not raw:
        return None
    text = raw if "T" in raw else raw.replace(" ", "T", 1)
    if not _TZ_SUFFIX.search(text):
        text = f"{text}Z"
    if text.endswith(("z", "Z")):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return as_utc(parsed)


def normalize_metric_value(value: Any) -> float | str | None:
    """Numeric strings become floats; other text is kept verbatim."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if number == number and abs(number) != float("inf") else None

    text = str(value).strip()
    if not text or text.lower() in _NULL_TOKENS:
        return None
    compact = text.replace(",", "")
    if _NUMERIC.match(compact):
        return float(compact)
    return text


def build_event_id(currency: str, timestamp: datetime, name: str) -> str:
    iso = as_utc(timestamp).strftime("%Y-%m-%dT%H:%M:%S.") + f"{timestamp.microsecond // 1000:03d}Z"
    base = f"{currency}|{iso}|{name.upper()}"
    return hashlib.sha1(base.encode("utf-8")).hexdigest()[:20]


def normalize_event_row(value: Any) -> EconomicEvent | None:
    """Normalise one raw calendar row; ``None`` when any key field is missing."""
    if not isinstance(value, dict):
        return None

    currency = _resolve_currency(value)
    if not currency:
        return None

    timestamp = parse_event_timestamp(
        value.get("date") or value.get("dateUtc") or value.get("timestamp") or value.get("time")
    )
    if timestamp is None:
        return None

    name = str(value.get("event") or value.get("name") or value.get("title") or "").strip()
    if not name:
        return None

    return EconomicEvent(
        id=build_event_id(currency, timestamp, name),
        timestamp=timestamp,
        currency=currency,
        impact=normalize_impact(value.get("impact") or value.get("importance") or value.get("priority")),
        name=name,
        actual=normalize_metric_value(value.get("actual")),
        forecast=normalize_metric_value(
            value.get("forecast") if value.get("forecast") is not None else value.get("estimate")
        ),
        previous=normalize_metric_value(value.get("previous")),
        source=CALENDAR_SOURCE,
    )


def normalize_calendar_url(raw: str) -> str:
    value = str(raw or "").strip()
    if not value:
        return "https://nfs.faireconomy.media/ff_calendar_thisweek.json"
    if value.startswith(("http://", "https://")):
        return value
    return f"https://{value.lstrip('/')}"


def format_utc_date(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%d")


def calendar_window(now: datetime) -> tuple[str, str]:
    """Date window kept from a fetch: yesterday through seven days ahead."""
    return format_utc_date(now - timedelta(days=1)), format_utc_date(now + timedelta(days=7))


def normalize_calendar_payload(
    payload: Any, from_date: str, to_date: str
) -> list[EconomicEvent]:
    """Normalise, window-filter, dedupe by id and sort a raw calendar array."""
    if not isinstance(payload, list):
        raise CalendarFetchError("Calendar returned invalid payload")

    window_start = datetime.fromisoformat(f"{from_date}T00:00:00+00:00")
    window_end = datetime.fromisoformat(f"{to_date}T23:59:59.999000+00:00")

    deduped: dict[str, EconomicEvent] = {}
    for row in payload:
        event = normalize_event_row(row)
        if event is None:
            continue
        if event.timestamp < window_start or event.timestamp > window_end:
            continue
        deduped[event.id] = event

    return sorted(deduped.values(), key=lambda event: event.timestamp)


class CalendarClient:
    """Fetch raw calendar rows over HTTP.

    Non-2xx responses and non-array payloads raise ``CalendarFetchError``.
    """

    def __init__(self, settings: FXSettings, session: aiohttp.ClientSession | None = None):
        self.url = normalize_calendar_url(settings.event_calendar_url)
        self.timeout = aiohttp.ClientTimeout(total=settings.event_http_timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        logger.info(f"Calendar client initialized (url={self.url})")

    async def close(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
            self._session = None

    async def fetch_events(self, from_date: str, to_date: str) -> list[EconomicEvent]:
        if self._session is None:
            await self.initialize()

        try:
            async with self._session.get(self.url) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise CalendarFetchError(
                        f"Calendar error {resp.status}: {body or resp.reason}", status=resp.status
                    )
                payload = await resp.json(content_type=None)
        except CalendarFetchError:
            raise
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise CalendarFetchError(f"Calendar request failed: {e}") from e

        events = normalize_calendar_payload(payload, from_date, to_date)
        logger.debug(f"Calendar fetched {len(events)} events ({from_date}..{to_date})")
        return events

