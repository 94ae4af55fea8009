"""Cached economic-calendar state with refresh bookkeeping."""

from datetime import datetime, timedelta
from typing import Protocol

from fxengine.config import FXSettings
from fxengine.core.errors import CalendarFetchError
from fxengine.core.reasons import ReasonCode
from fxengine.core.sessions import as_utc
from fxengine.core.types import (
    EconomicEvent,
    EventRefreshResult,
    EventSnapshot,
    EventState,
    EventStoreMeta,
    JournalLevel,
    JournalType,
)
from fxengine.events.calendar import CALENDAR_SOURCE, calendar_window, format_utc_date
from fxengine.journal import journal_entry, safe_append_journal
from fxengine.logging import get_logger
from fxengine.storage.state import ForexStateStore

logger = get_logger(__name__)


class CalendarSource(Protocol):
    async def fetch_events(self, from_date: str, to_date: str) -> list[EconomicEvent]: ...


def utc_day_key(now: datetime) -> str:
    return format_utc_date(now)


def is_snapshot_stale(last_success_at: datetime | None, stale_minutes: int, now: datetime) -> bool:
    if last_success_at is None:
        return True
    return as_utc(now) - as_utc(last_success_at) > timedelta(minutes=stale_minutes)


def should_warn_call_budget(call_counter: int, warn_threshold: int) -> bool:
    return call_counter > warn_threshold


class EventService:
    """Maintains the persisted calendar snapshot and its metadata.

    A failed fetch keeps the previous snapshot and only records failure
    metadata, so cycles keep running on (eventually stale) data.
    """

    def __init__(self, settings: FXSettings, store: ForexStateStore, calendar: CalendarSource) -> None:
        self.settings = settings
        self.store = store
        self.calendar = calendar

    async def get_state(self, now: datetime) -> EventState:
        day_key = utc_day_key(now)
        snapshot = await self.store.load_event_snapshot()
        counter = await self.store.read_call_counter(day_key)
        meta = await self.store.load_event_meta() or EventStoreMeta()
        meta = meta.model_copy(update={"call_counter_day": day_key, "call_counter": counter})

        return EventState(
            snapshot=snapshot,
            meta=meta,
            stale=is_snapshot_stale(meta.last_success_at, self.settings.event_stale_minutes, now),
            stale_minutes=self.settings.event_stale_minutes,
            refresh_minutes=self.settings.event_refresh_minutes,
        )

    async def refresh(self, now: datetime, force: bool = False) -> EventRefreshResult:
        """Fetch a new snapshot unless the last success is within the refresh interval."""
        day_key = utc_day_key(now)
        from_date, to_date = calendar_window(now)

        before = await self.get_state(now)
        last_success = before.meta.last_success_at
        recently_refreshed = last_success is not None and as_utc(now) - as_utc(last_success) < timedelta(
            minutes=self.settings.event_refresh_minutes
        )
        if not force and recently_refreshed:
            return EventRefreshResult(
                ok=True,
                refreshed=False,
                skipped=True,
                reason="within_refresh_interval",
                state=before,
                from_date=from_date,
                to_date=to_date,
                requested_at=now,
            )

        call_counter = await self.store.bump_call_counter(day_key)
        if should_warn_call_budget(call_counter, self.settings.event_call_warn_threshold):
            logger.warning(
                f"Calendar call counter warning: {call_counter} calls today "
                f"(threshold={self.settings.event_call_warn_threshold})"
            )

        attempt_meta = before.meta.model_copy(
            update={"call_counter_day": day_key, "call_counter": call_counter, "last_fetch_attempt_at": now}
        )
        await self.store.save_event_meta(attempt_meta)

        try:
            events = await self.calendar.fetch_events(from_date, to_date)
        except CalendarFetchError as e:
            return await self._record_failure(attempt_meta, str(e), now, from_date, to_date)
        except Exception as e:
            logger.warning(f"Unexpected calendar failure: {e}")
            return await self._record_failure(attempt_meta, str(e), now, from_date, to_date)

        snapshot = EventSnapshot(
            source=CALENDAR_SOURCE, fetched_at=now, from_date=from_date, to_date=to_date, events=events
        )
        success_meta = attempt_meta.model_copy(
            update={"last_success_at": now, "last_failure_at": None, "last_error": None}
        )
        await self.store.save_event_snapshot(snapshot)
        await self.store.save_event_meta(success_meta)
        logger.info(f"Calendar refreshed: {len(events)} events ({from_date}..{to_date})")

        return EventRefreshResult(
            ok=True,
            refreshed=True,
            skipped=False,
            state=await self.get_state(now),
            from_date=from_date,
            to_date=to_date,
            requested_at=now,
        )

    async def _record_failure(
        self, attempt_meta: EventStoreMeta, error: str, now: datetime, from_date: str, to_date: str
    ) -> EventRefreshResult:
        logger.warning(f"Calendar refresh failed, keeping previous snapshot: {error}")
        failure_meta = attempt_meta.model_copy(update={"last_failure_at": now, "last_error": error})
        await self.store.save_event_meta(failure_meta)
        return EventRefreshResult(
            ok=False,
            refreshed=False,
            skipped=False,
            reason=error,
            state=await self.get_state(now),
            from_date=from_date,
            to_date=to_date,
            requested_at=now,
        )

    async def ensure_state(self, now: datetime) -> EventState:
        """Return the event state, refreshing (and journaling the attempt) when due."""
        state = await self.get_state(now)
        last_success = state.meta.last_success_at
        due = last_success is None or as_utc(now) - as_utc(last_success) >= timedelta(
            minutes=max(1, state.refresh_minutes)
        )
        if not due:
            return state

        result = await self.refresh(now, force=False)
        await self.journal_refresh(result, now)
        return result.state

    async def journal_refresh(self, result: EventRefreshResult, now: datetime) -> None:
        if result.skipped:
            code = ReasonCode.EVENT_REFRESH_SKIPPED
        elif result.ok:
            code = ReasonCode.EVENT_REFRESH_OK
        else:
            code = ReasonCode.EVENT_REFRESH_FAILED
        await safe_append_journal(
            self.store,
            journal_entry(
                JournalType.EVENT_REFRESH,
                now,
                level=JournalLevel.INFO if result.ok else JournalLevel.WARN,
                reason_codes=[code],
                payload={
                    "refreshed": result.refreshed,
                    "skipped": result.skipped,
                    "reason": result.reason,
                    "stale": result.state.stale,
                    "event_count": len(result.state.events),
                    "call_counter": result.state.meta.call_counter,
                },
            ),
            self.settings.journal_entry_max_bytes,
        )
