"""Trading-session, rollover and weekend market-hours helpers.

All functions take ``now`` explicitly as a timezone-aware UTC ``datetime``.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fxengine.core.reasons import ReasonCode
from fxengine.core.types import SessionTag

SESSION_BOUNDARY_HOURS_UTC: tuple[int, ...] = (0, 7, 12, 16, 21)

_SESSION_FACTORS = {
    SessionTag.OVERLAP: 1.2,
    SessionTag.LONDON: 1.0,
    SessionTag.NEW_YORK: 1.0,
    SessionTag.ASIA: 0.8,
}


def as_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def session_tag_for(now: datetime) -> SessionTag:
    hour = as_utc(now).hour
    if 7 <= hour < 12:
        return SessionTag.LONDON
    if 12 <= hour < 16:
        return SessionTag.OVERLAP
    if 16 <= hour < 21:
        return SessionTag.NEW_YORK
    if 0 <= hour < 7:
        return SessionTag.ASIA
    return SessionTag.DEAD_HOURS


def session_factor(tag: SessionTag | str) -> float:
    try:
        return _SESSION_FACTORS.get(SessionTag(tag), 0.6)
    except ValueError:
        return 0.6


def minutes_to_nearest_session_boundary(now: datetime) -> float:
    """Distance in minutes to the closest session boundary, either side."""
    now = as_utc(now)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    best = float("inf")
    for day_offset in (-1, 0, 1):
        for hour in SESSION_BOUNDARY_HOURS_UTC:
            boundary = day_start + timedelta(days=day_offset, hours=hour)
            distance = abs((now - boundary).total_seconds()) / 60.0
            if distance < best:
                best = distance
    return best


def is_within_session_transition_buffer(now: datetime, buffer_minutes: float) -> bool:
    if buffer_minutes <= 0:
        return False
    return minutes_to_nearest_session_boundary(now) <= buffer_minutes


def tighten_spread_to_atr_cap(base_cap: float, multiplier: float) -> float:
    """Transition cap; the multiplier is clamped to (0, 1] so it only ever tightens."""
    if not (multiplier > 0):
        return base_cap
    return base_cap * min(1.0, multiplier)


def minutes_until_next_rollover(now: datetime, rollover_hour_utc: int = 0) -> float:
    now = as_utc(now)
    hour = max(0, min(23, int(rollover_hour_utc)))
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now > target:
        target += timedelta(days=1)
    return max(0.0, (target - now).total_seconds() / 60.0)


def is_within_pre_rollover_window(
    now: datetime, window_minutes: float, rollover_hour_utc: int = 0
) -> bool:
    if not (window_minutes > 0):
        return False
    return minutes_until_next_rollover(now, rollover_hour_utc) <= window_minutes


@dataclass(slots=True, frozen=True)
class MarketGateState:
    market_closed: bool
    reason_code: ReasonCode
    reopens_at: datetime | None


def _next_sunday_at(now: datetime, hour: int) -> datetime:
    # Monday=0 ... Sunday=6
    days_until_sunday = (6 - now.weekday()) % 7
    sunday = (now + timedelta(days=days_until_sunday)).replace(
        hour=hour, minute=0, second=0, microsecond=0
    )
    if sunday <= now:
        sunday += timedelta(days=7)
    return sunday


def evaluate_market_gate(
    now: datetime, friday_close_hour_utc: int = 22, sunday_open_hour_utc: int = 22
) -> MarketGateState:
    """Weekend closure between Friday close and Sunday open (UTC)."""
    now = as_utc(now)
    weekday = now.weekday()

    friday_closed = weekday == 4 and now.hour >= friday_close_hour_utc
    saturday_closed = weekday == 5
    sunday_closed = weekday == 6 and now.hour < sunday_open_hour_utc

    if not (friday_closed or saturday_closed or sunday_closed):
        return MarketGateState(market_closed=False, reason_code=ReasonCode.MARKET_OPEN, reopens_at=None)

    if sunday_closed:
        reopens_at = now.replace(hour=sunday_open_hour_utc, minute=0, second=0, microsecond=0)
    else:
        reopens_at = _next_sunday_at(now, sunday_open_hour_utc)
    return MarketGateState(
        market_closed=True, reason_code=ReasonCode.MARKET_CLOSED_WEEKEND, reopens_at=reopens_at
    )
