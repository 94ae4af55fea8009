"""Position lifecycle: exit rules, time stops, reentry locks and packet staleness.

Every function takes ``now`` explicitly. ``evaluate_position`` combines the
rules into the per-position WAIT / TRIM / CLOSE decision used by the manage
cycle.
"""

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from fxengine.config import FXSettings
from fxengine.core.reasons import ReasonCode, has_reason
from fxengine.core.sessions import as_utc
from fxengine.core.types import (
    Candle,
    EconomicEvent,
    LifecycleAction,
    Permission,
    PositionContext,
    Regime,
    RegimePacket,
    Side,
    TrailingMode,
    TrendDirection,
)
from fxengine.logging import get_logger
from fxengine.market_data import PairMarketState

logger = get_logger(__name__)

BAR_5M = timedelta(minutes=5)


# ---------------------------------------------------------------------------
# Packet staleness
# ---------------------------------------------------------------------------


def packet_age_minutes(packet: RegimePacket, now: datetime) -> float:
    return (as_utc(now) - as_utc(packet.generated_at)).total_seconds() / 60.0


def is_packet_stale(packet: RegimePacket, now: datetime, stale_minutes: float) -> bool:
    """Stale strictly after ``stale_minutes``; exactly at the threshold is still fresh."""
    return as_utc(now) - as_utc(packet.generated_at) > timedelta(minutes=stale_minutes)


# ---------------------------------------------------------------------------
# Invalidation
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class InvalidationCheck:
    invalidated: bool
    reason_code: ReasonCode | None = None


def _finite_positive(value: float | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number > 0 else None


def should_invalidate_by_stop(
    context: PositionContext, open_side: Side, bid: float | None, offer: float | None
) -> InvalidationCheck:
    """Long exits when the bid trades below the stop, short when the offer trades above.

    A broker side that disagrees with the stored context is reported as a
    conflict and never acted on.
    """
    if open_side != context.side:
        logger.warning(
            f"Invalidation direction conflict on {context.pair}: "
            f"broker={open_side.value} context={context.side.value}"
        )
        return InvalidationCheck(False, ReasonCode.INVALIDATION_DIRECTION_CONFLICT)

    stop = _finite_positive(context.current_stop_price) or _finite_positive(context.initial_stop_price)
    if stop is None:
        return InvalidationCheck(False)

    if open_side == Side.BUY:
        bid = _finite_positive(bid)
        if bid is not None and bid < stop:
            return InvalidationCheck(True, ReasonCode.STOP_INVALIDATED_LONG)
        return InvalidationCheck(False)

    offer = _finite_positive(offer)
    if offer is not None and offer > stop:
        return InvalidationCheck(True, ReasonCode.STOP_INVALIDATED_SHORT)
    return InvalidationCheck(False)


def is_opposite_permission(side: Side, permission: Permission) -> bool:
    if side == Side.BUY:
        return permission == Permission.SHORT_ONLY
    return permission == Permission.LONG_ONLY


def should_invalidate_fallback(
    open_side: Side, trend_direction_1h: TrendDirection, packet: RegimePacket | None
) -> InvalidationCheck:
    """Structural exit when the 1h trend opposes the position and the packet no longer supports it."""
    if packet is None:
        return InvalidationCheck(False)
    permission_against = packet.permission == Permission.FLAT or is_opposite_permission(
        open_side, packet.permission
    )
    if open_side == Side.BUY and trend_direction_1h == TrendDirection.DOWN and permission_against:
        return InvalidationCheck(True, ReasonCode.STRUCTURE_INVALIDATION_FALLBACK_LONG)
    if open_side == Side.SELL and trend_direction_1h == TrendDirection.UP and permission_against:
        return InvalidationCheck(True, ReasonCode.STRUCTURE_INVALIDATION_FALLBACK_SHORT)
    return InvalidationCheck(False)


def has_active_event_window(reason_codes: Iterable[ReasonCode | str]) -> bool:
    return has_reason(reason_codes, ReasonCode.EVENT_WINDOW_ACTIVE_BLOCK)


# ---------------------------------------------------------------------------
# Progress and time stops
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PositionProgress:
    age_bars_5m: int
    age_hours: float
    r_value: float
    mfe_r: float


def compute_position_progress(
    side: Side,
    entry_price: float,
    initial_stop_price: float,
    opened_at: datetime,
    now: datetime,
    candles_5m: Sequence[Candle],
) -> PositionProgress:
    """Bar age since open, R (entry to initial stop) and best favourable excursion in R.

    Only 5m candles with ``opened_at <= timestamp <= now`` count towards MFE.
    """
    opened_at, now = as_utc(opened_at), as_utc(now)
    elapsed = max(timedelta(0), now - opened_at)
    age_bars = int(elapsed // BAR_5M)
    r_value = abs(entry_price - initial_stop_price)

    best = 0.0
    for candle in candles_5m:
        ts = as_utc(candle.timestamp)
        if ts < opened_at or ts > now:
            continue
        excursion = candle.high - entry_price if side == Side.BUY else entry_price - candle.low
        if math.isfinite(excursion) and excursion > best:
            best = excursion

    mfe_r = best / r_value if r_value > 0 else 0.0
    return PositionProgress(
        age_bars_5m=age_bars,
        age_hours=elapsed.total_seconds() / 3600.0,
        r_value=r_value,
        mfe_r=mfe_r,
    )


def should_time_stop_no_follow_through(
    age_bars_5m: int, mfe_r: float, threshold_bars: int, min_follow_r: float
) -> bool:
    return age_bars_5m >= threshold_bars and mfe_r < min_follow_r


def should_time_stop_max_hold(
    age_hours: float, max_hold_hours: float, trend_aligned: bool, trailing_active: bool
) -> bool:
    if age_hours < max_hold_hours:
        return False
    return not (trend_aligned and trailing_active)


# ---------------------------------------------------------------------------
# Reentry locks
# ---------------------------------------------------------------------------


def resolve_reentry_lock_minutes(
    reason_codes: Iterable[ReasonCode | str],
    settings: FXSettings,
    stop_invalidation_stress: bool = False,
) -> int | None:
    """Lock length for the exit that produced ``reason_codes``; None means no lock."""
    codes = list(reason_codes)
    if has_reason(codes, ReasonCode.EVENT_HIGH_FORCE_CLOSE):
        return settings.reentry_lock_minutes_event_risk
    if has_reason(codes, ReasonCode.REGIME_FLIP_CLOSE):
        return settings.reentry_lock_minutes_regime_flip
    if has_reason(codes, ReasonCode.CLOSE_TIME_STOP_NO_PROGRESS) or has_reason(
        codes, ReasonCode.CLOSE_TIME_STOP_MAX_HOLD
    ):
        return settings.reentry_lock_minutes_time_stop
    if has_reason(codes, ReasonCode.STOP_INVALIDATED_LONG) or has_reason(
        codes, ReasonCode.STOP_INVALIDATED_SHORT
    ):
        minutes = settings.reentry_lock_minutes_stop_invalidated
        if stop_invalidation_stress:
            minutes *= 2
        return minutes if minutes > 0 else None
    return None


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class LifecycleDecision:
    action: LifecycleAction
    reason_codes: list[ReasonCode] = field(default_factory=list)
    close_fraction: float | None = None
    new_stop_price: float | None = None
    trailing_mode: TrailingMode | None = None


def tp1_price_for(context: PositionContext, tp1_r_multiple: float) -> float:
    if context.tp1_price is not None:
        return context.tp1_price
    distance = context.initial_risk_distance * tp1_r_multiple
    return context.entry_price + distance if context.side == Side.BUY else context.entry_price - distance


def is_regime_flip(side: Side, packet: RegimePacket | None) -> bool:
    if packet is None:
        return False
    if side == Side.BUY:
        return packet.regime == Regime.TREND_DOWN
    return packet.regime == Regime.TREND_UP


def evaluate_position(
    context: PositionContext,
    open_side: Side,
    packet: RegimePacket | None,
    market: PairMarketState | None,
    force_close_events: Sequence[EconomicEvent],
    now: datetime,
    settings: FXSettings,
) -> LifecycleDecision:
    """Decide WAIT, TRIM or CLOSE for one open position.

    Closing rules run first, in order: event force close, regime flip, stop
    invalidation (or the structural fallback when no quote-based check is
    possible), then the two time stops. A first-target hit trims and moves the
    stop to breakeven; an active trail only ever tightens the stop.
    """
    if force_close_events:
        return LifecycleDecision(LifecycleAction.CLOSE, [ReasonCode.EVENT_HIGH_FORCE_CLOSE])

    if is_regime_flip(context.side, packet):
        return LifecycleDecision(LifecycleAction.CLOSE, [ReasonCode.REGIME_FLIP_CLOSE])

    if market is None:
        return LifecycleDecision(LifecycleAction.WAIT, [ReasonCode.QUOTE_UNAVAILABLE])

    stop_check = should_invalidate_by_stop(context, open_side, market.bid, market.offer)
    if stop_check.reason_code == ReasonCode.INVALIDATION_DIRECTION_CONFLICT:
        return LifecycleDecision(LifecycleAction.WAIT, [ReasonCode.INVALIDATION_DIRECTION_CONFLICT])
    if stop_check.invalidated:
        return LifecycleDecision(LifecycleAction.CLOSE, [stop_check.reason_code])

    quote_usable = _finite_positive(market.bid) is not None and _finite_positive(market.offer) is not None
    if not quote_usable:
        fallback = should_invalidate_fallback(open_side, market.trend_direction_1h, packet)
        if fallback.invalidated:
            return LifecycleDecision(LifecycleAction.CLOSE, [fallback.reason_code])
        return LifecycleDecision(LifecycleAction.WAIT, [ReasonCode.QUOTE_UNAVAILABLE])

    progress = compute_position_progress(
        context.side,
        context.entry_price,
        context.initial_stop_price,
        context.opened_at,
        now,
        market.candles.m5,
    )
    if should_time_stop_no_follow_through(
        progress.age_bars_5m, progress.mfe_r, settings.time_stop_no_follow_bars, settings.time_stop_min_follow_r
    ):
        return LifecycleDecision(LifecycleAction.CLOSE, [ReasonCode.CLOSE_TIME_STOP_NO_PROGRESS])

    trend_aligned = (context.side == Side.BUY and market.trend_direction_1h == TrendDirection.UP) or (
        context.side == Side.SELL and market.trend_direction_1h == TrendDirection.DOWN
    )
    if should_time_stop_max_hold(
        progress.age_hours, settings.time_stop_max_hold_hours, trend_aligned, context.trailing_active
    ):
        return LifecycleDecision(LifecycleAction.CLOSE, [ReasonCode.CLOSE_TIME_STOP_MAX_HOLD])

    mark = market.bid if context.side == Side.BUY else market.offer
    if context.partial_taken_pct <= 0:
        tp1 = tp1_price_for(context, settings.tp1_r_multiple)
        reached = mark >= tp1 if context.side == Side.BUY else mark <= tp1
        if reached:
            return LifecycleDecision(
                LifecycleAction.TRIM,
                [ReasonCode.TP1_PARTIAL_TAKEN],
                close_fraction=settings.partial_close_pct / 100.0,
                new_stop_price=context.entry_price,
                trailing_mode=TrailingMode.STRUCTURE,
            )

    if context.trailing_active and market.atr1h > 0:
        distance = market.atr1h * settings.trailing_atr_buffer
        if context.side == Side.BUY:
            candidate = mark - distance
            tighter = candidate > context.current_stop_price
        else:
            candidate = mark + distance
            tighter = candidate < context.current_stop_price
        if tighter:
            return LifecycleDecision(
                LifecycleAction.WAIT, [ReasonCode.TRAILING_STOP_RATCHET], new_stop_price=candidate
            )

    return LifecycleDecision(LifecycleAction.WAIT, [ReasonCode.HOLD_POSITION])
