"""Stable reason codes attached to every engine decision."""

from collections.abc import Iterable
from enum import Enum


class ReasonCode(str, Enum):
    """Reason code enumeration.

    Values are persisted in snapshots and the journal, so they never change.
    """

    # Event gate
    EVENT_DATA_STALE_ALLOW_NORMAL_RISK = "EVENT_DATA_STALE_ALLOW_NORMAL_RISK"
    EVENT_DATA_STALE_BLOCK_NON_NORMAL_RISK = "EVENT_DATA_STALE_BLOCK_NON_NORMAL_RISK"
    EVENT_WINDOW_ACTIVE_BLOCK = "EVENT_WINDOW_ACTIVE_BLOCK"
    EVENT_WINDOW_CLEAR = "EVENT_WINDOW_CLEAR"
    EVENT_REFRESH_OK = "EVENT_REFRESH_OK"
    EVENT_REFRESH_FAILED = "EVENT_REFRESH_FAILED"
    EVENT_REFRESH_SKIPPED = "EVENT_REFRESH_SKIPPED"

    # Selector
    SPREAD_TO_ATR_TOO_HIGH = "SPREAD_TO_ATR_TOO_HIGH"
    ATR_TOO_LOW = "ATR_TOO_LOW"
    DEAD_SESSION = "DEAD_SESSION"
    POST_SHOCK_COOLDOWN = "POST_SHOCK_COOLDOWN"
    SESSION_TRANSITION_SPREAD_STRESS = "SESSION_TRANSITION_SPREAD_STRESS"
    SPREAD_TO_ATR_TRANSITION_CAP_EXCEEDED = "SPREAD_TO_ATR_TRANSITION_CAP_EXCEEDED"
    SCORE_BELOW_MIN = "SCORE_BELOW_MIN"
    MARKET_DATA_UNAVAILABLE = "MARKET_DATA_UNAVAILABLE"
    ELIGIBLE = "ELIGIBLE"

    # Regime packets
    AI_PACKET_OK = "AI_PACKET_OK"
    AI_PACKET_FALLBACK = "AI_PACKET_FALLBACK"
    AI_FALLBACK_PACKET = "AI_FALLBACK_PACKET"
    AI_NOTES_EMPTY = "AI_NOTES_EMPTY"
    CONFIDENCE_UNDER_055_FORCE_FLAT = "CONFIDENCE_UNDER_055_FORCE_FLAT"
    RISK_EXTREME_DISABLE_MODULES = "RISK_EXTREME_DISABLE_MODULES"
    EVENT_GATE_ACTIVE_DISABLE_MODULES = "EVENT_GATE_ACTIVE_DISABLE_MODULES"
    MODULE_EXCLUSIVITY_ENFORCED = "MODULE_EXCLUSIVITY_ENFORCED"

    # Risk
    SIZE_HYBRID_RISK = "SIZE_HYBRID_RISK"
    SIZE_FALLBACK_NOTIONAL = "SIZE_FALLBACK_NOTIONAL"
    NO_TRADE_RISK_CAP_PORTFOLIO = "NO_TRADE_RISK_CAP_PORTFOLIO"
    NO_TRADE_RISK_CAP_CURRENCY = "NO_TRADE_RISK_CAP_CURRENCY"
    SPREAD_PIPS_CAP_EXCEEDED = "SPREAD_PIPS_CAP_EXCEEDED"
    NO_TRADE_SPREAD_TOO_HIGH = "NO_TRADE_SPREAD_TOO_HIGH"
    SPREAD_TO_ATR_RISK_CAP_EXCEEDED = "SPREAD_TO_ATR_RISK_CAP_EXCEEDED"
    SPREAD_TO_ATR_TRANSITION_RISK_CAP_EXCEEDED = "SPREAD_TO_ATR_TRANSITION_RISK_CAP_EXCEEDED"
    ROLLOVER_ENTRY_BLOCK_WINDOW = "ROLLOVER_ENTRY_BLOCK_WINDOW"
    NO_TRADE_ROLLOVER_WINDOW = "NO_TRADE_ROLLOVER_WINDOW"
    VOLATILITY_SHOCK_COOLDOWN_SET = "VOLATILITY_SHOCK_COOLDOWN_SET"
    PAIR_COOLDOWN_ACTIVE = "PAIR_COOLDOWN_ACTIVE"
    CURRENCY_EXPOSURE_LIMIT = "CURRENCY_EXPOSURE_LIMIT"
    RISK_GREEN = "RISK_GREEN"

    # Entry modules
    MODULE_PULLBACK_LONG_TRIGGER = "MODULE_PULLBACK_LONG_TRIGGER"
    MODULE_PULLBACK_SHORT_TRIGGER = "MODULE_PULLBACK_SHORT_TRIGGER"
    MODULE_PULLBACK_NOT_ENOUGH_DATA = "MODULE_PULLBACK_NOT_ENOUGH_DATA"
    MODULE_PULLBACK_NO_TRIGGER = "MODULE_PULLBACK_NO_TRIGGER"
    MODULE_BREAKOUT_RETEST_LONG_TRIGGER = "MODULE_BREAKOUT_RETEST_LONG_TRIGGER"
    MODULE_BREAKOUT_RETEST_SHORT_TRIGGER = "MODULE_BREAKOUT_RETEST_SHORT_TRIGGER"
    MODULE_BREAKOUT_RETEST_NOT_ENOUGH_DATA = "MODULE_BREAKOUT_RETEST_NOT_ENOUGH_DATA"
    MODULE_BREAKOUT_RETEST_NO_TRIGGER = "MODULE_BREAKOUT_RETEST_NO_TRIGGER"
    MODULE_RANGE_FADE_REGIME_NOT_RANGE = "MODULE_RANGE_FADE_REGIME_NOT_RANGE"
    MODULE_RANGE_FADE_NOT_ENOUGH_DATA = "MODULE_RANGE_FADE_NOT_ENOUGH_DATA"
    MODULE_RANGE_FADE_LEVELS_UNAVAILABLE = "MODULE_RANGE_FADE_LEVELS_UNAVAILABLE"
    MODULE_RANGE_FADE_RANGE_TOO_NARROW = "MODULE_RANGE_FADE_RANGE_TOO_NARROW"
    MODULE_RANGE_FADE_TREND_TOO_STRONG = "MODULE_RANGE_FADE_TREND_TOO_STRONG"
    MODULE_RANGE_FADE_NOT_CHOPPY_ENOUGH = "MODULE_RANGE_FADE_NOT_CHOPPY_ENOUGH"
    MODULE_RANGE_FADE_BREAKOUT_KILL_SWITCH = "MODULE_RANGE_FADE_BREAKOUT_KILL_SWITCH"
    MODULE_RANGE_FADE_SHORT_REJECTION = "MODULE_RANGE_FADE_SHORT_REJECTION"
    MODULE_RANGE_FADE_LONG_REJECTION = "MODULE_RANGE_FADE_LONG_REJECTION"
    MODULE_RANGE_FADE_SIGNAL_SHORT = "MODULE_RANGE_FADE_SIGNAL_SHORT"
    MODULE_RANGE_FADE_SIGNAL_LONG = "MODULE_RANGE_FADE_SIGNAL_LONG"
    MODULE_RANGE_FADE_NO_REJECTION_SIGNAL = "MODULE_RANGE_FADE_NO_REJECTION_SIGNAL"
    RANGE_FADE_DISABLED_UNTIL_NEXT_REEVAL = "RANGE_FADE_DISABLED_UNTIL_NEXT_REEVAL"

    # Execute cycle
    NO_PACKET_AVAILABLE = "NO_PACKET_AVAILABLE"
    PACKET_STALE = "PACKET_STALE"
    REENTRY_LOCK_ACTIVE = "REENTRY_LOCK_ACTIVE"
    POSITION_ALREADY_OPEN = "POSITION_ALREADY_OPEN"
    MARKET_CLOSED_WEEKEND = "MARKET_CLOSED_WEEKEND"
    MARKET_OPEN = "MARKET_OPEN"
    ENTRY_BLOCKED = "ENTRY_BLOCKED"
    NO_MODULE_SIGNAL = "NO_MODULE_SIGNAL"
    EXECUTION_FAILED = "EXECUTION_FAILED"

    # Position lifecycle
    STOP_INVALIDATED_LONG = "STOP_INVALIDATED_LONG"
    STOP_INVALIDATED_SHORT = "STOP_INVALIDATED_SHORT"
    STRUCTURE_INVALIDATION_FALLBACK_LONG = "STRUCTURE_INVALIDATION_FALLBACK_LONG"
    STRUCTURE_INVALIDATION_FALLBACK_SHORT = "STRUCTURE_INVALIDATION_FALLBACK_SHORT"
    INVALIDATION_DIRECTION_CONFLICT = "INVALIDATION_DIRECTION_CONFLICT"
    EVENT_HIGH_FORCE_CLOSE = "EVENT_HIGH_FORCE_CLOSE"
    REGIME_FLIP_CLOSE = "REGIME_FLIP_CLOSE"
    CLOSE_TIME_STOP_NO_PROGRESS = "CLOSE_TIME_STOP_NO_PROGRESS"
    CLOSE_TIME_STOP_MAX_HOLD = "CLOSE_TIME_STOP_MAX_HOLD"
    TP1_PARTIAL_TAKEN = "TP1_PARTIAL_TAKEN"
    TRAILING_STOP_RATCHET = "TRAILING_STOP_RATCHET"
    HOLD_POSITION = "HOLD_POSITION"
    POSITION_NOT_OPEN = "POSITION_NOT_OPEN"
    QUOTE_UNAVAILABLE = "QUOTE_UNAVAILABLE"

    # Cycle summaries
    FOREX_SCAN_COMPLETED = "FOREX_SCAN_COMPLETED"
    FOREX_REGIME_COMPLETED = "FOREX_REGIME_COMPLETED"
    FOREX_EXECUTION_CYCLE_COMPLETED = "FOREX_EXECUTION_CYCLE_COMPLETED"
    FOREX_MANAGE_CYCLE_COMPLETED = "FOREX_MANAGE_CYCLE_COMPLETED"


def merge_reasons(*groups: Iterable[ReasonCode | str]) -> list[ReasonCode | str]:
    """Concatenate reason groups, keeping first-seen order and dropping duplicates.

    Known codes are returned as ``ReasonCode`` members; free-form codes (for
    example classifier notes) are kept as trimmed strings.
    """
    merged: list[ReasonCode | str] = []
    seen: set[str] = set()
    for group in groups:
        for raw in group:
            code = coerce_reason(raw)
            if code is None:
                continue
            key = code.value if isinstance(code, ReasonCode) else code
            if key in seen:
                continue
            seen.add(key)
            merged.append(code)
    return merged


def coerce_reason(raw: ReasonCode | str | None) -> ReasonCode | str | None:
    if isinstance(raw, ReasonCode):
        return raw
    text = str(raw or "").strip()
    if not text:
        return None
    try:
        return ReasonCode(text)
    except ValueError:
        return text


def has_reason(codes: Iterable[ReasonCode | str], code: ReasonCode) -> bool:
    return any(str(getattr(item, "value", item)) == code.value for item in codes)
