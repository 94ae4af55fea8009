"""Fade rejections at the boundaries of a 15m range."""

from fxengine.config import FXSettings
from fxengine.core.reasons import ReasonCode
from fxengine.core.types import (
    ModuleName,
    ModuleOutcome,
    ModuleSignal,
    PairMetrics,
    Regime,
    RegimePacket,
    Side,
)
from fxengine.market_data import PairMarketState

MIN_CANDLES = 50
LOOKBACK_BARS = 44


def range_boundaries(candles, lookback: int = LOOKBACK_BARS) -> tuple[float, float] | None:
    """(lower, upper) from the ``lookback`` bars before the last; None without levels."""
    window = candles[-(lookback + 1):-1]
    highs = [c.high for c in window if c.high > 0]
    lows = [c.low for c in window if c.low > 0]
    if not highs or not lows:
        return None
    return min(lows), max(highs)


def evaluate_range_fade(
    pair: str,
    packet: RegimePacket,
    market: PairMarketState,
    metrics: PairMetrics,
    settings: FXSettings,
) -> ModuleOutcome:
    if packet.regime != Regime.RANGE:
        return ModuleOutcome(reason_codes=[ReasonCode.MODULE_RANGE_FADE_REGIME_NOT_RANGE])

    candles = market.candles.m15
    if len(candles) < MIN_CANDLES:
        return ModuleOutcome(reason_codes=[ReasonCode.MODULE_RANGE_FADE_NOT_ENOUGH_DATA])

    levels = range_boundaries(candles)
    if levels is None:
        return ModuleOutcome(reason_codes=[ReasonCode.MODULE_RANGE_FADE_LEVELS_UNAVAILABLE])
    lower, upper = levels

    min_width = metrics.atr1h * settings.range_fade_min_width_atr1h
    if not (upper - lower > min_width and min_width > 0):
        return ModuleOutcome(reason_codes=[ReasonCode.MODULE_RANGE_FADE_RANGE_TOO_NARROW])
    if metrics.trend_strength > settings.range_fade_max_trend_strength:
        return ModuleOutcome(reason_codes=[ReasonCode.MODULE_RANGE_FADE_TREND_TOO_STRONG])
    if metrics.chop_score < settings.range_fade_min_chop_score:
        return ModuleOutcome(reason_codes=[ReasonCode.MODULE_RANGE_FADE_NOT_CHOPPY_ENOUGH])

    last, prev = candles[-1], candles[-2]
    buffer = max(market.atr5m * settings.range_fade_atr_buffer, 1e-9)
    breakout_threshold = market.atr5m * settings.range_fade_breakout_atr5m
    candle_range = max(0.0, last.high - last.low)
    broke_out = last.close > upper + buffer or last.close < lower - buffer

    if (breakout_threshold > 0 and candle_range >= breakout_threshold) or broke_out:
        return ModuleOutcome(
            reason_codes=[ReasonCode.MODULE_RANGE_FADE_BREAKOUT_KILL_SWITCH], kill_switch=True
        )

    confidence = max(0.55, packet.confidence)

    upper_touch = last.high >= upper - buffer
    if (
        upper_touch
        and prev.close >= upper - buffer
        and last.close < upper
        and packet.permission.allows_short()
    ):
        return ModuleOutcome(
            signal=ModuleSignal(
                pair=pair,
                module=ModuleName.RANGE_FADE,
                side=Side.SELL,
                entry_price=last.close,
                stop_price=upper + buffer,
                confidence=confidence,
                reason_codes=[ReasonCode.MODULE_RANGE_FADE_SHORT_REJECTION],
            ),
            reason_codes=[ReasonCode.MODULE_RANGE_FADE_SIGNAL_SHORT],
        )

    lower_touch = last.low <= lower + buffer
    if (
        lower_touch
        and prev.close <= lower + buffer
        and last.close > lower
        and packet.permission.allows_long()
    ):
        return ModuleOutcome(
            signal=ModuleSignal(
                pair=pair,
                module=ModuleName.RANGE_FADE,
                side=Side.BUY,
                entry_price=last.close,
                stop_price=lower - buffer,
                confidence=confidence,
                reason_codes=[ReasonCode.MODULE_RANGE_FADE_LONG_REJECTION],
            ),
            reason_codes=[ReasonCode.MODULE_RANGE_FADE_SIGNAL_LONG],
        )

    return ModuleOutcome(reason_codes=[ReasonCode.MODULE_RANGE_FADE_NO_REJECTION_SIGNAL])
