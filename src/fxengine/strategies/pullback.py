"""Trend pullback entries on the 5m chart."""

from fxengine.config import FXSettings
from fxengine.core import indicators
from fxengine.core.reasons import ReasonCode
from fxengine.core.types import (
    ModuleName,
    ModuleOutcome,
    ModuleSignal,
    PairMetrics,
    Regime,
    RegimePacket,
    Side,
    TrendDirection,
)
from fxengine.market_data import PairMarketState

MIN_CLOSES = 30
ZONE_TOUCH_BARS = 6
SWING_BARS = 8


def evaluate_pullback(
    pair: str,
    packet: RegimePacket,
    market: PairMarketState,
    metrics: PairMetrics,
    settings: FXSettings,
) -> ModuleOutcome:
    """Enter with the 1h trend after price returns to the EMA20/EMA50 zone.

    Triggers on a close back through EMA20 in the trend direction, or on a
    close inside the zone when the zone was touched in the last six bars.
    """
    candles = market.candles.m5
    c5 = indicators.closes(candles)
    if c5.size < MIN_CLOSES:
        return ModuleOutcome(reason_codes=[ReasonCode.MODULE_PULLBACK_NOT_ENOUGH_DATA])

    last_close = float(c5[-1])
    prev_close = float(c5[-2])
    e20 = indicators.last_value(indicators.ema_series(c5, 20), last_close)
    e50 = indicators.last_value(indicators.ema_series(c5, 50), last_close)
    zone_low, zone_high = min(e20, e50), max(e20, e50)

    in_zone_now = zone_low <= last_close <= zone_high
    touched_recently = any(zone_low <= value <= zone_high for value in c5[-ZONE_TOUCH_BARS:])
    zone_entry = in_zone_now and touched_recently
    buffer = market.atr5m * settings.pullback_atr_buffer
    confidence = max(0.55, packet.confidence)

    if (
        packet.regime == Regime.TREND_UP
        and market.trend_direction_1h == TrendDirection.UP
        and packet.permission.allows_long()
    ):
        crossed = prev_close <= e20 < last_close
        if crossed or zone_entry:
            stop = float(indicators.lows(candles[-SWING_BARS:]).min()) - buffer
            return ModuleOutcome(
                signal=ModuleSignal(
                    pair=pair,
                    module=ModuleName.PULLBACK,
                    side=Side.BUY,
                    entry_price=last_close,
                    stop_price=stop,
                    confidence=confidence,
                    reason_codes=[ReasonCode.MODULE_PULLBACK_LONG_TRIGGER],
                ),
                reason_codes=[ReasonCode.MODULE_PULLBACK_LONG_TRIGGER],
            )

    if (
        packet.regime == Regime.TREND_DOWN
        and market.trend_direction_1h == TrendDirection.DOWN
        and packet.permission.allows_short()
    ):
        crossed = prev_close >= e20 > last_close
        if crossed or zone_entry:
            stop = float(indicators.highs(candles[-SWING_BARS:]).max()) + buffer
            return ModuleOutcome(
                signal=ModuleSignal(
                    pair=pair,
                    module=ModuleName.PULLBACK,
                    side=Side.SELL,
                    entry_price=last_close,
                    stop_price=stop,
                    confidence=confidence,
                    reason_codes=[ReasonCode.MODULE_PULLBACK_SHORT_TRIGGER],
                ),
                reason_codes=[ReasonCode.MODULE_PULLBACK_SHORT_TRIGGER],
            )

    return ModuleOutcome(reason_codes=[ReasonCode.MODULE_PULLBACK_NO_TRIGGER])
