"""Breakout, retest and confirmation on the 15m chart."""

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

MIN_CANDLES = 40
RANGE_BARS = 30


def evaluate_breakout_retest(
    pair: str,
    packet: RegimePacket,
    market: PairMarketState,
    metrics: PairMetrics,
    settings: FXSettings,
) -> ModuleOutcome:
    """Three-candle pattern against the range of the 30 bars before it.

    c1 closes beyond the range extreme by the ATR buffer, c2 dips back into the
    buffer zone but closes outside it, c3 closes beyond both the extreme and c2.
    """
    candles = market.candles.m15
    if len(candles) < MIN_CANDLES:
        return ModuleOutcome(reason_codes=[ReasonCode.MODULE_BREAKOUT_RETEST_NOT_ENOUGH_DATA])

    window = candles[-(RANGE_BARS + 3):-3]
    range_high = max(c.high for c in window)
    range_low = min(c.low for c in window)
    c1, c2, c3 = candles[-3], candles[-2], candles[-1]
    buffer = market.atr5m * settings.breakout_atr_buffer
    confidence = max(0.6, packet.confidence)

    if packet.regime in (Regime.TREND_UP, Regime.HIGH_VOL) and packet.permission.allows_long():
        upper = range_high + buffer
        breakout = c1.close > upper
        retest = c2.low <= upper and c2.close > upper
        confirm = c3.close > range_high and c3.close > c2.close
        if breakout and retest and confirm:
            stop = min(c1.low, c2.low, c3.low) - buffer
            return ModuleOutcome(
                signal=ModuleSignal(
                    pair=pair,
                    module=ModuleName.BREAKOUT_RETEST,
                    side=Side.BUY,
                    entry_price=c3.close,
                    stop_price=stop,
                    confidence=confidence,
                    reason_codes=[ReasonCode.MODULE_BREAKOUT_RETEST_LONG_TRIGGER],
                ),
                reason_codes=[ReasonCode.MODULE_BREAKOUT_RETEST_LONG_TRIGGER],
            )

    if packet.regime in (Regime.TREND_DOWN, Regime.HIGH_VOL) and packet.permission.allows_short():
        lower = range_low - buffer
        breakout = c1.close < lower
        retest = c2.high >= lower and c2.close < lower
        confirm = c3.close < range_low and c3.close < c2.close
        if breakout and retest and confirm:
            stop = max(c1.high, c2.high, c3.high) + buffer
            return ModuleOutcome(
                signal=ModuleSignal(
                    pair=pair,
                    module=ModuleName.BREAKOUT_RETEST,
                    side=Side.SELL,
                    entry_price=c3.close,
                    stop_price=stop,
                    confidence=confidence,
                    reason_codes=[ReasonCode.MODULE_BREAKOUT_RETEST_SHORT_TRIGGER],
                ),
                reason_codes=[ReasonCode.MODULE_BREAKOUT_RETEST_SHORT_TRIGGER],
            )

    return ModuleOutcome(reason_codes=[ReasonCode.MODULE_BREAKOUT_RETEST_NO_TRIGGER])
