"""Tests for the deterministic entry modules."""

from datetime import timedelta

import pytest

from fxengine.config import FXSettings
from fxengine.core.reasons import ReasonCode
from fxengine.core.types import Candle, ModuleName, Permission, Regime, Side, TrendDirection
from fxengine.market_data import CandleSet
from fxengine.strategies import (
    MODULE_REGISTRY,
    evaluate_breakout_retest,
    evaluate_pullback,
    evaluate_range_fade,
    range_boundaries,
    run_modules,
)

from fx_helpers import NOW, candles_from_closes, make_metrics, make_packet, make_state, pullback_long_candles

M15 = timedelta(minutes=15)


def _candle(index: int, open_: float, high: float, low: float, close: float) -> Candle:
    return Candle(timestamp=NOW - M15 * (60 - index), open=open_, high=high, low=low, close=close)


def _breakout_candles(retest_close: float = 1.1016) -> list[Candle]:
    """40 bars inside 1.1000-1.1010, then breakout, retest and confirmation."""
    candles = [_candle(i, 1.1004, 1.1010, 1.1000, 1.1006) for i in range(40)]
    candles.append(_candle(40, 1.1006, 1.1022, 1.1008, 1.1020))
    candles.append(_candle(41, 1.1020, 1.1020, 1.1011, retest_close))
    candles.append(_candle(42, 1.1016, 1.1026, 1.1015, 1.1025))
    return candles


def _range_candles(last: Candle, prev_close: float = 1.1049) -> list[Candle]:
    """48 bars spanning 1.1000-1.1050, a bar closing near the top, then ``last``."""
    candles = [_candle(i, 1.1020, 1.1050, 1.1000, 1.1030) for i in range(48)]
    candles.append(_candle(48, 1.1030, 1.1050, 1.1028, prev_close))
    candles.append(last)
    return candles


# ---------------------------------------------------------------------------
# Pullback
# ---------------------------------------------------------------------------


def test_pullback_long_trigger(settings: FXSettings) -> None:
    """A close back above EMA20 in an uptrend goes long below the recent swing low."""
    market = make_state(candles=CandleSet(m5=pullback_long_candles()))
    outcome = evaluate_pullback("EURUSD", make_packet(), market, make_metrics(), settings)

    signal = outcome.signal
    assert signal is not None
    assert signal.side == Side.BUY
    assert signal.module == ModuleName.PULLBACK
    assert signal.entry_price == pytest.approx(1.0960)
    assert signal.stop_price == pytest.approx(1.0938 - 0.0004 * settings.pullback_atr_buffer)
    assert signal.confidence == pytest.approx(0.7)
    assert outcome.reason_codes == [ReasonCode.MODULE_PULLBACK_LONG_TRIGGER]


def test_pullback_needs_trend_agreement(settings: FXSettings) -> None:
    market = make_state(
        candles=CandleSet(m5=pullback_long_candles()), trend_direction_1h=TrendDirection.NEUTRAL
    )
    outcome = evaluate_pullback("EURUSD", make_packet(), market, make_metrics(), settings)
    assert outcome.signal is None
    assert outcome.reason_codes == [ReasonCode.MODULE_PULLBACK_NO_TRIGGER]

    short_only = make_packet(permission=Permission.SHORT_ONLY)
    market = make_state(candles=CandleSet(m5=pullback_long_candles()))
    assert evaluate_pullback("EURUSD", short_only, market, make_metrics(), settings).signal is None


def test_pullback_short_trigger(settings: FXSettings) -> None:
    closes = [round(1.1100 - i * 0.0001, 5) for i in range(58)] + [1.1060, 1.1040]
    market = make_state(
        candles=CandleSet(m5=candles_from_closes(closes)), trend_direction_1h=TrendDirection.DOWN
    )
    packet = make_packet(regime=Regime.TREND_DOWN)

    signal = evaluate_pullback("EURUSD", packet, market, make_metrics(), settings).signal

    assert signal is not None
    assert signal.side == Side.SELL
    assert signal.stop_price == pytest.approx(1.1062 + 0.0004 * settings.pullback_atr_buffer)


def test_pullback_not_enough_data(settings: FXSettings) -> None:
    market = make_state(candles=CandleSet(m5=pullback_long_candles()[-10:]))
    outcome = evaluate_pullback("EURUSD", make_packet(), market, make_metrics(), settings)
    assert outcome.reason_codes == [ReasonCode.MODULE_PULLBACK_NOT_ENOUGH_DATA]


# ---------------------------------------------------------------------------
# Breakout / retest
# ---------------------------------------------------------------------------


def test_breakout_retest_long(settings: FXSettings) -> None:
    packet = make_packet(allowed_modules=[ModuleName.BREAKOUT_RETEST])
    market = make_state(candles=CandleSet(m15=_breakout_candles()))

    outcome = evaluate_breakout_retest("EURUSD", packet, market, make_metrics(), settings)

    buffer = 0.0004 * settings.breakout_atr_buffer
    signal = outcome.signal
    assert signal is not None
    assert signal.side == Side.BUY
    assert signal.entry_price == pytest.approx(1.1025)
    assert signal.stop_price == pytest.approx(1.1008 - buffer)
    assert outcome.reason_codes == [ReasonCode.MODULE_BREAKOUT_RETEST_LONG_TRIGGER]


def test_breakout_retest_rejects_failed_retest(settings: FXSettings) -> None:
    """A retest bar closing back inside the range is not a trigger."""
    market = make_state(candles=CandleSet(m15=_breakout_candles(retest_close=1.1009)))
    outcome = evaluate_breakout_retest("EURUSD", make_packet(), market, make_metrics(), settings)
    assert outcome.signal is None
    assert outcome.reason_codes == [ReasonCode.MODULE_BREAKOUT_RETEST_NO_TRIGGER]


def test_breakout_retest_regime_and_data(settings: FXSettings) -> None:
    market = make_state(candles=CandleSet(m15=_breakout_candles()))
    ranging = make_packet(regime=Regime.RANGE)
    assert evaluate_breakout_retest("EURUSD", ranging, market, make_metrics(), settings).signal is None

    short = make_state(candles=CandleSet(m15=_breakout_candles()[-20:]))
    outcome = evaluate_breakout_retest("EURUSD", make_packet(), short, make_metrics(), settings)
    assert outcome.reason_codes == [ReasonCode.MODULE_BREAKOUT_RETEST_NOT_ENOUGH_DATA]


# ---------------------------------------------------------------------------
# Range fade
# ---------------------------------------------------------------------------


def _range_packet():
    return make_packet(regime=Regime.RANGE, allowed_modules=[ModuleName.RANGE_FADE])


def _range_metrics():
    return make_metrics(trend_strength=0.5, chop_score=0.5)


def test_range_boundaries_exclude_last_bar() -> None:
    last = _candle(49, 1.1049, 1.1090, 1.0990, 1.1045)
    assert range_boundaries(_range_candles(last)) == (1.1000, 1.1050)


def test_range_fade_short_rejection(settings: FXSettings) -> None:
    last = _candle(49, 1.1049, 1.1050, 1.1044, 1.1045)
    market = make_state(candles=CandleSet(m15=_range_candles(last)))

    outcome = evaluate_range_fade("EURUSD", _range_packet(), market, _range_metrics(), settings)

    signal = outcome.signal
    assert signal is not None
    assert signal.side == Side.SELL
    assert signal.entry_price == pytest.approx(1.1045)
    assert signal.stop_price == pytest.approx(1.1050 + 0.0004 * settings.range_fade_atr_buffer)
    assert signal.reason_codes == [ReasonCode.MODULE_RANGE_FADE_SHORT_REJECTION]
    assert outcome.reason_codes == [ReasonCode.MODULE_RANGE_FADE_SIGNAL_SHORT]
    assert not outcome.kill_switch


def test_range_fade_long_rejection(settings: FXSettings) -> None:
    last = _candle(49, 1.1001, 1.1006, 1.1000, 1.1005)
    market = make_state(candles=CandleSet(m15=_range_candles(last, prev_close=1.1001)))

    signal = evaluate_range_fade("EURUSD", _range_packet(), market, _range_metrics(), settings).signal

    assert signal is not None
    assert signal.side == Side.BUY
    assert signal.stop_price == pytest.approx(1.1000 - 0.0004 * settings.range_fade_atr_buffer)


def test_range_fade_breakout_kill_switch(settings: FXSettings) -> None:
    last = _candle(49, 1.1045, 1.1060, 1.1040, 1.1058)
    market = make_state(candles=CandleSet(m15=_range_candles(last)))

    outcome = evaluate_range_fade("EURUSD", _range_packet(), market, _range_metrics(), settings)

    assert outcome.kill_switch
    assert outcome.signal is None
    assert outcome.reason_codes == [ReasonCode.MODULE_RANGE_FADE_BREAKOUT_KILL_SWITCH]


def test_range_fade_filters(settings: FXSettings) -> None:
    last = _candle(49, 1.1049, 1.1050, 1.1044, 1.1045)
    market = make_state(candles=CandleSet(m15=_range_candles(last)))
    packet = _range_packet()

    def codes(packet=packet, metrics=None):
        return evaluate_range_fade("EURUSD", packet, market, metrics or _range_metrics(), settings).reason_codes

    assert codes(packet=make_packet()) == [ReasonCode.MODULE_RANGE_FADE_REGIME_NOT_RANGE]
    assert codes(metrics=make_metrics(atr1h=0.004, trend_strength=0.5, chop_score=0.5)) == [
        ReasonCode.MODULE_RANGE_FADE_RANGE_TOO_NARROW
    ]
    assert codes(metrics=make_metrics(trend_strength=1.5, chop_score=0.5)) == [
        ReasonCode.MODULE_RANGE_FADE_TREND_TOO_STRONG
    ]
    assert codes(metrics=make_metrics(trend_strength=0.5, chop_score=0.1)) == [
        ReasonCode.MODULE_RANGE_FADE_NOT_CHOPPY_ENOUGH
    ]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def test_run_modules_stops_at_first_signal(settings: FXSettings) -> None:
    market = make_state(candles=CandleSet(m5=pullback_long_candles(), m15=_breakout_candles()))
    run = run_modules(
        [ModuleName.BREAKOUT_RETEST, ModuleName.PULLBACK, ModuleName.RANGE_FADE],
        MODULE_REGISTRY,
        "EURUSD",
        make_packet(),
        market,
        make_metrics(),
        settings,
    )
    assert run.module == ModuleName.BREAKOUT_RETEST
    assert run.tried == [ModuleName.BREAKOUT_RETEST]
    assert run.outcome.signal.side == Side.BUY


def test_run_modules_collects_kill_switch(settings: FXSettings) -> None:
    last = _candle(49, 1.1045, 1.1060, 1.1040, 1.1058)
    market = make_state(candles=CandleSet(m15=_range_candles(last)))
    run = run_modules(
        [ModuleName.RANGE_FADE, ModuleName.NONE],
        MODULE_REGISTRY,
        "EURUSD",
        _range_packet(),
        market,
        _range_metrics(),
        settings,
    )
    assert run.outcome is None
    assert run.kill_switched == [ModuleName.RANGE_FADE]
    assert run.tried == [ModuleName.RANGE_FADE]
    assert run.reason_codes == [ReasonCode.MODULE_RANGE_FADE_BREAKOUT_KILL_SWITCH]
