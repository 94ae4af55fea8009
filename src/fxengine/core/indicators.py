"""Price indicators on numpy arrays."""

from collections.abc import Sequence

import numpy as np

from fxengine.core.types import Candle


def closes(candles: Sequence[Candle]) -> np.ndarray:
    values = np.array([c.close for c in candles], dtype=float)
    return values[np.isfinite(values)]


def highs(candles: Sequence[Candle]) -> np.ndarray:
    values = np.array([c.high for c in candles], dtype=float)
    return values[np.isfinite(values)]


def lows(candles: Sequence[Candle]) -> np.ndarray:
    values = np.array([c.low for c in candles], dtype=float)
    return values[np.isfinite(values)]


def ema_series(prices: np.ndarray, period: int) -> np.ndarray:
    """Exponential moving average aligned with ``prices``.

    With at least ``period`` values the series is seeded with the SMA of the
    first ``period`` prices and earlier slots are NaN. Shorter inputs are seeded
    with the first price so a value is always available at the end.
    """
    prices = np.asarray(prices, dtype=float)
    out = np.full(prices.shape, np.nan)
    if prices.size == 0:
        return out

    if prices.size < period:
        start = 0
        out[0] = prices[0]
    else:
        start = period - 1
        out[start] = float(np.mean(prices[:period]))

    alpha = 2.0 / (period + 1.0)
    for i in range(start + 1, prices.size):
        out[i] = alpha * prices[i] + (1.0 - alpha) * out[i - 1]
    return out


def last_value(series: np.ndarray, default: float) -> float:
    if series.size == 0 or not np.isfinite(series[-1]):
        return default
    return float(series[-1])


def true_ranges(candles: Sequence[Candle]) -> np.ndarray:
    if len(candles) < 2:
        return np.empty(0)
    high = np.array([c.high for c in candles[1:]], dtype=float)
    low = np.array([c.low for c in candles[1:]], dtype=float)
    prev_close = np.array([c.close for c in candles[:-1]], dtype=float)
    return np.maximum.reduce([high - low, np.abs(high - prev_close), np.abs(low - prev_close)])


def atr(candles: Sequence[Candle], period: int = 14) -> float:
    """Simple ATR: mean of the last ``period`` true ranges (0.0 when unavailable)."""
    trs = true_ranges(candles)
    effective = min(period, trs.size)
    if effective <= 0:
        return 0.0
    value = float(np.mean(trs[-effective:]))
    return value if np.isfinite(value) else 0.0


def slope_pct(series: np.ndarray, lookback: int = 10) -> float:
    values = series[np.isfinite(series)]
    if values.size <= lookback:
        return 0.0
    last = float(values[-1])
    prev = float(values[-1 - lookback])
    if last == 0:
        return 0.0
    return (last - prev) / last * 100.0


def count_crosses(series_a: np.ndarray, series_b: np.ndarray, lookback: int = 25) -> int:
    """Count sign changes of ``a - b`` over the trailing ``lookback`` steps."""
    length = min(series_a.size, series_b.size)
    if length < 3:
        return 0
    start = max(1, length - lookback)
    diff = series_a[:length] - series_b[:length]
    prev = diff[start - 1 : length - 1]
    curr = diff[start:length]
    with np.errstate(invalid="ignore"):
        crossed = ((prev <= 0) & (curr > 0)) | ((prev >= 0) & (curr < 0))
    return int(np.count_nonzero(crossed))
