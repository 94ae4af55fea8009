"""Market-data boundary and derivation of per-pair market state.

A ``MarketDataProvider`` supplies raw quotes and candles; ``derive_market_state``
turns them into the metric set the selector, risk checks and entry modules use.
Providers must return candles in ascending time order.
"""

import asyncio
import importlib
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import numpy as np

from fxengine.config import FXSettings, normalize_pair, pip_size_for_pair
from fxengine.core import indicators
from fxengine.core.errors import MarketDataError
from fxengine.core.sessions import session_tag_for
from fxengine.core.types import Candle, PairMetrics, Quote, SessionTag, TrendDirection
from fxengine.logging import get_logger

logger = get_logger(__name__)

TIMEFRAME_LIMITS: dict[str, int] = {"5m": 260, "15m": 220, "1h": 260, "4h": 260, "1d": 220}

# Stand-in ratio when the 1h ATR is zero; keeps snapshots JSON-safe.
UNBOUNDED_SPREAD_TO_ATR = 1e9


class MarketDataProvider(Protocol):
    async def get_quote(self, pair: str) -> Quote: ...

    async def get_candles(self, pair: str, timeframe: str, limit: int) -> list[Candle]: ...


class MarketStateSource(Protocol):
    async def load(self, pair: str, now: datetime) -> "PairMarketState": ...


@dataclass(slots=True)
class CandleSet:
    m5: list[Candle] = field(default_factory=list)
    m15: list[Candle] = field(default_factory=list)
    h1: list[Candle] = field(default_factory=list)
    h4: list[Candle] = field(default_factory=list)
    d1: list[Candle] = field(default_factory=list)


@dataclass(slots=True)
class PairMarketState:
    pair: str
    now: datetime
    session_tag: SessionTag
    price: float
    bid: float
    offer: float
    spread_abs: float
    spread_pips: float
    atr5m: float
    atr1h: float
    atr4h: float
    atr1h_percent: float
    spread_to_atr1h: float
    trend_direction_1h: TrendDirection
    trend_strength_1h: float
    chop_score_1h: float
    shock_flag: bool
    nearest_support: float | None = None
    nearest_resistance: float | None = None
    distance_to_support_atr1h: float | None = None
    distance_to_resistance_atr1h: float | None = None
    candles: CandleSet = field(default_factory=CandleSet)

    def to_metrics(self) -> PairMetrics:
        return PairMetrics(
            pair=self.pair,
            session_tag=self.session_tag,
            price=self.price,
            spread_abs=self.spread_abs,
            spread_pips=self.spread_pips,
            spread_to_atr1h=self.spread_to_atr1h,
            atr1h=self.atr1h,
            atr4h=self.atr4h,
            atr1h_percent=self.atr1h_percent,
            trend_strength=self.trend_strength_1h,
            chop_score=self.chop_score_1h,
            shock_flag=self.shock_flag,
            timestamp=self.now,
        )


def _positive(value: float) -> float:
    return value if np.isfinite(value) and value > 0 else 0.0


def nearest_levels(
    candles_4h: Sequence[Candle], price: float, atr1h: float, lookback_bars: int
) -> tuple[float | None, float | None, float | None, float | None]:
    """Closest 4h low at/below and high at/above ``price``, plus ATR distances."""
    window = list(candles_4h)[-max(20, lookback_bars):]
    support: float | None = None
    resistance: float | None = None
    for candle in window:
        low, high = _positive(candle.low), _positive(candle.high)
        if 0 < low <= price and (support is None or low > support):
            support = low
        if high > 0 and high >= price and (resistance is None or high < resistance):
            resistance = high

    dist_support = abs((price - support) / atr1h) if support is not None and atr1h > 0 else None
    dist_resistance = abs((resistance - price) / atr1h) if resistance is not None and atr1h > 0 else None
    return support, resistance, dist_support, dist_resistance


def derive_market_state(
    pair: str,
    now: datetime,
    quote: Quote,
    candles: CandleSet,
    settings: FXSettings,
) -> PairMarketState:
    """Compute trend, chop, ATRs, shock flag and HTF levels from raw data."""
    pair = normalize_pair(pair)
    bid = _positive(quote.bid)
    offer = _positive(quote.offer)
    price = (bid + offer) / 2.0 if bid > 0 and offer > 0 else max(bid, offer)
    spread_abs = max(0.0, offer - bid) if bid > 0 and offer > 0 else 0.0
    spread_pips = spread_abs / pip_size_for_pair(pair)

    closes_1h = indicators.closes(candles.h1)
    closes_1h = closes_1h[closes_1h > 0]
    ema20 = indicators.ema_series(closes_1h, 20)
    ema50 = indicators.ema_series(closes_1h, 50)
    ema200 = indicators.ema_series(closes_1h, 200)

    fallback = float(closes_1h[-1]) if closes_1h.size else price
    ema50_last = indicators.last_value(ema50, fallback)
    ema200_last = indicators.last_value(ema200, fallback)
    ema_slope = indicators.slope_pct(ema50, 8)

    if price > ema50_last > ema200_last and ema_slope > 0:
        direction = TrendDirection.UP
    elif price < ema50_last < ema200_last and ema_slope < 0:
        direction = TrendDirection.DOWN
    else:
        direction = TrendDirection.NEUTRAL

    trend_strength = max(0.0, min(2.0, abs((ema50_last - ema200_last) / max(price, 1e-9)) * 1000))
    chop_score = max(0.0, min(1.0, indicators.count_crosses(ema20, ema50, 28) / 8))

    atr5m = indicators.atr(candles.m5, 14)
    atr1h = indicators.atr(candles.h1, 14)
    atr4h = indicators.atr(candles.h4, 14)
    atr1h_percent = atr1h / price if price > 0 and atr1h > 0 else 0.0
    spread_to_atr1h = spread_abs / atr1h if atr1h > 0 else UNBOUNDED_SPREAD_TO_ATR

    shock_flag = False
    if candles.m5 and atr5m > 0:
        last = candles.m5[-1]
        shock_flag = abs(last.high - last.low) / atr5m >= settings.shock_candle_atr5m

    support, resistance, dist_support, dist_resistance = nearest_levels(
        candles.h4, price, atr1h, settings.htf_sr_lookback_bars
    )

    return PairMarketState(
        pair=pair,
        now=now,
        session_tag=session_tag_for(now),
        price=price,
        bid=bid,
        offer=offer,
        spread_abs=spread_abs,
        spread_pips=spread_pips,
        atr5m=atr5m,
        atr1h=atr1h,
        atr4h=atr4h,
        atr1h_percent=atr1h_percent,
        spread_to_atr1h=spread_to_atr1h,
        trend_direction_1h=direction,
        trend_strength_1h=trend_strength,
        chop_score_1h=chop_score,
        shock_flag=shock_flag,
        nearest_support=support,
        nearest_resistance=resistance,
        distance_to_support_atr1h=dist_support,
        distance_to_resistance_atr1h=dist_resistance,
        candles=candles,
    )


class MarketDataService:
    """Loads quotes and every timeframe concurrently, then derives the pair state."""

    def __init__(self, provider: MarketDataProvider, settings: FXSettings) -> None:
        self.provider = provider
        self.settings = settings

    async def load(self, pair: str, now: datetime) -> PairMarketState:
        pair = normalize_pair(pair)
        try:
            quote, m5, m15, h1, h4, d1 = await asyncio.gather(
                self.provider.get_quote(pair),
                self.provider.get_candles(pair, "5m", TIMEFRAME_LIMITS["5m"]),
                self.provider.get_candles(pair, "15m", TIMEFRAME_LIMITS["15m"]),
                self.provider.get_candles(pair, "1h", TIMEFRAME_LIMITS["1h"]),
                self.provider.get_candles(pair, "4h", TIMEFRAME_LIMITS["4h"]),
                self.provider.get_candles(pair, "1d", TIMEFRAME_LIMITS["1d"]),
            )
        except MarketDataError:
            raise
        except Exception as e:
            raise MarketDataError(pair, f"provider failure: {e}") from e

        return derive_market_state(
            pair, now, quote, CandleSet(m5=m5, m15=m15, h1=h1, h4=h4, d1=d1), self.settings
        )


def load_provider(import_path: str, settings: FXSettings) -> MarketDataProvider:
    """Instantiate the provider named by ``package.module:factory``."""
    module_name, _, attr = str(import_path or "").partition(":")
    if not module_name or not attr:
        raise MarketDataError("*", f"invalid provider path {import_path!r} (expected 'module:factory')")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(settings)
