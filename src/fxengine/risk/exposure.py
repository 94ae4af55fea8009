"""Open-risk accounting and portfolio/currency risk-cap budget."""

import asyncio
import math
from collections.abc import Iterable, Mapping
from typing import Any

from fxengine.config import normalize_pair, pair_currencies
from fxengine.core.reasons import ReasonCode
from fxengine.core.types import BudgetCheck, PositionContext, RiskUsage
from fxengine.execution.broker import Broker, OpenPosition
from fxengine.logging import get_logger

logger = get_logger(__name__)

CurrencyExposure = dict[str, int]


def _finite_positive(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number > 0 else None


def compute_open_risk_usage(
    open_by_pair: Mapping[str, OpenPosition],
    contexts_by_pair: Mapping[str, PositionContext],
    equity_usd: float | None,
    fallback_risk_pct: float = 0.0,
) -> RiskUsage:
    """Sum open risk (% of equity) into portfolio, currency-leg and pair totals.

    A position whose risk can't be computed uses ``fallback_risk_pct`` when it
    is positive, otherwise it is listed in ``unknown_risk_pairs`` and left out
    of every total.
    """
    equity = _finite_positive(equity_usd)
    fallback = max(0.0, float(fallback_risk_pct or 0.0))
    usage = RiskUsage()

    for pair, position in open_by_pair.items():
        context = contexts_by_pair.get(pair)
        size = _finite_positive(position.size_units)
        entry = _finite_positive(position.entry_price) or (
            _finite_positive(context.entry_price) if context else None
        )
        stop = None
        if context is not None:
            stop = _finite_positive(context.current_stop_price) or _finite_positive(context.initial_stop_price)

        risk_pct: float | None = None
        if equity and size and entry and stop:
            risk_pct = abs(entry - stop) * size / equity * 100

        if not (risk_pct and math.isfinite(risk_pct) and risk_pct > 0):
            if fallback > 0:
                risk_pct = fallback
            else:
                usage.unknown_risk_pairs.append(pair)
                continue

        usage.pair_open_risk_pct[pair] = usage.pair_open_risk_pct.get(pair, 0.0) + risk_pct
        usage.portfolio_open_risk_pct += risk_pct
        for currency in pair_currencies(pair):
            usage.currency_open_risk_pct[currency] = usage.currency_open_risk_pct.get(currency, 0.0) + risk_pct

    return usage


def evaluate_risk_cap_budget(
    pair: str,
    candidate_risk_pct: float,
    usage: RiskUsage,
    max_portfolio_open_pct: float,
    max_currency_open_pct: float,
) -> BudgetCheck:
    """Reject a candidate that would push portfolio or either currency leg over its cap.

    A cap of zero disables that check. Both codes can fire together.
    """
    candidate = max(0.0, float(candidate_risk_pct or 0.0))
    portfolio_cap = max(0.0, float(max_portfolio_open_pct or 0.0))
    currency_cap = max(0.0, float(max_currency_open_pct or 0.0))
    reasons: list[ReasonCode] = []

    if portfolio_cap > 0 and usage.portfolio_open_risk_pct + candidate > portfolio_cap:
        reasons.append(ReasonCode.NO_TRADE_RISK_CAP_PORTFOLIO)

    if currency_cap > 0:
        for currency in pair_currencies(pair):
            if usage.currency_open_risk_pct.get(currency, 0.0) + candidate > currency_cap:
                reasons.append(ReasonCode.NO_TRADE_RISK_CAP_CURRENCY)
                break

    return BudgetCheck(allow=not reasons, reason_codes=reasons)


def apply_accepted_risk(usage: RiskUsage, pair: str, risk_pct: float) -> RiskUsage:
    """Usage after adding an accepted entry of ``risk_pct`` on ``pair``."""
    updated = usage.model_copy(deep=True)
    pair = normalize_pair(pair)
    updated.portfolio_open_risk_pct += risk_pct
    updated.pair_open_risk_pct[pair] = updated.pair_open_risk_pct.get(pair, 0.0) + risk_pct
    for currency in pair_currencies(pair):
        updated.currency_open_risk_pct[currency] = updated.currency_open_risk_pct.get(currency, 0.0) + risk_pct
    return updated


async def fetch_open_positions(broker: Broker, pairs: Iterable[str]) -> dict[str, OpenPosition]:
    """Open positions for ``pairs``; pairs whose lookup fails are skipped with a warning."""
    pairs = [normalize_pair(pair) for pair in pairs]

    async def lookup(pair: str) -> OpenPosition | None:
        try:
            return await broker.get_open_position(pair)
        except Exception as e:
            logger.warning(f"Open position lookup failed for {pair}: {e}")
            return None

    positions = await asyncio.gather(*(lookup(pair) for pair in pairs))
    return {pair: position for pair, position in zip(pairs, positions) if position is not None}


def build_open_currency_exposure(open_by_pair: Mapping[str, OpenPosition]) -> CurrencyExposure:
    """Count of open positions touching each currency."""
    exposure: CurrencyExposure = {}
    for pair in open_by_pair:
        for currency in pair_currencies(pair):
            exposure[currency] = exposure.get(currency, 0) + 1
    return exposure
