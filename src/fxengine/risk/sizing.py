"""Confidence-scaled leverage and hybrid risk-based position sizing."""

import math
from typing import Any

from fxengine.core.reasons import ReasonCode
from fxengine.core.types import HybridSizeDecision

DEFAULT_FALLBACK_NOTIONAL_USD = 100.0


def _finite_positive(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number > 0 else None


def confidence_to_leverage_capped(confidence: float, max_leverage: float) -> int:
    """3x from 0.85 confidence, 2x from 0.68, else 1x; never above ``max_leverage``."""
    cap = max(1, math.floor(_finite_positive(max_leverage) or 1))
    suggested = 1
    if confidence >= 0.85:
        suggested = 3
    elif confidence >= 0.68:
        suggested = 2
    return min(cap, suggested)


def compute_hybrid_risk_size(
    entry_price: float,
    stop_price: float,
    confidence: float,
    fallback_notional_usd: float,
    max_leverage: float,
    risk_per_trade_pct: float,
    reference_equity_usd: float | None,
) -> HybridSizeDecision:
    """Size a trade so that hitting the stop loses ``risk_per_trade_pct`` of equity.

    Margin (``side_size_usd``) is the risk-derived notional divided by leverage.
    When any input is unusable the flat fallback notional is returned and the
    decision is tagged ``SIZE_FALLBACK_NOTIONAL``; a zero size is never returned.
    """
    leverage = confidence_to_leverage_capped(confidence, max_leverage)
    fallback = _finite_positive(fallback_notional_usd) or DEFAULT_FALLBACK_NOTIONAL_USD
    entry = _finite_positive(entry_price)
    stop = _finite_positive(stop_price)
    equity = _finite_positive(reference_equity_usd)
    risk_pct = _finite_positive(risk_per_trade_pct)
    stop_distance = abs(entry - stop) if entry and stop else None

    def fallback_decision(risk_usd: float | None, risk_pct_used: float | None) -> HybridSizeDecision:
        return HybridSizeDecision(
            side_size_usd=fallback,
            leverage=leverage,
            effective_notional_usd=fallback * leverage,
            risk_usd=risk_usd,
            risk_pct_used=risk_pct_used,
            stop_distance=stop_distance,
            used_fallback=True,
            reason_codes=[ReasonCode.SIZE_FALLBACK_NOTIONAL],
        )

    if not (equity and risk_pct and stop_distance and entry and _finite_positive(fallback_notional_usd)):
        return fallback_decision(None, None)

    risk_usd = equity * risk_pct / 100
    effective_notional = risk_usd / stop_distance * entry
    side_size = effective_notional / leverage
    if not (math.isfinite(side_size) and side_size > 0):
        return fallback_decision(risk_usd, risk_pct)

    return HybridSizeDecision(
        side_size_usd=side_size,
        leverage=leverage,
        effective_notional_usd=effective_notional,
        risk_usd=risk_usd,
        risk_pct_used=risk_pct,
        stop_distance=stop_distance,
        used_fallback=False,
        reason_codes=[ReasonCode.SIZE_HYBRID_RISK],
    )


def candidate_risk_pct(
    size: HybridSizeDecision, entry_price: float, reference_equity_usd: float | None
) -> float:
    """Risk % of equity the sized trade commits; 0 when it can't be measured."""
    if not size.used_fallback and size.risk_pct_used is not None:
        return size.risk_pct_used
    equity = _finite_positive(reference_equity_usd)
    entry = _finite_positive(entry_price)
    if not (equity and entry and size.stop_distance):
        return 0.0
    units = size.effective_notional_usd / entry
    return units * size.stop_distance / equity * 100
