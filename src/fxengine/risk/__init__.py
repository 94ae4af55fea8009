"""Risk engine: pre-trade checks, open-risk budget and position sizing."""

from .checks import evaluate_risk_check
from .exposure import (
    apply_accepted_risk,
    build_open_currency_exposure,
    compute_open_risk_usage,
    evaluate_risk_cap_budget,
    fetch_open_positions,
)
from .sizing import candidate_risk_pct, compute_hybrid_risk_size, confidence_to_leverage_capped

__all__ = [
    "apply_accepted_risk",
    "build_open_currency_exposure",
    "candidate_risk_pct",
    "compute_hybrid_risk_size",
    "compute_open_risk_usage",
    "confidence_to_leverage_capped",
    "evaluate_risk_cap_budget",
    "evaluate_risk_check",
    "fetch_open_positions",
]
