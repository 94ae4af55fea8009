"""Universe selector: scores, filters and ranks the configured pairs."""

import asyncio
import math
from collections.abc import Sequence
from datetime import datetime

from fxengine.config import FXSettings, normalize_pair
from fxengine.core.errors import MarketDataError
from fxengine.core.reasons import ReasonCode
from fxengine.core.sessions import (
    is_within_session_transition_buffer,
    session_factor,
    tighten_spread_to_atr_cap,
)
from fxengine.core.types import EconomicEvent, EligibilityRow, PairMetrics, RiskState, ScanSnapshot
from fxengine.events.gate import EventGate
from fxengine.logging import get_logger
from fxengine.market_data import MarketStateSource

logger = get_logger(__name__)


def compute_selector_score(metrics: PairMetrics) -> float:
    """Cost efficiency x volatility x session x structure.

    Higher for cheap spreads relative to ATR, more movement, active sessions and
    clean trends; pure and deterministic in the metrics.
    """
    session_mul = session_factor(metrics.session_tag)
    structure_mul = max(0.2, min(1.6, metrics.trend_strength * (1 - metrics.chop_score)))
    cost_efficiency = 1 / max(metrics.spread_to_atr1h, 1e-6)
    volatility_mul = max(0.05, metrics.atr1h_percent * 100)
    score = cost_efficiency * volatility_mul * session_mul * structure_mul
    return score if math.isfinite(score) else 0.0


def selector_top_rank_cutoff(total_rows: int, top_percent: float) -> int:
    total = max(0, int(total_rows or 0))
    if total <= 0:
        return 0
    pct = max(1.0, min(100.0, float(top_percent or 100)))
    return max(1, math.ceil(total * pct / 100))


def is_within_selector_top_percentile(rank: int, total_rows: int, top_percent: float) -> bool:
    rank = int(rank or 0)
    if rank <= 0:
        return False
    cutoff = selector_top_rank_cutoff(total_rows, top_percent)
    return cutoff > 0 and rank <= cutoff


def evaluate_pair_eligibility(
    pair: str,
    metrics: PairMetrics,
    stale_events: bool,
    events: Sequence[EconomicEvent],
    now: datetime,
    settings: FXSettings,
) -> EligibilityRow:
    """Apply every eligibility rule; reasons accumulate, ``ELIGIBLE`` when none fire."""
    reasons: list[ReasonCode] = []
    eligible = True

    if metrics.spread_to_atr1h >= settings.selector_max_spread_to_atr1h:
        eligible = False
        reasons.append(ReasonCode.SPREAD_TO_ATR_TOO_HIGH)

    transition_cap = tighten_spread_to_atr_cap(
        settings.selector_max_spread_to_atr1h, settings.transition_spread_to_atr_multiplier
    )
    if (
        is_within_session_transition_buffer(now, settings.session_transition_buffer_minutes)
        and metrics.spread_to_atr1h >= transition_cap
    ):
        eligible = False
        reasons.append(ReasonCode.SESSION_TRANSITION_SPREAD_STRESS)
        reasons.append(ReasonCode.SPREAD_TO_ATR_TRANSITION_CAP_EXCEEDED)

    if metrics.atr1h_percent < settings.selector_min_atr1h_percent:
        eligible = False
        reasons.append(ReasonCode.ATR_TOO_LOW)

    if metrics.session_tag.value == settings.inactive_session_tag:
        eligible = False
        reasons.append(ReasonCode.DEAD_SESSION)

    if metrics.shock_flag:
        eligible = False
        reasons.append(ReasonCode.POST_SHOCK_COOLDOWN)

    gate = EventGate.from_settings(settings).evaluate(
        pair, events, stale_events, now, risk_state=RiskState.NORMAL
    )
    if gate.block_new_entries:
        eligible = False
        reasons.extend(gate.reason_codes)

    score = compute_selector_score(metrics)
    if score < settings.selector_min_score:
        eligible = False
        reasons.append(ReasonCode.SCORE_BELOW_MIN)

    if not reasons:
        reasons.append(ReasonCode.ELIGIBLE)

    return EligibilityRow(
        pair=normalize_pair(pair), eligible=eligible, rank=0, score=score, reasons=reasons, metrics=metrics
    )


def rank_rows(rows: Sequence[EligibilityRow]) -> list[EligibilityRow]:
    """Stable sort by descending score; ties keep the configured pair order."""
    ordered = sorted(rows, key=lambda row: -row.score)
    return [row.model_copy(update={"rank": index + 1}) for index, row in enumerate(ordered)]


async def run_universe_scan(
    settings: FXSettings,
    market: MarketStateSource,
    events: Sequence[EconomicEvent],
    stale_events: bool,
    now: datetime,
) -> ScanSnapshot:
    """Load every pair concurrently and return the ranked eligibility snapshot."""
    pairs = list(settings.universe_pairs)

    async def evaluate(pair: str) -> EligibilityRow:
        try:
            state = await market.load(pair, now)
        except MarketDataError as e:
            logger.warning(f"Market data unavailable for {pair}: {e}")
            return EligibilityRow(
                pair=pair, eligible=False, score=0.0, reasons=[ReasonCode.MARKET_DATA_UNAVAILABLE]
            )
        return evaluate_pair_eligibility(pair, state.to_metrics(), stale_events, events, now, settings)

    rows = await asyncio.gather(*(evaluate(pair) for pair in pairs))
    ranked = rank_rows(rows)
    logger.info(
        f"Universe scan: {sum(1 for row in ranked if row.eligible)}/{len(ranked)} pairs eligible"
    )
    return ScanSnapshot(generated_at=now, stale_events=stale_events, pairs=ranked)
