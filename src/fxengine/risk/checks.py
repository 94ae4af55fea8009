"""Pre-trade risk checks for a single pair."""

from collections.abc import Mapping
from datetime import datetime, timedelta

from fxengine.config import FXSettings, normalize_pair, pair_currencies
from fxengine.core.reasons import ReasonCode, merge_reasons
from fxengine.core.sessions import (
    is_within_pre_rollover_window,
    is_within_session_transition_buffer,
    tighten_spread_to_atr_cap,
)
from fxengine.core.types import EventGateDecision, PairMetrics, RiskCheck
from fxengine.logging import get_logger
from fxengine.storage.state import ForexStateStore

logger = get_logger(__name__)


async def evaluate_risk_check(
    pair: str,
    metrics: PairMetrics,
    gate: EventGateDecision,
    now: datetime,
    settings: FXSettings,
    store: ForexStateStore,
    exposure: Mapping[str, int] | None = None,
) -> RiskCheck:
    """Run every entry check and collect all blocking reasons.

    Checks never short-circuit. A shock flag writes a pair cooldown before the
    cooldown itself is read, so the same call reports both codes.
    """
    pair = normalize_pair(pair)
    reasons: list[ReasonCode] = []
    allow_entry = True

    if gate.block_new_entries or not gate.allow_new_entries:
        allow_entry = False
        reasons.extend(gate.reason_codes)

    if metrics.spread_pips > settings.spread_pips_cap_for_pair(pair):
        allow_entry = False
        reasons += [ReasonCode.SPREAD_PIPS_CAP_EXCEEDED, ReasonCode.NO_TRADE_SPREAD_TOO_HIGH]

    if metrics.spread_to_atr1h > settings.risk_max_spread_to_atr1h:
        allow_entry = False
        reasons += [ReasonCode.SPREAD_TO_ATR_RISK_CAP_EXCEEDED, ReasonCode.NO_TRADE_SPREAD_TOO_HIGH]

    transition_cap = tighten_spread_to_atr_cap(
        settings.risk_max_spread_to_atr1h, settings.transition_spread_to_atr_multiplier
    )
    if (
        is_within_session_transition_buffer(now, settings.session_transition_buffer_minutes)
        and metrics.spread_to_atr1h > transition_cap
    ):
        allow_entry = False
        reasons += [
            ReasonCode.SESSION_TRANSITION_SPREAD_STRESS,
            ReasonCode.SPREAD_TO_ATR_TRANSITION_RISK_CAP_EXCEEDED,
            ReasonCode.NO_TRADE_SPREAD_TOO_HIGH,
        ]

    if is_within_pre_rollover_window(now, settings.rollover_entry_block_minutes, settings.rollover_hour_utc):
        allow_entry = False
        reasons += [ReasonCode.ROLLOVER_ENTRY_BLOCK_WINDOW, ReasonCode.NO_TRADE_ROLLOVER_WINDOW]

    if metrics.shock_flag:
        allow_entry = False
        await store.set_pair_cooldown(pair, now + timedelta(minutes=settings.shock_cooldown_minutes))
        logger.info(f"Volatility shock on {pair}, cooldown {settings.shock_cooldown_minutes}m")
        reasons.append(ReasonCode.VOLATILITY_SHOCK_COOLDOWN_SET)

    cooldown_until = await store.get_pair_cooldown_until(pair)
    if cooldown_until is not None and cooldown_until > now:
        allow_entry = False
        reasons.append(ReasonCode.PAIR_COOLDOWN_ACTIVE)

    currencies = pair_currencies(pair)
    if exposure is not None and len(currencies) == 2:
        limit = settings.max_currency_exposure
        if exposure.get(currencies[0], 0) >= limit or exposure.get(currencies[1], 0) >= limit:
            allow_entry = False
            reasons.append(ReasonCode.CURRENCY_EXPOSURE_LIMIT)

    if not reasons:
        reasons.append(ReasonCode.RISK_GREEN)

    return RiskCheck(
        pair=pair,
        allow_entry=allow_entry,
        allow_risk_reduction=True,
        reason_codes=merge_reasons(reasons),
        cooldown_until=cooldown_until,
    )
