"""Tests for pre-trade risk checks, open-risk accounting and sizing."""

import random
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from fxengine.config import FXSettings, pair_currencies
from fxengine.core.reasons import ReasonCode
from fxengine.core.types import ModuleName, PositionContext, RiskUsage, Side
from fxengine.events.gate import evaluate_event_gate
from fxengine.execution.broker import OpenPosition, PaperBroker
from fxengine.risk import (
    apply_accepted_risk,
    build_open_currency_exposure,
    candidate_risk_pct,
    compute_hybrid_risk_size,
    compute_open_risk_usage,
    confidence_to_leverage_capped,
    evaluate_risk_cap_budget,
    evaluate_risk_check,
    fetch_open_positions,
)
from fxengine.storage.state import ForexStateStore

from fx_helpers import NOW, make_event, make_metrics


def _clear_gate(now: datetime = NOW):
    return evaluate_event_gate("EURUSD", [], stale_data=False, now=now)


def _context(pair: str, entry: float, stop: float) -> PositionContext:
    return PositionContext(
        pair=pair,
        side=Side.BUY,
        entry_module=ModuleName.PULLBACK,
        entry_price=entry,
        initial_stop_price=stop,
        current_stop_price=stop,
        initial_risk_distance=abs(entry - stop),
        opened_at=NOW,
        last_managed_at=NOW,
    )


# ---------------------------------------------------------------------------
# Risk check
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_green_when_nothing_fires(settings: FXSettings, store: ForexStateStore) -> None:
    check = await evaluate_risk_check("EURUSD", make_metrics(), _clear_gate(), NOW, settings, store, {})
    assert check.allow_entry
    assert check.allow_risk_reduction
    assert check.reason_codes == [ReasonCode.RISK_GREEN]


@pytest.mark.asyncio
async def test_spread_caps(settings: FXSettings, store: ForexStateStore) -> None:
    """Both spread caps fire together and the shared code appears once."""
    metrics = make_metrics(spread_pips=5.0, spread_to_atr1h=0.2)
    check = await evaluate_risk_check("EURUSD", metrics, _clear_gate(), NOW, settings, store)
    assert not check.allow_entry
    assert check.reason_codes == [
        ReasonCode.SPREAD_PIPS_CAP_EXCEEDED,
        ReasonCode.NO_TRADE_SPREAD_TOO_HIGH,
        ReasonCode.SPREAD_TO_ATR_RISK_CAP_EXCEEDED,
    ]


@pytest.mark.asyncio
async def test_transition_stress_below_base_cap(settings: FXSettings, store: ForexStateStore) -> None:
    near_boundary = datetime(2026, 2, 17, 7, 5, tzinfo=UTC)
    metrics = make_metrics(spread_to_atr1h=0.13)
    check = await evaluate_risk_check("EURUSD", metrics, _clear_gate(near_boundary), near_boundary, settings, store)
    assert not check.allow_entry
    assert ReasonCode.SESSION_TRANSITION_SPREAD_STRESS in check.reason_codes
    assert ReasonCode.SPREAD_TO_ATR_RISK_CAP_EXCEEDED not in check.reason_codes


@pytest.mark.asyncio
async def test_rollover_window(settings: FXSettings, store: ForexStateStore) -> None:
    late = datetime(2026, 2, 17, 23, 45, tzinfo=UTC)
    check = await evaluate_risk_check("EURUSD", make_metrics(), _clear_gate(late), late, settings, store)
    assert check.reason_codes == [ReasonCode.ROLLOVER_ENTRY_BLOCK_WINDOW, ReasonCode.NO_TRADE_ROLLOVER_WINDOW]


@pytest.mark.asyncio
async def test_shock_sets_and_reports_cooldown(settings: FXSettings, store: ForexStateStore) -> None:
    """The cooldown is written before it is read, so one call reports both codes."""
    check = await evaluate_risk_check(
        "EURUSD", make_metrics(shock_flag=True), _clear_gate(), NOW, settings, store
    )
    until = NOW + timedelta(minutes=settings.shock_cooldown_minutes)
    assert check.reason_codes == [ReasonCode.VOLATILITY_SHOCK_COOLDOWN_SET, ReasonCode.PAIR_COOLDOWN_ACTIVE]
    assert check.cooldown_until == until
    assert await store.get_pair_cooldown_until("EURUSD") == until

    later = await evaluate_risk_check(
        "EURUSD", make_metrics(), _clear_gate(), NOW + timedelta(minutes=10), settings, store
    )
    assert later.reason_codes == [ReasonCode.PAIR_COOLDOWN_ACTIVE]

    expired = await evaluate_risk_check("EURUSD", make_metrics(), _clear_gate(), until, settings, store)
    assert expired.allow_entry


@pytest.mark.asyncio
async def test_currency_exposure_and_gate_codes(settings: FXSettings, store: ForexStateStore) -> None:
    gate = evaluate_event_gate("EURUSD", [make_event("USD", NOW)], stale_data=False, now=NOW)
    check = await evaluate_risk_check(
        "EURUSD", make_metrics(), gate, NOW, settings, store, exposure={"USD": 2}
    )
    assert check.reason_codes == [ReasonCode.EVENT_WINDOW_ACTIVE_BLOCK, ReasonCode.CURRENCY_EXPOSURE_LIMIT]
    assert check.allow_risk_reduction


# ---------------------------------------------------------------------------
# Open risk and budget
# ---------------------------------------------------------------------------


def test_open_risk_usage() -> None:
    positions = {
        "EURUSD": OpenPosition(pair="EURUSD", side=Side.BUY, size_units=10_000, entry_price=1.1),
        "USDJPY": OpenPosition(pair="USDJPY", side=Side.SELL, size_units=1_000, entry_price=150.0),
    }
    contexts = {"EURUSD": _context("EURUSD", 1.1, 1.095)}

    usage = compute_open_risk_usage(positions, contexts, 10_000)

    assert usage.portfolio_open_risk_pct == pytest.approx(0.5)
    assert usage.currency_open_risk_pct == {"EUR": pytest.approx(0.5), "USD": pytest.approx(0.5)}
    assert usage.unknown_risk_pairs == ["USDJPY"]

    with_fallback = compute_open_risk_usage(positions, contexts, 10_000, fallback_risk_pct=0.25)
    assert with_fallback.portfolio_open_risk_pct == pytest.approx(0.75)
    assert with_fallback.currency_open_risk_pct["JPY"] == pytest.approx(0.25)


def test_budget_rejects_over_cap() -> None:
    usage = RiskUsage(portfolio_open_risk_pct=1.5, currency_open_risk_pct={"USD": 0.8})
    check = evaluate_risk_cap_budget("EURUSD", 0.6, usage, 2.0, 1.0)
    assert not check.allow
    assert check.reason_codes == [ReasonCode.NO_TRADE_RISK_CAP_PORTFOLIO, ReasonCode.NO_TRADE_RISK_CAP_CURRENCY]

    assert evaluate_risk_cap_budget("EURUSD", 0.5, usage, 2.0, 0.0).allow
    assert evaluate_risk_cap_budget("EURUSD", 0.6, usage, 0.0, 0.0).allow
    assert evaluate_risk_cap_budget("EURUSD", 0.1, usage, 2.0, 1.0).allow


def test_budget_never_admits_more_than_the_caps() -> None:
    """Accepting only budget-approved candidates keeps every total within its cap."""
    rng = random.Random(20260217)
    pairs = ["EURUSD", "GBPUSD", "USDJPY", "EURJPY", "AUDNZD", "GBPCHF"]
    portfolio_cap, currency_cap = 2.0, 1.0

    for _ in range(200):
        usage = RiskUsage()
        for _ in range(25):
            pair = rng.choice(pairs)
            candidate = round(rng.uniform(0.0, 0.9), 4)
            if evaluate_risk_cap_budget(pair, candidate, usage, portfolio_cap, currency_cap).allow:
                usage = apply_accepted_risk(usage, pair, candidate)

            assert usage.portfolio_open_risk_pct <= portfolio_cap + 1e-9
            for currency, pct in usage.currency_open_risk_pct.items():
                assert pct <= currency_cap + 1e-9, currency


def test_apply_accepted_risk_returns_copy() -> None:
    usage = RiskUsage()
    updated = apply_accepted_risk(usage, "gbpusd", 0.4)
    assert usage.portfolio_open_risk_pct == 0.0
    assert updated.pair_open_risk_pct == {"GBPUSD": 0.4}
    assert sorted(updated.currency_open_risk_pct) == pair_currencies("GBPUSD")


@pytest.mark.asyncio
async def test_fetch_open_positions_skips_failures() -> None:
    broker = PaperBroker()
    broker.positions["EURUSD"] = OpenPosition(pair="EURUSD", side=Side.BUY, size_units=1, entry_price=1.1)
    failing = AsyncMock()
    failing.get_open_position.side_effect = [RuntimeError("timeout"), None]

    assert list(await fetch_open_positions(broker, ["eurusd", "GBPUSD"])) == ["EURUSD"]
    assert await fetch_open_positions(failing, ["EURUSD", "GBPUSD"]) == {}


def test_currency_exposure_counts() -> None:
    positions = {
        "EURUSD": OpenPosition(pair="EURUSD", side=Side.BUY, size_units=1, entry_price=1.1),
        "USDJPY": OpenPosition(pair="USDJPY", side=Side.SELL, size_units=1, entry_price=150.0),
    }
    assert build_open_currency_exposure(positions) == {"EUR": 1, "USD": 2, "JPY": 1}


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------


def test_confidence_to_leverage() -> None:
    assert confidence_to_leverage_capped(0.6, 3) == 1
    assert confidence_to_leverage_capped(0.68, 3) == 2
    assert confidence_to_leverage_capped(0.9, 3) == 3
    assert confidence_to_leverage_capped(0.9, 2) == 2
    assert confidence_to_leverage_capped(0.9, 0) == 1


def test_hybrid_size_from_stop_distance() -> None:
    """0.5% of 10k equity over a 50 pip stop is 10k units, 11k USD notional."""
    size = compute_hybrid_risk_size(1.1, 1.095, 0.7, 100.0, 3, 0.5, 10_000)
    assert not size.used_fallback
    assert size.reason_codes == [ReasonCode.SIZE_HYBRID_RISK]
    assert size.risk_usd == pytest.approx(50.0)
    assert size.effective_notional_usd == pytest.approx(11_000)
    assert size.leverage == 2
    assert size.side_size_usd == pytest.approx(5_500)
    assert candidate_risk_pct(size, 1.1, 10_000) == pytest.approx(0.5)


def test_fallback_size() -> None:
    """Missing equity or a zero stop distance falls back to the flat notional."""
    no_equity = compute_hybrid_risk_size(1.1, 1.095, 0.9, 250.0, 3, 0.5, None)
    assert no_equity.used_fallback
    assert no_equity.reason_codes == [ReasonCode.SIZE_FALLBACK_NOTIONAL]
    assert no_equity.side_size_usd == 250.0
    assert no_equity.effective_notional_usd == 750.0
    assert candidate_risk_pct(no_equity, 1.1, None) == 0.0

    no_stop = compute_hybrid_risk_size(1.1, 1.1, 0.6, 0.0, 3, 0.5, 10_000)
    assert no_stop.used_fallback
    assert no_stop.side_size_usd == 100.0


def test_fallback_candidate_risk_uses_stop_distance() -> None:
    size = compute_hybrid_risk_size(1.1, 1.095, 0.6, 1_100.0, 3, 0.5, None)
    assert candidate_risk_pct(size, 1.1, 10_000) == pytest.approx(0.05)
