"""Cycle orchestration: scan, regime, execute and manage.

Each cycle is a coroutine taking an explicit ``now`` and is safe to re-run.
Collaborators (store, calendar, market data, classifier, broker) are passed
in, so the engine holds no hidden mutable state between cycles.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from fxengine.config import FXSettings, normalize_pair
from fxengine.core.errors import MarketDataError
from fxengine.core.reasons import ReasonCode, merge_reasons
from fxengine.core.sessions import MarketGateState, evaluate_market_gate
from fxengine.core.types import (
    EligibilityRow,
    EventGateDecision,
    EventState,
    ExecuteCycleResult,
    ExecutionResult,
    JournalLevel,
    JournalType,
    LifecycleAction,
    ManageCycleResult,
    ManageResult,
    ModuleName,
    ModuleSignal,
    PacketSnapshot,
    Permission,
    PositionContext,
    RegimePacket,
    RiskCheck,
    RiskState,
    RiskUsage,
    ScanSnapshot,
    Side,
    TrailingMode,
)
from fxengine.events.gate import EventGate
from fxengine.events.service import EventService
from fxengine.execution.broker import Broker, BrokerDecision, ExecutionReport, OpenPosition
from fxengine.journal import journal_entry, safe_append_journal
from fxengine.lifecycle import evaluate_position, is_packet_stale, resolve_reentry_lock_minutes
from fxengine.logging import clear_trading_context, get_logger, log_exception, set_trading_context
from fxengine.market_data import MarketStateSource, PairMarketState
from fxengine.regime.classifier import RegimeClassifier
from fxengine.risk import (
    apply_accepted_risk,
    build_open_currency_exposure,
    candidate_risk_pct,
    compute_hybrid_risk_size,
    compute_open_risk_usage,
    evaluate_risk_cap_budget,
    evaluate_risk_check,
    fetch_open_positions,
)
from fxengine.selector import run_universe_scan
from fxengine.storage.state import ForexStateStore
from fxengine.strategies import MODULE_REGISTRY, EntryModule, range_boundaries, run_modules

logger = get_logger(__name__)


@dataclass(slots=True)
class _PairPlan:
    """Phase-one outcome for one eligible pair."""

    row: EligibilityRow
    result: ExecutionResult | None = None
    level: JournalLevel = JournalLevel.INFO
    payload: dict[str, Any] = field(default_factory=dict)
    packet: RegimePacket | None = None
    gate: EventGateDecision | None = None
    risk: RiskCheck | None = None
    signal: ModuleSignal | None = None
    module_reasons: list = field(default_factory=list)
    market: PairMarketState | None = None


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json") if model is not None else None


def _signal_strength(confidence: float) -> str:
    if confidence >= 0.75:
        return "HIGH"
    if confidence >= 0.6:
        return "MEDIUM"
    return "LOW"


class ForexEngine:
    """Runs the scan, regime, execute and manage cycles against injected collaborators."""

    def __init__(
        self,
        settings: FXSettings,
        store: ForexStateStore,
        events: EventService,
        market: MarketStateSource,
        classifier: RegimeClassifier,
        broker: Broker,
        modules: dict[ModuleName, EntryModule] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events
        self.market = market
        self.classifier = classifier
        self.broker = broker
        self.modules = modules if modules is not None else MODULE_REGISTRY
        self.gate = EventGate.from_settings(settings)

    async def _journal(self, entry) -> bool:
        return await safe_append_journal(self.store, entry, self.settings.journal_entry_max_bytes)

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def run_scan_cycle(self, now: datetime) -> ScanSnapshot:
        set_trading_context(cycle="scan")
        event_state = await self.events.ensure_state(now)

        snapshot = await run_universe_scan(
            self.settings, self.market, event_state.events, event_state.stale, now
        )
        await self.store.save_scan_snapshot(snapshot)

        await self._journal(
            journal_entry(
                JournalType.SCAN,
                now,
                reason_codes=[ReasonCode.FOREX_SCAN_COMPLETED],
                payload={
                    "generated_at": now.isoformat(),
                    "stale_events": snapshot.stale_events,
                    "eligible_pairs": [row.pair for row in snapshot.eligible_rows()],
                },
            )
        )
        return snapshot

    # ------------------------------------------------------------------
    # Regime
    # ------------------------------------------------------------------

    async def run_regime_cycle(self, now: datetime) -> PacketSnapshot:
        set_trading_context(cycle="regime")
        scan = await self.store.load_scan_snapshot() or await self.run_scan_cycle(now)
        set_trading_context(cycle="regime")
        event_state = await self.events.ensure_state(now)

        blocked: set[str] = set()
        for row in scan.pairs:
            decision = self.gate.evaluate(
                row.pair, event_state.events, event_state.stale, now, risk_state=RiskState.NORMAL
            )
            if decision.block_new_entries:
                blocked.add(row.pair)

        snapshot = await self.classifier.build_snapshot(scan.pairs, now, event_blocked_pairs=blocked)
        await self.store.save_packet_snapshot(snapshot)
        logger.info(f"Regime cycle: {len(snapshot.packets)} packets, {len(blocked)} event-blocked")

        await self._journal(
            journal_entry(
                JournalType.REGIME,
                now,
                reason_codes=[ReasonCode.FOREX_REGIME_COMPLETED],
                payload={
                    "generated_at": now.isoformat(),
                    "packet_count": len(snapshot.packets),
                    "blocked_pairs": sorted(blocked),
                },
            )
        )
        return snapshot

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def run_execute_cycle(
        self,
        now: datetime,
        dry_run: bool | None = None,
        notional_usd: float | None = None,
    ) -> ExecuteCycleResult:
        """Evaluate every eligible pair and place at most one order per pair.

        Pairs are evaluated concurrently; sizing, the risk-cap budget, order
        placement and journaling then run in rank order.
        """
        settings = self.settings
        dry_run = settings.dry_run_default if dry_run is None else dry_run
        notional = notional_usd if notional_usd and notional_usd > 0 else settings.default_notional_usd

        scan = await self.store.load_scan_snapshot() or await self.run_scan_cycle(now)
        packets = await self.store.load_packet_snapshot() or await self.run_regime_cycle(now)
        set_trading_context(cycle="execute")
        packet_by_pair = packets.by_pair()
        event_state = await self.events.ensure_state(now)
        market_gate = evaluate_market_gate(
            now, settings.market_close_fri_utc_hour, settings.market_open_sun_utc_hour
        )

        open_positions = await fetch_open_positions(self.broker, settings.universe_pairs)
        exposure = build_open_currency_exposure(open_positions)
        contexts = {}
        for pair in open_positions:
            context = await self.store.load_position_context(pair)
            if context is not None:
                contexts[pair] = context
        usage = compute_open_risk_usage(
            open_positions, contexts, settings.reference_equity_usd, settings.unknown_position_risk_pct
        )

        plans = await asyncio.gather(
            *(
                self._evaluate_pair(
                    row, packet_by_pair.get(row.pair), event_state, market_gate, open_positions, exposure, now
                )
                for row in scan.eligible_rows()
            )
        )

        results: list[ExecutionResult] = []
        for plan in plans:
            set_trading_context(pair=plan.row.pair)
            if plan.result is None:
                usage = await self._place(plan, notional, dry_run, usage, now)
            plan.result.dry_run = dry_run
            plan.payload["dry_run"] = dry_run
            results.append(plan.result)
            await self._journal(
                journal_entry(
                    JournalType.EXECUTION,
                    now,
                    pair=plan.row.pair,
                    level=plan.level,
                    reason_codes=plan.result.reason_codes,
                    payload=plan.payload,
                )
            )
            clear_trading_context()

        await self._journal(
            journal_entry(
                JournalType.EXECUTION,
                now,
                reason_codes=[ReasonCode.FOREX_EXECUTION_CYCLE_COMPLETED],
                payload={
                    "generated_at": now.isoformat(),
                    "dry_run": dry_run,
                    "notional_usd": notional,
                    "attempted_pairs": [r.pair for r in results if r.attempted],
                    "placed_pairs": [r.pair for r in results if r.placed],
                },
            )
        )
        logger.info(
            f"Execute cycle: {sum(r.attempted for r in results)} attempted, "
            f"{sum(r.placed for r in results)} placed of {len(results)} eligible (dry_run={dry_run})"
        )
        return ExecuteCycleResult(generated_at=now, dry_run=dry_run, notional_usd=notional, results=results)

    def _skip(
        self,
        plan: _PairPlan,
        reasons: list,
        level: JournalLevel = JournalLevel.INFO,
        **payload: Any,
    ) -> _PairPlan:
        plan.result = ExecutionResult(
            pair=plan.row.pair,
            attempted=False,
            dry_run=True,
            reason_codes=reasons,
            packet=plan.packet,
        )
        plan.level = level
        plan.payload = {
            "gate": _dump(plan.gate),
            "risk": _dump(plan.risk),
            "packet": _dump(plan.packet),
            **payload,
        }
        return plan

    async def _evaluate_pair(
        self,
        row: EligibilityRow,
        packet: RegimePacket | None,
        event_state: EventState,
        market_gate: MarketGateState,
        open_positions: dict[str, OpenPosition],
        exposure: dict[str, int],
        now: datetime,
    ) -> _PairPlan:
        settings = self.settings
        pair = row.pair
        set_trading_context(pair=pair)
        plan = _PairPlan(row=row, packet=packet)

        if packet is None:
            return self._skip(plan, [ReasonCode.NO_PACKET_AVAILABLE])
        if market_gate.market_closed:
            return self._skip(
                plan,
                [ReasonCode.MARKET_CLOSED_WEEKEND, ReasonCode.ENTRY_BLOCKED],
                reopens_at=market_gate.reopens_at.isoformat() if market_gate.reopens_at else None,
            )
        if is_packet_stale(packet, now, settings.packet_stale_minutes):
            return self._skip(plan, [ReasonCode.PACKET_STALE, ReasonCode.ENTRY_BLOCKED])

        lock_until = await self.store.get_reentry_lock_until(pair)
        if lock_until is not None and lock_until > now:
            return self._skip(
                plan,
                [ReasonCode.REENTRY_LOCK_ACTIVE, ReasonCode.ENTRY_BLOCKED],
                reentry_lock_until=lock_until.isoformat(),
            )
        if pair in open_positions:
            return self._skip(plan, [ReasonCode.POSITION_ALREADY_OPEN, ReasonCode.ENTRY_BLOCKED])

        if row.metrics is None:
            return self._skip(plan, [ReasonCode.MARKET_DATA_UNAVAILABLE, ReasonCode.ENTRY_BLOCKED])

        plan.gate = self.gate.evaluate(
            pair, event_state.events, event_state.stale, now, risk_state=packet.risk_state
        )
        plan.risk = await evaluate_risk_check(
            pair, row.metrics, plan.gate, now, settings, self.store, exposure
        )
        if (
            not plan.risk.allow_entry
            or packet.permission == Permission.FLAT
            or ModuleName.NONE in packet.allowed_modules
            or not packet.entry_modules()
        ):
            reasons = merge_reasons(plan.risk.reason_codes, plan.gate.reason_codes, [ReasonCode.ENTRY_BLOCKED])
            return self._skip(plan, reasons)

        try:
            plan.market = await self.market.load(pair, now)
        except MarketDataError as e:
            logger.warning(f"Market state unavailable for {pair}: {e}")
            return self._skip(
                plan, [ReasonCode.MARKET_DATA_UNAVAILABLE], level=JournalLevel.WARN, error=str(e)
            )

        module_reasons: list = []
        order = packet.entry_modules()
        if ModuleName.RANGE_FADE in order:
            cooldown_until = await self.store.get_range_fade_cooldown_until(pair)
            if cooldown_until is not None and cooldown_until > now:
                order = [module for module in order if module != ModuleName.RANGE_FADE]
                module_reasons.append(ReasonCode.RANGE_FADE_DISABLED_UNTIL_NEXT_REEVAL)

        run = run_modules(order, self.modules, pair, packet, plan.market, row.metrics, settings)
        module_reasons.extend(run.reason_codes)
        if ModuleName.RANGE_FADE in run.kill_switched:
            until = now + settings.range_fade_kill_switch_cooldown
            await self.store.set_range_fade_cooldown(pair, until)
            logger.info(f"Range fade suspended on {pair} until {until.isoformat()}")
            module_reasons.append(ReasonCode.RANGE_FADE_DISABLED_UNTIL_NEXT_REEVAL)

        if run.outcome is None or run.outcome.signal is None:
            return self._skip(plan, merge_reasons(module_reasons, [ReasonCode.NO_MODULE_SIGNAL]))

        plan.signal = run.outcome.signal
        plan.module_reasons = module_reasons
        return plan

    async def _place(
        self,
        plan: _PairPlan,
        notional: float,
        dry_run: bool,
        usage: RiskUsage,
        now: datetime,
    ) -> RiskUsage:
        """Size, budget-check and send one signal; returns the updated risk usage."""
        settings = self.settings
        signal, packet, risk, gate = plan.signal, plan.packet, plan.risk, plan.gate
        pair = plan.row.pair

        size = compute_hybrid_risk_size(
            signal.entry_price,
            signal.stop_price,
            packet.confidence,
            notional,
            settings.max_leverage_per_pair,
            settings.risk_per_trade_pct,
            settings.reference_equity_usd,
        )
        risk_pct = candidate_risk_pct(size, signal.entry_price, settings.reference_equity_usd)
        budget = evaluate_risk_cap_budget(
            pair,
            risk_pct,
            usage,
            settings.max_portfolio_open_risk_pct,
            settings.max_currency_open_risk_pct,
        )
        base_payload = {
            "signal": _dump(signal),
            "gate": _dump(gate),
            "risk": _dump(risk),
            "packet": _dump(packet),
            "sizing": _dump(size),
            "candidate_risk_pct": risk_pct,
        }

        if not budget.allow:
            plan.result = ExecutionResult(
                pair=pair,
                attempted=False,
                dry_run=dry_run,
                module=signal.module,
                reason_codes=merge_reasons(
                    signal.reason_codes, budget.reason_codes, size.reason_codes, [ReasonCode.ENTRY_BLOCKED]
                ),
                packet=packet,
            )
            plan.level = JournalLevel.INFO
            plan.payload = {**base_payload, "budget": _dump(budget)}
            return usage

        decision = BrokerDecision(
            action=signal.side.value,
            summary=f"{signal.module.value}_{signal.side.value.lower()}",
            reason="|".join(str(getattr(code, "value", code)) for code in signal.reason_codes),
            leverage=size.leverage,
            signal_strength=_signal_strength(packet.confidence),
            entry_price=signal.entry_price,
            stop_price=signal.stop_price,
        )

        reasons = merge_reasons(signal.reason_codes, size.reason_codes, risk.reason_codes, gate.reason_codes)
        try:
            report = await self.broker.execute(pair, size.side_size_usd, decision, dry_run)
        except Exception as e:
            log_exception(logger, e, {"pair": pair, "action": decision.action})
            report = ExecutionReport(placed=False, dry_run=dry_run, message=str(e))
            reasons = merge_reasons(reasons, [ReasonCode.EXECUTION_FAILED])

        plan.result = ExecutionResult(
            pair=pair,
            attempted=True,
            placed=report.placed,
            dry_run=dry_run,
            action=signal.side.value,
            module=signal.module,
            reason_codes=reasons,
            order_id=report.order_id,
            client_oid=report.client_oid,
            packet=packet,
        )
        plan.level = JournalLevel.INFO if report.placed else JournalLevel.WARN
        plan.payload = {**base_payload, "decision": _dump(decision), "execution": _dump(report)}

        if report.placed and not dry_run:
            await self.store.save_position_context(
                self._position_context(plan, report, size.side_size_usd, size.leverage, now)
            )
            usage = apply_accepted_risk(usage, pair, risk_pct)
            logger.info(f"Opened {signal.side.value} {pair} via {signal.module.value} (order={report.order_id})")
        return usage

    def _position_context(
        self,
        plan: _PairPlan,
        report: ExecutionReport,
        notional: float,
        leverage: int,
        now: datetime,
    ) -> PositionContext:
        signal = plan.signal
        entry = report.fill_price or signal.entry_price
        r_value = abs(entry - signal.stop_price)
        direction = 1 if signal.side == Side.BUY else -1

        lower = upper = None
        if signal.module == ModuleName.RANGE_FADE and plan.market is not None:
            levels = range_boundaries(plan.market.candles.m15)
            if levels is not None:
                lower, upper = levels

        return PositionContext(
            pair=signal.pair,
            side=signal.side,
            entry_module=signal.module,
            entry_price=entry,
            initial_stop_price=signal.stop_price,
            current_stop_price=signal.stop_price,
            initial_risk_distance=r_value,
            tp1_price=entry + direction * r_value * self.settings.tp1_r_multiple,
            tp2_price=entry + direction * r_value * self.settings.tp2_r_multiple,
            range_lower_boundary=lower,
            range_upper_boundary=upper,
            opened_at=now,
            last_managed_at=now,
            entry_notional_usd=notional,
            entry_leverage=leverage,
            size_units=report.size_units,
            packet=plan.packet,
        )

    # ------------------------------------------------------------------
    # Manage
    # ------------------------------------------------------------------

    async def run_manage_cycle(self, now: datetime, dry_run: bool | None = None) -> ManageCycleResult:
        """Apply the lifecycle decision to every position with a stored context."""
        settings = self.settings
        dry_run = settings.dry_run_default if dry_run is None else dry_run
        set_trading_context(cycle="manage")

        packets = await self.store.load_packet_snapshot()
        packet_by_pair = packets.by_pair() if packets else {}
        event_state = await self.events.ensure_state(now)

        results: list[ManageResult] = []
        for pair in settings.universe_pairs:
            context = await self.store.load_position_context(pair)
            if context is None:
                continue
            set_trading_context(pair=pair)
            packet = packet_by_pair.get(pair)
            # Stale packets never drive regime-flip or structural exits.
            stale_packet = packet is not None and is_packet_stale(packet, now, settings.packet_stale_minutes)
            result = await self._manage_position(
                context, None if stale_packet else packet, event_state, now, dry_run
            )
            if stale_packet:
                result.reason_codes = merge_reasons(result.reason_codes, [ReasonCode.PACKET_STALE])
            results.append(result)
            await self._journal(
                journal_entry(
                    JournalType.EXECUTION,
                    now,
                    pair=pair,
                    level=JournalLevel.INFO,
                    reason_codes=result.reason_codes,
                    payload={"manage": _dump(result), "context": _dump(context), "dry_run": dry_run},
                )
            )
            clear_trading_context()

        await self._journal(
            journal_entry(
                JournalType.EXECUTION,
                now,
                reason_codes=[ReasonCode.FOREX_MANAGE_CYCLE_COMPLETED],
                payload={
                    "generated_at": now.isoformat(),
                    "dry_run": dry_run,
                    "managed_pairs": [r.pair for r in results],
                    "closed_pairs": [r.pair for r in results if r.action == LifecycleAction.CLOSE],
                },
            )
        )
        return ManageCycleResult(generated_at=now, dry_run=dry_run, results=results)

    async def _manage_position(
        self,
        context: PositionContext,
        packet: RegimePacket | None,
        event_state: EventState,
        now: datetime,
        dry_run: bool,
    ) -> ManageResult:
        settings = self.settings
        pair = normalize_pair(context.pair)

        try:
            position = await self.broker.get_open_position(pair)
        except Exception as e:
            logger.warning(f"Position lookup failed for {pair}: {e}")
            return ManageResult(pair=pair, action=LifecycleAction.WAIT, reason_codes=[ReasonCode.QUOTE_UNAVAILABLE])

        if position is None:
            if not dry_run:
                await self.store.delete_position_context(pair)
            return ManageResult(
                pair=pair,
                action=LifecycleAction.WAIT,
                reason_codes=[ReasonCode.POSITION_NOT_OPEN],
                applied=not dry_run,
            )

        try:
            market = await self.market.load(pair, now)
        except MarketDataError as e:
            logger.warning(f"Market state unavailable for {pair}: {e}")
            market = None

        force_close = self.gate.force_close_matches(
            pair, event_state.events, now, settings.event_force_close_impacts
        )
        decision = evaluate_position(context, position.side, packet, market, force_close, now, settings)
        result = ManageResult(
            pair=pair,
            action=decision.action,
            reason_codes=decision.reason_codes,
            new_stop_price=decision.new_stop_price,
        )

        if decision.action == LifecycleAction.CLOSE:
            stress = market is not None and market.spread_to_atr1h > settings.risk_max_spread_to_atr1h
            minutes = resolve_reentry_lock_minutes(decision.reason_codes, settings, stress)
            if minutes:
                result.reentry_lock_until = now + timedelta(minutes=minutes)
            report = await self._send(
                pair,
                BrokerDecision(
                    action="CLOSE",
                    summary="lifecycle_close",
                    reason="|".join(code.value for code in decision.reason_codes),
                ),
                dry_run,
            )
            if report is not None and report.placed and not dry_run:
                await self.store.delete_position_context(pair)
                if result.reentry_lock_until is not None:
                    await self.store.set_reentry_lock(
                        pair, result.reentry_lock_until, decision.reason_codes[0].value
                    )
                result.applied = True
                logger.info(f"Closed {pair}: {[code.value for code in decision.reason_codes]}")
            return result

        if decision.action == LifecycleAction.TRIM:
            report = await self._send(
                pair,
                BrokerDecision(
                    action="TRIM",
                    summary="lifecycle_trim",
                    reason=ReasonCode.TP1_PARTIAL_TAKEN.value,
                    close_fraction=decision.close_fraction,
                ),
                dry_run,
            )
            if report is not None and report.placed and not dry_run:
                remaining = None
                if context.size_units is not None and report.size_units is not None:
                    remaining = max(0.0, context.size_units - report.size_units)
                await self.store.save_position_context(
                    context.model_copy(
                        update={
                            "partial_taken_pct": settings.partial_close_pct,
                            "current_stop_price": decision.new_stop_price,
                            "trailing_active": True,
                            "trailing_mode": decision.trailing_mode or TrailingMode.STRUCTURE,
                            "size_units": remaining,
                            "last_managed_at": now,
                        }
                    )
                )
                result.applied = True
            return result

        if decision.new_stop_price is not None and not dry_run:
            await self.store.save_position_context(
                context.model_copy(
                    update={"current_stop_price": decision.new_stop_price, "last_managed_at": now}
                )
            )
            result.applied = True
        return result

    async def _send(self, pair: str, decision: BrokerDecision, dry_run: bool) -> ExecutionReport | None:
        try:
            return await self.broker.execute(pair, 0.0, decision, dry_run)
        except Exception as e:
            log_exception(logger, e, {"pair": pair, "action": decision.action})
            return None
