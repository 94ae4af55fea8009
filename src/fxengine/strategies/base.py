"""Entry-module contract and the ordered module runner."""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from fxengine.config import FXSettings
from fxengine.core.types import ModuleName, ModuleOutcome, PairMetrics, RegimePacket
from fxengine.market_data import PairMarketState

EntryModule = Callable[[str, RegimePacket, PairMarketState, PairMetrics, FXSettings], ModuleOutcome]


@dataclass(slots=True)
class ModuleRun:
    """Outcome of trying a packet's modules in order until one signals."""

    outcome: ModuleOutcome | None = None
    module: ModuleName = ModuleName.NONE
    tried: list[ModuleName] = field(default_factory=list)
    reason_codes: list = field(default_factory=list)
    kill_switched: list[ModuleName] = field(default_factory=list)


def run_modules(
    modules: Iterable[ModuleName],
    registry: Mapping[ModuleName, EntryModule],
    pair: str,
    packet: RegimePacket,
    market: PairMarketState,
    metrics: PairMetrics,
    settings: FXSettings,
) -> ModuleRun:
    run = ModuleRun()
    for module in modules:
        evaluate = registry.get(module)
        if evaluate is None:
            continue
        run.tried.append(module)
        outcome = evaluate(pair, packet, market, metrics, settings)
        run.reason_codes.extend(outcome.reason_codes)
        if outcome.kill_switch:
            run.kill_switched.append(module)
        if outcome.signal is not None:
            run.outcome = outcome
            run.module = module
            break
    return run
