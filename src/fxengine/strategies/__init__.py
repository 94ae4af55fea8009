"""Entry modules, keyed by the module names packets allow."""

from fxengine.core.types import ModuleName

from .base import EntryModule, ModuleRun, run_modules
from .breakout_retest import evaluate_breakout_retest
from .pullback import evaluate_pullback
from .range_fade import evaluate_range_fade, range_boundaries

MODULE_REGISTRY: dict[ModuleName, EntryModule] = {
    ModuleName.PULLBACK: evaluate_pullback,
    ModuleName.BREAKOUT_RETEST: evaluate_breakout_retest,
    ModuleName.RANGE_FADE: evaluate_range_fade,
}

__all__ = [
    "MODULE_REGISTRY",
    "EntryModule",
    "ModuleRun",
    "evaluate_breakout_retest",
    "evaluate_pullback",
    "evaluate_range_fade",
    "range_boundaries",
    "run_modules",
]
