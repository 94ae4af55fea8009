"""Regime-gated FX trading engine."""

__all__ = ["ForexEngine", "FXSettings", "__version__"]
__version__ = "0.1.0"


def __getattr__(name: str):
    if name == "ForexEngine":
        from .engine import ForexEngine

        return ForexEngine
    if name == "FXSettings":
        from .config import FXSettings

        return FXSettings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
