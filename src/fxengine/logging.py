"""Structured logging setup with cycle/pair/module context support.

Two output formats are supported, controlled by ``settings.log_format``
(``FOREX_LOG_FORMAT``):

- ``text`` (default): human-readable console output for local runs.
  Format: ``2024-01-01 12:00:00 | INFO     | fxengine.engine | [cycle=execute]
           [pair=EURUSD] [module=pullback] | message``

- ``json``: one JSON object per line for log aggregators.  Fields:
  ``timestamp``, ``level``, ``logger``, ``message``, ``cycle``, ``pair``,
  ``module``, ``service`` and (on exceptions) ``exc_type``/``exc_value``/
  ``exc_trace``.

Context propagation:
  All ContextVars are asyncio-native and are copied into every task spawned by
  ``asyncio.gather``, so the per-pair fan-out in the execute cycle can bind the
  pair once and every log line emitted inside that coroutine carries it.

  Use ``set_trading_context()`` / ``clear_trading_context()`` rather than
  manipulating the ContextVars directly.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fxengine.config import FXSettings

cycle_var: ContextVar[str | None] = ContextVar("cycle", default=None)
pair_var: ContextVar[str | None] = ContextVar("pair", default=None)
module_var: ContextVar[str | None] = ContextVar("module", default=None)

_SERVICE_NAME = "fxengine"


class TradingContextFilter(logging.Filter):
    """Inject cycle, pair and module context into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle = cycle_var.get() or ""
        record.pair = pair_var.get() or ""
        record.module_name = module_var.get() or ""
        return True


class JSONFormatter(logging.Formatter):
    """Emit one JSON object per log line.

    Context fields are empty strings (not "N/A") when absent so aggregators can
    filter them with ``pair != ""``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "cycle": getattr(record, "cycle", ""),
            "pair": getattr(record, "pair", ""),
            "module": getattr(record, "module_name", ""),
            "service": _SERVICE_NAME,
        }

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            payload["exc_type"] = exc_type.__name__ if exc_type else None
            payload["exc_value"] = str(exc_value)
            payload["exc_trace"] = traceback.format_exception(exc_type, exc_value, exc_tb)

        return json.dumps(payload, default=str)


class _TradingTextFormatter(logging.Formatter):
    """Human-readable formatter that appends non-empty trading context tokens."""

    _BASE_FMT = "%(asctime)s | %(levelname)-8s | %(name)s"
    _DATE_FMT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self._BASE_FMT, datefmt=self._DATE_FMT)

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        tokens: list[str] = []
        cycle = getattr(record, "cycle", "")
        pair = getattr(record, "pair", "")
        module = getattr(record, "module_name", "")
        if cycle:
            tokens.append(f"[cycle={cycle}]")
        if pair:
            tokens.append(f"[pair={pair}]")
        if module:
            tokens.append(f"[module={module}]")

        context_part = (" | " + " ".join(tokens)) if tokens else ""
        line = f"{base}{context_part} | {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(settings: "FXSettings | None" = None) -> None:
    """Configure root logging from settings.

    Call once at process startup.  Calling again only adjusts the level, so no
    duplicate handlers are installed.
    """
    log_level_str = (settings.log_level if settings else "INFO").upper()
    log_format = (settings.log_format if settings else "text").lower()
    log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    if root_logger.handlers:
        root_logger.setLevel(log_level)
        return

    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(TradingContextFilter())
    if log_format == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(_TradingTextFormatter())
    root_logger.addHandler(console_handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialised (level=%s, format=%s)", log_level_str, log_format
    )


def set_trading_context(
    cycle: str | None = None,
    pair: str | None = None,
    module: str | None = None,
) -> None:
    """Bind context into the current async context.

    Only the explicitly passed arguments are updated; omitted ones keep the
    value set by an outer frame.
    """
    if cycle is not None:
        cycle_var.set(cycle)
    if pair is not None:
        pair_var.set(pair)
    if module is not None:
        module_var.set(module)


def clear_trading_context() -> None:
    """Clear pair and module context (the cycle stays bound)."""
    pair_var.set(None)
    module_var.set(None)


def get_logger(name: str) -> logging.Logger:
    """Return a standard ``logging.Logger`` for the given module name."""
    return logging.getLogger(name)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    context: dict[str, Any] | None = None,
) -> None:
    """Log an exception with optional structured context."""
    context_str = f" | context={context}" if context else ""
    logger.error("Exception: %s%s", exc, context_str, exc_info=True)
