"""Command-line entrypoint: run one engine cycle and print its result as JSON."""

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from fxengine.ai.client import OpenAIRegimeClient
from fxengine.config import FXSettings, load_settings
from fxengine.core.errors import FXEngineError
from fxengine.engine import ForexEngine
from fxengine.events.calendar import CalendarClient
from fxengine.events.service import EventService
from fxengine.execution.broker import PaperBroker
from fxengine.logging import get_logger, setup_logging
from fxengine.market_data import MarketDataService, load_provider
from fxengine.regime.classifier import RegimeClassifier
from fxengine.storage.kv import RedisKVStore
from fxengine.storage.state import ForexStateStore

logger = get_logger(__name__)


def resolve_dry_run(command: str, dry_run: bool | None, settings: FXSettings) -> bool:
    """Resolve the run mode; live position management is refused with the in-memory paper broker.

    A fresh ``PaperBroker`` holds no positions, so a live manage run would treat
    every stored position context as closed and delete it.
    """
    resolved = settings.dry_run_default if dry_run is None else dry_run
    if command == "manage" and not resolved:
        raise FXEngineError("manage --live needs a persistent broker; the paper broker is per-process")
    return resolved


async def run_command(args: argparse.Namespace, settings: FXSettings) -> Any:
    """Wire the collaborators, run the requested cycle and release every client."""
    dry_run = resolve_dry_run(args.command, getattr(args, "dry_run", None), settings)
    now = datetime.now(UTC)
    kv = RedisKVStore(settings.redis_url)
    calendar = CalendarClient(settings)
    ai_client = OpenAIRegimeClient(settings) if settings.ai_api_key else None
    try:
        await kv.connect()
        store = ForexStateStore(kv, settings)
        events = EventService(settings, store, calendar)

        if args.command == "refresh-events":
            result = await events.refresh(now, force=args.force)
            await events.journal_refresh(result, now)
            return result

        if not settings.market_data_provider:
            raise FXEngineError("FOREX_MARKET_DATA_PROVIDER is not set (expected 'module:factory')")
        market = MarketDataService(load_provider(settings.market_data_provider, settings), settings)
        engine = ForexEngine(
            settings,
            store,
            events,
            market,
            RegimeClassifier(settings, ai_client),
            PaperBroker(),
        )

        cycles: dict[str, Callable[[], Awaitable[Any]]] = {
            "scan": lambda: engine.run_scan_cycle(now),
            "regime": lambda: engine.run_regime_cycle(now),
            "execute": lambda: engine.run_execute_cycle(
                now, dry_run=dry_run, notional_usd=getattr(args, "notional", None)
            ),
            "manage": lambda: engine.run_manage_cycle(now, dry_run=dry_run),
        }
        return await cycles[args.command]()
    finally:
        await calendar.close()
        if ai_client is not None:
            await ai_client.close()
        await kv.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Regime-gated FX trading engine")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Cycle to run")

    subparsers.add_parser("scan", help="Score and rank the pair universe")
    subparsers.add_parser("regime", help="Classify regimes for the scanned pairs")

    for name, help_text in (
        ("execute", "Evaluate entries for eligible pairs"),
        ("manage", "Apply exit rules to open positions"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        mode = sub.add_mutually_exclusive_group()
        mode.add_argument("--dry-run", dest="dry_run", action="store_true", default=None, help="Simulate orders")
        mode.add_argument("--live", dest="dry_run", action="store_false", help="Send orders to the broker")
        if name == "execute":
            sub.add_argument("--notional", type=float, default=None, help="Fallback notional in USD")

    refresh = subparsers.add_parser("refresh-events", help="Refresh the economic calendar snapshot")
    refresh.add_argument("--force", action="store_true", help="Ignore the refresh interval")
    return parser


def main() -> None:
    """Main entrypoint."""
    args = build_parser().parse_args()
    settings = load_settings()
    setup_logging(settings)

    try:
        result = asyncio.run(run_command(args, settings))
    except FXEngineError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)

    print(result.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
