"""Broker boundary and the paper broker used for dry runs and tests."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel

from fxengine.config import normalize_pair
from fxengine.core.types import Side
from fxengine.logging import get_logger

logger = get_logger(__name__)


class BrokerDecision(BaseModel):
    """What the engine asks the broker to do for one pair."""

    action: str  # BUY, SELL, CLOSE or TRIM
    summary: str = ""
    reason: str = ""
    leverage: int = 1
    signal_strength: str = "LOW"
    entry_price: float | None = None
    stop_price: float | None = None
    close_fraction: float | None = None


class ExecutionReport(BaseModel):
    placed: bool
    dry_run: bool
    order_id: str | None = None
    client_oid: str | None = None
    fill_price: float | None = None
    size_units: float | None = None
    message: str | None = None


@dataclass(slots=True)
class OpenPosition:
    pair: str
    side: Side
    size_units: float
    entry_price: float
    opened_at: datetime | None = None


class Broker(Protocol):
    async def execute(
        self, pair: str, notional_usd: float, decision: BrokerDecision, dry_run: bool
    ) -> ExecutionReport: ...

    async def get_open_position(self, pair: str) -> OpenPosition | None: ...

    async def list_open_positions(self) -> dict[str, OpenPosition]: ...


@dataclass
class PaperBroker:
    """In-memory broker.

    Dry-run requests return a no-op report. Live requests fill immediately at
    the decision's entry price, adjusted by ``slippage_bps`` against the order.
    """

    slippage_bps: float = 0.0
    positions: dict[str, OpenPosition] = field(default_factory=dict)
    fills: list[ExecutionReport] = field(default_factory=list)

    async def execute(
        self, pair: str, notional_usd: float, decision: BrokerDecision, dry_run: bool
    ) -> ExecutionReport:
        pair = normalize_pair(pair)
        client_oid = f"fx-{uuid.uuid4().hex[:16]}"
        if dry_run:
            logger.info(f"[DRY_RUN] {decision.action} {pair} notional={notional_usd:.2f} ({decision.summary})")
            return ExecutionReport(placed=False, dry_run=True, client_oid=client_oid, message="dry_run")

        action = decision.action.upper()
        if action in ("CLOSE", "TRIM"):
            return self._reduce(pair, decision, client_oid)

        price = decision.entry_price
        if not price or price <= 0:
            return ExecutionReport(
                placed=False, dry_run=False, client_oid=client_oid, message="missing entry price"
            )

        side = Side(action)
        slip = price * self.slippage_bps / 10_000
        fill_price = price + slip if side == Side.BUY else price - slip
        size_units = notional_usd * max(1, decision.leverage) / fill_price

        self.positions[pair] = OpenPosition(pair=pair, side=side, size_units=size_units, entry_price=fill_price)
        report = ExecutionReport(
            placed=True,
            dry_run=False,
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            client_oid=client_oid,
            fill_price=fill_price,
            size_units=size_units,
        )
        self.fills.append(report)
        logger.info(f"Paper fill {side.value} {pair} units={size_units:.2f} @ {fill_price:.5f}")
        return report

    def _reduce(self, pair: str, decision: BrokerDecision, client_oid: str) -> ExecutionReport:
        position = self.positions.get(pair)
        if position is None:
            return ExecutionReport(placed=False, dry_run=False, client_oid=client_oid, message="no position")

        fraction = 1.0 if decision.action.upper() == "CLOSE" else (decision.close_fraction or 0.5)
        fraction = max(0.0, min(1.0, fraction))
        closed_units = position.size_units * fraction
        if fraction >= 1.0:
            del self.positions[pair]
        else:
            position.size_units -= closed_units

        report = ExecutionReport(
            placed=True,
            dry_run=False,
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            client_oid=client_oid,
            size_units=closed_units,
        )
        self.fills.append(report)
        return report

    async def get_open_position(self, pair: str) -> OpenPosition | None:
        return self.positions.get(normalize_pair(pair))

    async def list_open_positions(self) -> dict[str, OpenPosition]:
        return dict(self.positions)
