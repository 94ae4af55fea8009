"""Enums, snapshots and DTOs shared by every engine stage."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from fxengine.core.reasons import ReasonCode, merge_reasons


def _coerce_reason_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return merge_reasons(value)
    return value


ReasonList = Annotated[list[ReasonCode | str], BeforeValidator(_coerce_reason_list)]


class RiskState(str, Enum):
    NORMAL = "normal"
    ELEVATED = "elevated"
    EXTREME = "extreme"


class Regime(str, Enum):
    TREND_UP = "trend_up"
    TREND_DOWN = "trend_down"
    RANGE = "range"
    HIGH_VOL = "high_vol"
    EVENT_RISK = "event_risk"


class Permission(str, Enum):
    LONG_ONLY = "long_only"
    SHORT_ONLY = "short_only"
    BOTH = "both"
    FLAT = "flat"

    def allows_long(self) -> bool:
        return self in (Permission.LONG_ONLY, Permission.BOTH)

    def allows_short(self) -> bool:
        return self in (Permission.SHORT_ONLY, Permission.BOTH)


class ModuleName(str, Enum):
    PULLBACK = "pullback"
    BREAKOUT_RETEST = "breakout_retest"
    RANGE_FADE = "range_fade"
    NONE = "none"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class EventImpact(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    UNKNOWN = "UNKNOWN"


class SessionTag(str, Enum):
    ASIA = "ASIA"
    LONDON = "LONDON"
    OVERLAP = "OVERLAP"
    NEW_YORK = "NEW_YORK"
    DEAD_HOURS = "DEAD_HOURS"


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class TrailingMode(str, Enum):
    NONE = "none"
    STRUCTURE = "structure"
    ATR = "atr"
    RANGE_PROTECTIVE = "range_protective"


class JournalType(str, Enum):
    SCAN = "scan"
    REGIME = "regime"
    EXECUTION = "execution"
    EVENT_REFRESH = "event_refresh"


class JournalLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LifecycleAction(str, Enum):
    WAIT = "WAIT"
    TRIM = "TRIM"
    CLOSE = "CLOSE"


@dataclass(slots=True, frozen=True)
class Candle:
    """One OHLCV bar; ``timestamp`` is the bar open time (UTC)."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(slots=True)
class Quote:
    """Top of book for a pair."""

    bid: float
    offer: float
    timestamp: datetime | None = None

    @property
    def mid(self) -> float:
        return (self.bid + self.offer) / 2.0


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------


class PairMetrics(BaseModel):
    """Per-pair snapshot produced by the market-data collaborator."""

    model_config = ConfigDict(frozen=True)

    pair: str
    session_tag: SessionTag
    price: float
    spread_abs: float = 0.0
    spread_pips: float = 0.0
    spread_to_atr1h: float
    atr1h: float
    atr4h: float = 0.0
    atr1h_percent: float
    trend_strength: float
    chop_score: float
    shock_flag: bool = False
    timestamp: datetime


class EligibilityRow(BaseModel):
    pair: str
    eligible: bool
    rank: int = 0
    score: float = 0.0
    reasons: ReasonList = Field(default_factory=list)
    metrics: PairMetrics | None = None


class ScanSnapshot(BaseModel):
    generated_at: datetime
    stale_events: bool = False
    pairs: list[EligibilityRow] = Field(default_factory=list)

    def eligible_rows(self) -> list[EligibilityRow]:
        return [row for row in self.pairs if row.eligible]


# ---------------------------------------------------------------------------
# Regime packets
# ---------------------------------------------------------------------------


class HtfContext(BaseModel):
    """Higher-timeframe context; distances are expressed in 1h ATR units."""

    nearest_support: float | None = None
    nearest_resistance: float | None = None
    distance_to_support_atr1h: float | None = None
    distance_to_resistance_atr1h: float | None = None


class RegimePacket(BaseModel):
    pair: str
    generated_at: datetime
    regime: Regime
    permission: Permission
    allowed_modules: list[ModuleName] = Field(default_factory=lambda: [ModuleName.NONE])
    risk_state: RiskState = RiskState.NORMAL
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    htf_context: HtfContext = Field(default_factory=HtfContext)
    notes_codes: list[str] = Field(default_factory=list)

    @field_validator("notes_codes", mode="before")
    @classmethod
    def _notes_as_text(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(getattr(item, "value", item)) for item in value]
        return value

    def entry_modules(self) -> list[ModuleName]:
        """Allowed modules in packet order, without the ``none`` marker."""
        return [module for module in self.allowed_modules if module != ModuleName.NONE]


class PacketSnapshot(BaseModel):
    generated_at: datetime
    packets: list[RegimePacket] = Field(default_factory=list)

    def by_pair(self) -> dict[str, RegimePacket]:
        return {packet.pair: packet for packet in self.packets}


# ---------------------------------------------------------------------------
# Economic events
# ---------------------------------------------------------------------------


class EconomicEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    currency: str
    impact: EventImpact
    name: str
    actual: float | str | None = None
    forecast: float | str | None = None
    previous: float | str | None = None
    source: str = "forexfactory"


class EventSnapshot(BaseModel):
    source: str = "forexfactory"
    fetched_at: datetime
    from_date: str
    to_date: str
    events: list[EconomicEvent] = Field(default_factory=list)


class EventStoreMeta(BaseModel):
    last_fetch_attempt_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None
    call_counter_day: str = ""
    call_counter: int = 0


class EventState(BaseModel):
    snapshot: EventSnapshot | None = None
    meta: EventStoreMeta = Field(default_factory=EventStoreMeta)
    stale: bool = True
    stale_minutes: int
    refresh_minutes: int

    @property
    def events(self) -> list[EconomicEvent]:
        return self.snapshot.events if self.snapshot else []


class EventRefreshResult(BaseModel):
    ok: bool
    refreshed: bool
    skipped: bool
    reason: str | None = None
    state: EventState
    from_date: str
    to_date: str
    requested_at: datetime


class EventGateDecision(BaseModel):
    pair: str
    block_new_entries: bool
    allow_new_entries: bool
    allow_risk_reduction: bool = True
    stale_data: bool
    reason_codes: ReasonList = Field(default_factory=list)
    matched_events: list[EconomicEvent] = Field(default_factory=list)
    risk_state_applied: RiskState
    active_impact_levels: list[EventImpact] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Signals, risk and positions
# ---------------------------------------------------------------------------


class ModuleSignal(BaseModel):
    pair: str
    module: ModuleName
    side: Side
    entry_price: float
    stop_price: float
    confidence: float
    reason_codes: ReasonList = Field(default_factory=list)


@dataclass(slots=True)
class ModuleOutcome:
    """Result of one module evaluation; ``kill_switch`` asks the caller to suspend it."""

    signal: ModuleSignal | None = None
    reason_codes: list[ReasonCode | str] = field(default_factory=list)
    kill_switch: bool = False


class RiskUsage(BaseModel):
    portfolio_open_risk_pct: float = 0.0
    currency_open_risk_pct: dict[str, float] = Field(default_factory=dict)
    pair_open_risk_pct: dict[str, float] = Field(default_factory=dict)
    unknown_risk_pairs: list[str] = Field(default_factory=list)


class RiskCheck(BaseModel):
    pair: str
    allow_entry: bool
    allow_risk_reduction: bool = True
    reason_codes: ReasonList = Field(default_factory=list)
    cooldown_until: datetime | None = None


class BudgetCheck(BaseModel):
    allow: bool
    reason_codes: ReasonList = Field(default_factory=list)


class HybridSizeDecision(BaseModel):
    side_size_usd: float
    leverage: int
    effective_notional_usd: float
    risk_usd: float | None = None
    risk_pct_used: float | None = None
    stop_distance: float | None = None
    used_fallback: bool
    reason_codes: ReasonList = Field(default_factory=list)


class PositionContext(BaseModel):
    """Lifecycle state of one open position, persisted per pair."""

    pair: str
    side: Side
    entry_module: ModuleName
    entry_price: float
    initial_stop_price: float
    current_stop_price: float
    initial_risk_distance: float
    partial_taken_pct: float = 0.0
    trailing_active: bool = False
    trailing_mode: TrailingMode = TrailingMode.NONE
    tp1_price: float | None = None
    tp2_price: float | None = None
    range_lower_boundary: float | None = None
    range_upper_boundary: float | None = None
    opened_at: datetime
    last_managed_at: datetime
    last_close_at: datetime | None = None
    entry_notional_usd: float | None = None
    entry_leverage: int | None = None
    size_units: float | None = None
    packet: RegimePacket | None = None


class ReentryLock(BaseModel):
    until: datetime
    reason_code: str | None = None


class CooldownRecord(BaseModel):
    until: datetime


# ---------------------------------------------------------------------------
# Journal / results
# ---------------------------------------------------------------------------


class JournalEntry(BaseModel):
    id: str
    timestamp: datetime
    type: JournalType
    pair: str | None = None
    level: JournalLevel = JournalLevel.INFO
    reason_codes: ReasonList = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    pair: str
    attempted: bool
    placed: bool = False
    dry_run: bool
    action: str = "NONE"
    module: ModuleName = ModuleName.NONE
    reason_codes: ReasonList = Field(default_factory=list)
    order_id: str | None = None
    client_oid: str | None = None
    packet: RegimePacket | None = None


class ExecuteCycleResult(BaseModel):
    generated_at: datetime
    dry_run: bool
    notional_usd: float
    results: list[ExecutionResult] = Field(default_factory=list)


class ManageResult(BaseModel):
    pair: str
    action: LifecycleAction
    reason_codes: ReasonList = Field(default_factory=list)
    applied: bool = False
    reentry_lock_until: datetime | None = None
    new_stop_price: float | None = None


class ManageCycleResult(BaseModel):
    generated_at: datetime
    dry_run: bool
    results: list[ManageResult] = Field(default_factory=list)
