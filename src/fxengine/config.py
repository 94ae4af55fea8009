"""Configuration management using Pydantic v2.

Every cycle runs against one immutable ``FXSettings`` value.  Build it with
``load_settings()`` (environment + optional ``.env``) and pass it down
explicitly; nothing in the package reads configuration from module globals.
"""

import json
import os
from datetime import timedelta
from typing import Any, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_UNIVERSE = [
    "EURUSD",
    "GBPUSD",
    "USDJPY",
    "USDCHF",
    "AUDUSD",
    "USDCAD",
    "NZDUSD",
    "EURJPY",
    "GBPJPY",
    "EURGBP",
]

DEFAULT_CALENDAR_URL = "https://nfs.faireconomy.media/ff_calendar_thisweek.json"


def parse_list_env(value: Any) -> Any:
    """Parse list values from env (JSON array, comma-separated, or single item)."""
    if value is None:
        return value
    if isinstance(value, str):
        if value.strip() == "":
            return value
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError:
            pass
        items = [item.strip() for item in value.split(",") if item.strip()]
        return items if items else value
    return value


def parse_pair_number_map(value: Any) -> dict[str, float]:
    """Parse a ``{"EURUSD": 2.0}`` mapping, dropping non-positive or non-numeric entries."""
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if not isinstance(value, dict):
        return {}
    out: dict[str, float] = {}
    for key, raw in value.items():
        try:
            number = float(raw)
        except (TypeError, ValueError):
            continue
        if number > 0 and number != float("inf"):
            out[str(key).strip().upper()] = number
    return out


def pip_size_for_pair(pair: str) -> float:
    """Pip size: 0.01 for JPY-quoted pairs, 0.0001 otherwise."""
    return 0.01 if "JPY" in str(pair or "").upper() else 0.0001


def normalize_pair(pair: str) -> str:
    return str(pair or "").strip().upper()


def pair_currencies(pair: str) -> list[str]:
    """ISO legs of a pair (``EURUSD`` -> ``["EUR", "USD"]``); empty when unparseable."""
    letters = "".join(ch for ch in normalize_pair(pair) if "A" <= ch <= "Z")
    if len(letters) < 6:
        return []
    return [letters[:3], letters[3:6]]


def _find_env_file() -> str:
    """Find .env file: check project root first, then CWD."""
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    env_path = os.path.join(project_root, ".env")
    if os.path.exists(env_path):
        return env_path
    return ".env"


class FXSettings(BaseSettings):
    """Strategy, risk, event and infrastructure configuration for the FX engine."""

    model_config = SettingsConfigDict(
        env_prefix="FOREX_",
        env_file=_find_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
        env_ignore_empty=True,
        populate_by_name=True,
        frozen=True,
    )

    # Universe / execution defaults
    universe_pairs: list[str] = Field(
        default_factory=lambda: list(DEFAULT_UNIVERSE),
        description="Configured currency pairs, in tie-break order",
    )
    default_notional_usd: float = Field(
        default=100.0, gt=0, description="Flat notional used when risk sizing is not possible"
    )
    dry_run_default: bool = Field(default=True, description="Simulate orders unless told otherwise")

    # Cadence
    execute_minutes: int = Field(default=5, gt=0, description="Execute cycle cadence (minutes)")
    scan_minutes: int = Field(default=30, gt=0, description="Scan cycle cadence (minutes)")
    regime_minutes: int = Field(default=60, gt=0, description="Regime cycle cadence (minutes)")

    # Universe selector
    selector_max_spread_to_atr1h: float = Field(default=0.12, gt=0)
    selector_min_atr1h_percent: float = Field(default=0.0004, gt=0)
    selector_min_score: float = Field(default=0.1, gt=0)
    selector_top_percent: int = Field(default=40, ge=1, le=100)
    inactive_session_tag: str = Field(
        default="DEAD_HOURS", description="Session tag that makes a pair ineligible"
    )

    # Regime packets / AI classifier
    packet_stale_minutes: int = Field(default=120, gt=0)
    ai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("FOREX_AI_API_KEY", "OPENAI_API_KEY"),
        description="API key for the regime classifier",
    )
    ai_model: str = Field(default="gpt-4o-mini", description="Classifier model name")
    ai_timeout_seconds: float = Field(default=20.0, gt=0)
    ai_fallback_confidence: float = Field(default=0.5, ge=0, le=1)

    # Time stops / reentry locks
    time_stop_no_follow_bars: int = Field(default=18, gt=0)
    time_stop_min_follow_r: float = Field(default=0.3, gt=0)
    time_stop_max_hold_hours: float = Field(default=10.0, gt=0)
    reentry_lock_minutes_time_stop: int = Field(default=5, ge=0)
    reentry_lock_minutes_regime_flip: int = Field(default=10, ge=0)
    reentry_lock_minutes_event_risk: int = Field(default=20, ge=0)
    reentry_lock_minutes_stop_invalidated: int = Field(default=0, ge=0)

    # Position management
    tp1_r_multiple: float = Field(default=1.0, gt=0, description="First target in R")
    tp2_r_multiple: float = Field(default=2.0, gt=0, description="Second target in R")
    partial_close_pct: float = Field(default=50.0, gt=0, le=100)
    trailing_atr_buffer: float = Field(default=0.5, ge=0)

    # Economic calendar / event gate
    event_calendar_url: str = Field(default=DEFAULT_CALENDAR_URL)
    event_http_timeout_seconds: float = Field(default=15.0, gt=0)
    event_refresh_minutes: int = Field(default=15, gt=0)
    event_stale_minutes: int = Field(default=45, gt=0)
    event_block_impacts: list[str] = Field(default_factory=lambda: ["HIGH"])
    event_force_close_impacts: list[str] = Field(default_factory=lambda: ["HIGH"])
    event_pre_block_minutes: int = Field(default=30, ge=0)
    event_post_block_minutes: int = Field(default=15, ge=0)
    event_call_warn_threshold: int = Field(default=180, gt=0)

    # Risk
    spread_pips_cap_default: float = Field(default=3.5, gt=0)
    spread_pips_cap_by_pair: dict[str, float] = Field(default_factory=dict)
    risk_max_spread_to_atr1h: float = Field(default=0.15, gt=0)
    shock_candle_atr5m: float = Field(default=2.2, gt=0)
    shock_cooldown_minutes: int = Field(default=30, gt=0)
    max_currency_exposure: int = Field(default=2, gt=0)
    risk_per_trade_pct: float = Field(default=0.5, gt=0, le=100)
    reference_equity_usd: float | None = Field(
        default=None, description="Equity used for risk sizing; unset means notional fallback"
    )
    max_portfolio_open_risk_pct: float = Field(default=2.0, ge=0)
    max_currency_open_risk_pct: float = Field(default=1.0, ge=0)
    unknown_position_risk_pct: float = Field(
        default=0.0, ge=0, description="Risk assumed for open positions whose stop is unknown"
    )
    max_leverage_per_pair: int = Field(default=3, gt=0)
    session_transition_buffer_minutes: int = Field(default=15, ge=0)
    transition_spread_to_atr_multiplier: float = Field(default=0.75, gt=0, le=1)
    rollover_hour_utc: int = Field(default=0, ge=0, le=23)
    rollover_entry_block_minutes: int = Field(default=30, ge=0)

    # Market hours (UTC)
    market_close_fri_utc_hour: int = Field(default=22, ge=0, le=23)
    market_open_sun_utc_hour: int = Field(default=22, ge=0, le=23)

    # Entry modules
    pullback_atr_buffer: float = Field(default=0.4, gt=0)
    breakout_atr_buffer: float = Field(default=0.35, gt=0)
    range_fade_atr_buffer: float = Field(default=0.35, gt=0)
    range_fade_min_width_atr1h: float = Field(default=1.5, gt=0)
    range_fade_max_trend_strength: float = Field(default=1.0, gt=0)
    range_fade_min_chop_score: float = Field(default=0.3, gt=0)
    range_fade_breakout_atr5m: float = Field(default=2.2, gt=0)
    range_fade_kill_switch_cooldown_minutes: int | None = Field(
        default=None, gt=0, description="Defaults to the regime cadence when unset"
    )
    htf_sr_lookback_bars: int = Field(default=120, gt=0)

    # Store / journal
    redis_url: str = Field(default="redis://localhost:6379/0")
    key_prefix: str = Field(default="forex")
    store_ttl_seconds: int = Field(default=14 * 24 * 60 * 60, gt=0)
    journal_max_entries: int = Field(default=1200, gt=0)
    journal_entry_max_bytes: int = Field(default=16_000, ge=512)

    # Wiring / logging
    market_data_provider: str = Field(
        default="", description="Import path 'package.module:factory' of the market-data provider"
    )
    log_level: str = Field(default="INFO")
    log_format: Literal["text", "json"] = Field(default="text")

    @field_validator("universe_pairs", mode="before")
    @classmethod
    def _parse_pairs(cls, value: Any) -> Any:
        parsed = parse_list_env(value)
        if isinstance(parsed, str):
            parsed = [parsed]
        if isinstance(parsed, list):
            seen: list[str] = []
            for item in parsed:
                pair = str(item).strip().upper()
                if pair and pair not in seen:
                    seen.append(pair)
            return seen or list(DEFAULT_UNIVERSE)
        return parsed

    @field_validator("event_block_impacts", "event_force_close_impacts", mode="before")
    @classmethod
    def _parse_impacts(cls, value: Any) -> Any:
        parsed = parse_list_env(value)
        if isinstance(parsed, str):
            parsed = [parsed]
        if isinstance(parsed, list):
            return [str(item).strip().upper() for item in parsed if str(item).strip()]
        return parsed

    @field_validator("spread_pips_cap_by_pair", mode="before")
    @classmethod
    def _parse_spread_caps(cls, value: Any) -> dict[str, float]:
        return parse_pair_number_map(value)

    @field_validator("reference_equity_usd", mode="before")
    @classmethod
    def _parse_equity(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if number > 0 else None

    def spread_pips_cap_for_pair(self, pair: str) -> float:
        """Per-pair spread cap in pips, falling back to the default cap."""
        return self.spread_pips_cap_by_pair.get(str(pair or "").upper(), self.spread_pips_cap_default)

    @property
    def range_fade_kill_switch_cooldown(self) -> timedelta:
        """Range-fade suspension length; tied to the regime cadence unless set."""
        minutes = self.range_fade_kill_switch_cooldown_minutes or self.regime_minutes
        return timedelta(minutes=minutes)

    @property
    def packet_stale_after(self) -> timedelta:
        return timedelta(minutes=self.packet_stale_minutes)


def load_settings(**overrides: Any) -> FXSettings:
    """Build a fresh immutable settings value (environment first, then overrides)."""
    return FXSettings(**overrides)
