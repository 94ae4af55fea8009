"""Typed repository for every record the engine persists between cycles.

Keys are namespaced under ``settings.key_prefix`` (``forex`` by default).
Temporal records (cooldowns, locks) store a ``until`` timestamp and are always
compared against a cycle-supplied ``now``.
"""

import json
import math
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from fxengine.config import FXSettings, normalize_pair
from fxengine.core.sessions import as_utc
from fxengine.core.types import (
    CooldownRecord,
    EventSnapshot,
    EventStoreMeta,
    JournalEntry,
    ModuleName,
    PacketSnapshot,
    PositionContext,
    ReentryLock,
    ScanSnapshot,
    Side,
    TrailingMode,
)
from fxengine.logging import get_logger
from fxengine.storage.kv import KeyValueStore

logger = get_logger(__name__)

CALL_COUNTER_TTL_SECONDS = 8 * 24 * 60 * 60
_ENTRY_MODULES = {ModuleName.PULLBACK.value, ModuleName.BREAKOUT_RETEST.value, ModuleName.RANGE_FADE.value}


def _finite_positive(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number > 0 else None


def _finite(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def coerce_position_context(raw: Any, pair: str) -> PositionContext | None:
    """Validate a persisted position context; malformed records yield ``None``."""
    if not isinstance(raw, dict):
        return None

    side = str(raw.get("side") or "").strip().upper()
    if side not in (Side.BUY.value, Side.SELL.value):
        return None

    module = str(raw.get("entry_module") or raw.get("module") or "").strip().lower()
    if module not in _ENTRY_MODULES:
        return None

    entry_price = _finite_positive(raw.get("entry_price"))
    initial_stop = _finite_positive(raw.get("initial_stop_price", raw.get("stop_price")))
    current_stop = _finite_positive(
        raw.get("current_stop_price", raw.get("stop_price", raw.get("initial_stop_price")))
    )
    if entry_price is None or initial_stop is None or current_stop is None:
        return None

    initial_risk = _finite_positive(raw.get("initial_risk_distance")) or _finite_positive(
        abs(entry_price - initial_stop)
    )
    if initial_risk is None:
        return None

    if not raw.get("opened_at"):
        return None

    trailing_mode = str(raw.get("trailing_mode") or "").strip().lower()
    if trailing_mode not in {mode.value for mode in TrailingMode}:
        trailing_mode = TrailingMode.NONE.value

    partial = _finite(raw.get("partial_taken_pct")) or 0.0

    cleaned = {
        **raw,
        "pair": normalize_pair(raw.get("pair") or pair),
        "side": side,
        "entry_module": module,
        "entry_price": entry_price,
        "initial_stop_price": initial_stop,
        "current_stop_price": current_stop,
        "initial_risk_distance": initial_risk,
        "partial_taken_pct": max(0.0, min(100.0, partial)),
        "trailing_active": bool(raw.get("trailing_active")),
        "trailing_mode": trailing_mode,
        "tp1_price": _finite(raw.get("tp1_price")),
        "tp2_price": _finite(raw.get("tp2_price")),
        "range_lower_boundary": _finite(raw.get("range_lower_boundary")),
        "range_upper_boundary": _finite(raw.get("range_upper_boundary")),
        "last_managed_at": raw.get("last_managed_at") or raw.get("opened_at"),
        "entry_notional_usd": _finite_positive(raw.get("entry_notional_usd")),
        "size_units": _finite_positive(raw.get("size_units")),
    }
    leverage = _finite_positive(raw.get("entry_leverage"))
    cleaned["entry_leverage"] = int(leverage) if leverage else None

    try:
        return PositionContext.model_validate(cleaned)
    except ValidationError as e:
        logger.warning(f"Discarding malformed position context for {pair}: {e.error_count()} errors")
        return None


class ForexStateStore:
    """Snapshots, cooldowns, locks, position contexts and the journal list."""

    def __init__(self, kv: KeyValueStore, settings: FXSettings) -> None:
        self.kv = kv
        self.prefix = settings.key_prefix
        self.ttl_seconds = settings.store_ttl_seconds
        self.journal_max_entries = settings.journal_max_entries

    # -- keys ---------------------------------------------------------------

    @property
    def scan_key(self) -> str:
        return f"{self.prefix}:scan:latest:v1"

    @property
    def packets_key(self) -> str:
        return f"{self.prefix}:packets:latest:v1"

    @property
    def events_snapshot_key(self) -> str:
        return f"{self.prefix}:events:snapshot:v1"

    @property
    def events_meta_key(self) -> str:
        return f"{self.prefix}:events:meta:v1"

    @property
    def journal_key(self) -> str:
        return f"{self.prefix}:journal:latest:v1"

    def call_counter_key(self, day_key: str) -> str:
        return f"{self.prefix}:events:calendar:calls:{day_key}"

    def cooldown_key(self, pair: str) -> str:
        return f"{self.prefix}:risk:cooldown:{normalize_pair(pair)}"

    def range_fade_cooldown_key(self, pair: str) -> str:
        return f"{self.prefix}:module:range_fade:cooldown:{normalize_pair(pair)}"

    def position_context_key(self, pair: str) -> str:
        return f"{self.prefix}:position:context:{normalize_pair(pair)}"

    def reentry_lock_key(self, pair: str) -> str:
        return f"{self.prefix}:reentry:lock:{normalize_pair(pair)}"

    # -- snapshots ----------------------------------------------------------

    async def save_scan_snapshot(self, snapshot: ScanSnapshot) -> None:
        await self.kv.set_json(self.scan_key, snapshot.model_dump(mode="json"), self.ttl_seconds)

    async def load_scan_snapshot(self) -> ScanSnapshot | None:
        return await self._load_model(self.scan_key, ScanSnapshot)

    async def save_packet_snapshot(self, snapshot: PacketSnapshot) -> None:
        await self.kv.set_json(self.packets_key, snapshot.model_dump(mode="json"), self.ttl_seconds)

    async def load_packet_snapshot(self) -> PacketSnapshot | None:
        return await self._load_model(self.packets_key, PacketSnapshot)

    async def save_event_snapshot(self, snapshot: EventSnapshot) -> None:
        await self.kv.set_json(
            self.events_snapshot_key, snapshot.model_dump(mode="json"), self.ttl_seconds
        )

    async def load_event_snapshot(self) -> EventSnapshot | None:
        return await self._load_model(self.events_snapshot_key, EventSnapshot)

    async def save_event_meta(self, meta: EventStoreMeta) -> None:
        await self.kv.set_json(self.events_meta_key, meta.model_dump(mode="json"), self.ttl_seconds)

    async def load_event_meta(self) -> EventStoreMeta | None:
        return await self._load_model(self.events_meta_key, EventStoreMeta)

    async def read_call_counter(self, day_key: str) -> int:
        raw = await self.kv.get_json(self.call_counter_key(day_key))
        try:
            return int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return 0

    async def bump_call_counter(self, day_key: str) -> int:
        return await self.kv.incr(self.call_counter_key(day_key), CALL_COUNTER_TTL_SECONDS)

    async def _load_model(self, key: str, model):
        raw = await self.kv.get_json(key)
        if raw is None:
            return None
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable record at {key}: {e.error_count()} errors")
            return None

    # -- cooldowns / locks --------------------------------------------------

    async def _set_until(self, key: str, until: datetime) -> None:
        record = CooldownRecord(until=as_utc(until))
        await self.kv.set_json(key, record.model_dump(mode="json"), self.ttl_seconds)

    async def _get_until(self, key: str) -> datetime | None:
        record = await self._load_model(key, CooldownRecord)
        return record.until if record else None

    async def set_pair_cooldown(self, pair: str, until: datetime) -> None:
        await self._set_until(self.cooldown_key(pair), until)

    async def get_pair_cooldown_until(self, pair: str) -> datetime | None:
        return await self._get_until(self.cooldown_key(pair))

    async def set_range_fade_cooldown(self, pair: str, until: datetime) -> None:
        await self._set_until(self.range_fade_cooldown_key(pair), until)

    async def get_range_fade_cooldown_until(self, pair: str) -> datetime | None:
        return await self._get_until(self.range_fade_cooldown_key(pair))

    async def set_reentry_lock(self, pair: str, until: datetime, reason_code: str | None = None) -> None:
        lock = ReentryLock(until=as_utc(until), reason_code=reason_code)
        await self.kv.set_json(self.reentry_lock_key(pair), lock.model_dump(mode="json"), self.ttl_seconds)

    async def get_reentry_lock_until(self, pair: str) -> datetime | None:
        lock = await self._load_model(self.reentry_lock_key(pair), ReentryLock)
        return lock.until if lock else None

    async def clear_reentry_lock(self, pair: str) -> None:
        await self.kv.delete(self.reentry_lock_key(pair))

    # -- position contexts --------------------------------------------------

    async def save_position_context(self, context: PositionContext) -> None:
        await self.kv.set_json(
            self.position_context_key(context.pair), context.model_dump(mode="json"), self.ttl_seconds
        )

    async def load_position_context(self, pair: str) -> PositionContext | None:
        raw = await self.kv.get_json(self.position_context_key(pair))
        return coerce_position_context(raw, pair)

    async def delete_position_context(self, pair: str) -> None:
        await self.kv.delete(self.position_context_key(pair))

    # -- journal ------------------------------------------------------------

    async def push_journal(self, serialized_entry: str) -> None:
        """Prepend one serialised entry and evict the oldest beyond the cap."""
        await self.kv.list_push(self.journal_key, serialized_entry)
        await self.kv.list_trim(self.journal_key, 0, self.journal_max_entries - 1)

    async def load_journal(self, limit: int = 200) -> list[JournalEntry]:
        rows = await self.kv.list_range(self.journal_key, 0, max(1, limit) - 1)
        entries: list[JournalEntry] = []
        for row in rows:
            try:
                entries.append(JournalEntry.model_validate(json.loads(row)))
            except (ValueError, ValidationError):
                logger.warning("Skipping unreadable journal row")
        return entries
