"""Audit journal: bounded, newest-first list of cycle decisions."""

import json
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from fxengine.core.reasons import ReasonCode
from fxengine.core.types import JournalEntry, JournalLevel, JournalType
from fxengine.logging import get_logger
from fxengine.storage.state import ForexStateStore

logger = get_logger(__name__)

# Dropped first when an entry exceeds the byte cap.
PAYLOAD_DROP_ORDER: tuple[str, ...] = ("packet", "risk", "gate", "execution", "signal", "decision")


def journal_entry(
    entry_type: JournalType,
    now: datetime,
    pair: str | None = None,
    level: JournalLevel = JournalLevel.INFO,
    reason_codes: Iterable[ReasonCode | str] | None = None,
    payload: dict[str, Any] | None = None,
) -> JournalEntry:
    return JournalEntry(
        id=str(uuid.uuid4()),
        timestamp=now,
        type=entry_type,
        pair=pair,
        level=level,
        reason_codes=list(reason_codes or []),
        payload=payload or {},
    )


def _encode(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str, separators=(",", ":"))


def serialize_entry(entry: JournalEntry, max_bytes: int) -> str:
    """Serialise ``entry`` within ``max_bytes``.

    Payload keys are dropped in ``PAYLOAD_DROP_ORDER``; if the entry is still too
    large the payload is replaced with ``{"truncated": true}``.
    """
    data = entry.model_dump(mode="json")
    encoded = _encode(data)
    if len(encoded.encode("utf-8")) <= max_bytes:
        return encoded

    payload = dict(data.get("payload") or {})
    dropped: list[str] = []
    for key in PAYLOAD_DROP_ORDER:
        if key not in payload:
            continue
        payload.pop(key)
        dropped.append(key)
        data["payload"] = {**payload, "dropped_fields": dropped}
        encoded = _encode(data)
        if len(encoded.encode("utf-8")) <= max_bytes:
            return encoded

    data["payload"] = {"truncated": True}
    return _encode(data)


async def append_journal(store: ForexStateStore, entry: JournalEntry, max_bytes: int) -> None:
    await store.push_journal(serialize_entry(entry, max_bytes))


async def safe_append_journal(store: ForexStateStore, entry: JournalEntry, max_bytes: int) -> bool:
    """Append without ever raising; failures are logged and reported as ``False``."""
    try:
        await append_journal(store, entry, max_bytes)
        return True
    except Exception as e:
        logger.warning(f"Failed to append journal entry ({entry.type.value}, pair={entry.pair}): {e}")
        return False
