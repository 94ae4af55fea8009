"""Regime packets: AI classification, field normalisation and hard rules."""

import asyncio
import math
from collections.abc import Iterable, Sequence
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from fxengine.ai.client import RegimeClassifierClient
from fxengine.config import FXSettings
from fxengine.core.errors import ClassifierError
from fxengine.core.reasons import ReasonCode
from fxengine.core.types import (
    EligibilityRow,
    HtfContext,
    ModuleName,
    PacketSnapshot,
    Permission,
    Regime,
    RegimePacket,
    RiskState,
)
from fxengine.logging import get_logger

logger = get_logger(__name__)

CONFIDENCE_FLOOR = 0.55

E = TypeVar("E", bound=Enum)


def clamp_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, min(1.0, number))


def normalize_enum(value: Any, enum_cls: type[E], fallback: E) -> E:
    raw = str(value if value is not None else "").strip().lower()
    try:
        return enum_cls(raw)
    except ValueError:
        return fallback


def normalize_modules(value: Any) -> list[ModuleName]:
    if not isinstance(value, list):
        return [ModuleName.NONE]
    modules: list[ModuleName] = []
    for item in value:
        module = normalize_enum(item, ModuleName, ModuleName.NONE)
        if module not in modules:
            modules.append(module)
    return modules or [ModuleName.NONE]


def _optional_number(value: Any, fallback: float | None) -> float | None:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def _dedupe(codes: Iterable[str]) -> list[str]:
    out: list[str] = []
    for code in codes:
        if code and code not in out:
            out.append(code)
    return out


def regime_exclusive_modules(regime: Regime) -> list[ModuleName]:
    if regime in (Regime.TREND_UP, Regime.TREND_DOWN):
        return [ModuleName.PULLBACK]
    if regime == Regime.HIGH_VOL:
        return [ModuleName.BREAKOUT_RETEST]
    if regime == Regime.RANGE:
        return [ModuleName.RANGE_FADE]
    return [ModuleName.NONE]


def fallback_packet(row: EligibilityRow, now: datetime, confidence: float = 0.5) -> RegimePacket:
    """Rule-based packet built purely from the row's metrics."""
    regime = Regime.RANGE
    permission = Permission.FLAT
    modules = [ModuleName.NONE]
    risk_state = RiskState.NORMAL

    metrics = row.metrics
    if metrics is not None:
        trend = metrics.trend_strength
        chop = metrics.chop_score
        spread_stress = metrics.spread_to_atr1h

        if metrics.shock_flag or spread_stress > 0.2:
            regime = Regime.HIGH_VOL
            risk_state = RiskState.ELEVATED

        if chop > 0.45 and trend < 0.9 and spread_stress < 0.15:
            regime = Regime.RANGE
            permission = Permission.BOTH
            modules = [ModuleName.RANGE_FADE]

        if trend > 0.7 and chop < 0.5:
            regime = Regime.TREND_UP
            permission = Permission.BOTH
            modules = [ModuleName.PULLBACK, ModuleName.BREAKOUT_RETEST]

        if spread_stress > 0.18:
            permission = Permission.FLAT
            modules = [ModuleName.NONE]
            risk_state = RiskState.ELEVATED
    else:
        risk_state = RiskState.ELEVATED

    return RegimePacket(
        pair=row.pair,
        generated_at=now,
        regime=regime,
        permission=permission,
        allowed_modules=modules,
        risk_state=risk_state,
        confidence=confidence,
        htf_context=HtfContext(),
        notes_codes=[ReasonCode.AI_FALLBACK_PACKET.value],
    )


def packet_from_classifier(raw: dict[str, Any], base: RegimePacket) -> RegimePacket:
    """Validate classifier output field by field, falling back to ``base`` values."""
    htf_raw = raw.get("htf_context") if isinstance(raw.get("htf_context"), dict) else {}
    base_htf = base.htf_context

    notes_raw = raw.get("notes_codes")
    if isinstance(notes_raw, list):
        notes = [str(item).strip() for item in notes_raw if str(item).strip()]
    else:
        notes = [ReasonCode.AI_NOTES_EMPTY.value]
    notes = _dedupe(notes)
    if ReasonCode.AI_PACKET_OK.value not in notes:
        notes.append(ReasonCode.AI_PACKET_OK.value)

    return RegimePacket(
        pair=base.pair,
        generated_at=base.generated_at,
        regime=normalize_enum(raw.get("regime"), Regime, base.regime),
        permission=normalize_enum(raw.get("permission"), Permission, base.permission),
        allowed_modules=normalize_modules(raw.get("allowed_modules")),
        risk_state=normalize_enum(raw.get("risk_state"), RiskState, base.risk_state),
        confidence=clamp_confidence(raw.get("confidence")),
        htf_context=HtfContext(
            nearest_support=_optional_number(htf_raw.get("nearest_support"), base_htf.nearest_support),
            nearest_resistance=_optional_number(
                htf_raw.get("nearest_resistance"), base_htf.nearest_resistance
            ),
            distance_to_support_atr1h=_optional_number(
                htf_raw.get("distance_to_support_atr1h"), base_htf.distance_to_support_atr1h
            ),
            distance_to_resistance_atr1h=_optional_number(
                htf_raw.get("distance_to_resistance_atr1h"), base_htf.distance_to_resistance_atr1h
            ),
        ),
        notes_codes=notes,
    )


def enforce_hard_rules(packet: RegimePacket, event_blocked: bool) -> RegimePacket:
    """Confidence floor, extreme risk, event override, then module exclusivity.

    Reapplying to an already enforced packet changes nothing.
    """
    regime = packet.regime
    permission = packet.permission
    modules = list(packet.allowed_modules)
    notes = list(packet.notes_codes)

    def note(code: ReasonCode) -> None:
        if code.value not in notes:
            notes.append(code.value)

    if packet.confidence < CONFIDENCE_FLOOR:
        permission = Permission.FLAT
        modules = [ModuleName.NONE]
        note(ReasonCode.CONFIDENCE_UNDER_055_FORCE_FLAT)

    if packet.risk_state == RiskState.EXTREME:
        modules = [ModuleName.NONE]
        note(ReasonCode.RISK_EXTREME_DISABLE_MODULES)

    if event_blocked:
        regime = Regime.EVENT_RISK
        permission = Permission.FLAT
        modules = [ModuleName.NONE]
        note(ReasonCode.EVENT_GATE_ACTIVE_DISABLE_MODULES)

    if permission == Permission.FLAT or packet.risk_state == RiskState.EXTREME:
        modules = [ModuleName.NONE]
    else:
        modules = regime_exclusive_modules(regime)
        note(ReasonCode.MODULE_EXCLUSIVITY_ENFORCED)

    return packet.model_copy(
        update={
            "regime": regime,
            "permission": permission,
            "allowed_modules": modules,
            "notes_codes": notes,
        }
    )


class RegimeClassifier:
    """Builds one enforced regime packet per scanned pair."""

    def __init__(self, settings: FXSettings, client: RegimeClassifierClient | None) -> None:
        self.settings = settings
        self.client = client

    async def build_packet(self, row: EligibilityRow, now: datetime, event_blocked: bool) -> RegimePacket:
        packet = fallback_packet(row, now, self.settings.ai_fallback_confidence)

        if self.client is None:
            packet.notes_codes.append(ReasonCode.AI_PACKET_FALLBACK.value)
        else:
            try:
                raw = await self.client.classify(row)
                packet = packet_from_classifier(raw, packet)
            except ClassifierError as e:
                logger.warning(f"Classifier failed for {row.pair}, using fallback packet: {e}")
                packet.notes_codes.append(ReasonCode.AI_PACKET_FALLBACK.value)
            except Exception as e:
                logger.warning(f"Unexpected classifier error for {row.pair}, using fallback packet: {e}")
                packet.notes_codes.append(ReasonCode.AI_PACKET_FALLBACK.value)

        return enforce_hard_rules(packet, event_blocked=event_blocked)

    async def build_snapshot(
        self,
        rows: Sequence[EligibilityRow],
        now: datetime,
        event_blocked_pairs: set[str] | None = None,
    ) -> PacketSnapshot:
        blocked = event_blocked_pairs or set()
        packets = await asyncio.gather(
            *(self.build_packet(row, now, event_blocked=row.pair in blocked) for row in rows)
        )
        return PacketSnapshot(generated_at=now, packets=list(packets))
