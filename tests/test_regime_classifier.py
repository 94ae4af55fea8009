"""Tests for regime packets: classifier output handling and hard rules."""

import json
import random
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from fxengine.ai.client import OpenAIRegimeClient, build_classifier_request
from fxengine.config import FXSettings
from fxengine.core.errors import ClassifierError
from fxengine.core.reasons import ReasonCode
from fxengine.core.types import ModuleName, Permission, Regime, RiskState
from fxengine.regime.classifier import (
    RegimeClassifier,
    clamp_confidence,
    enforce_hard_rules,
    fallback_packet,
    normalize_modules,
    packet_from_classifier,
)

from fx_helpers import NOW, make_packet, make_row


def _assert_invariants(packet) -> None:
    if packet.permission == Permission.FLAT:
        assert packet.allowed_modules == [ModuleName.NONE]
    if packet.confidence < 0.55:
        assert packet.permission == Permission.FLAT
    if packet.risk_state == RiskState.EXTREME:
        assert packet.allowed_modules == [ModuleName.NONE]
    assert len(packet.allowed_modules) == 1


def test_low_confidence_forces_flat() -> None:
    packet = enforce_hard_rules(make_packet(confidence=0.54), event_blocked=False)
    assert packet.permission == Permission.FLAT
    assert packet.allowed_modules == [ModuleName.NONE]
    assert ReasonCode.CONFIDENCE_UNDER_055_FORCE_FLAT.value in packet.notes_codes


def test_module_exclusivity_by_regime() -> None:
    cases = {
        Regime.TREND_UP: ModuleName.PULLBACK,
        Regime.TREND_DOWN: ModuleName.PULLBACK,
        Regime.HIGH_VOL: ModuleName.BREAKOUT_RETEST,
        Regime.RANGE: ModuleName.RANGE_FADE,
    }
    for regime, module in cases.items():
        raw = make_packet(regime=regime, allowed_modules=[ModuleName.PULLBACK, ModuleName.RANGE_FADE])
        assert enforce_hard_rules(raw, event_blocked=False).allowed_modules == [module]


def test_extreme_risk_disables_modules() -> None:
    packet = enforce_hard_rules(make_packet(risk_state=RiskState.EXTREME), event_blocked=False)
    assert packet.allowed_modules == [ModuleName.NONE]
    assert packet.permission == Permission.BOTH


def test_event_block_overrides_everything() -> None:
    packet = enforce_hard_rules(make_packet(confidence=0.9), event_blocked=True)
    assert packet.regime == Regime.EVENT_RISK
    assert packet.permission == Permission.FLAT
    assert packet.allowed_modules == [ModuleName.NONE]


def test_hard_rules_are_idempotent_and_hold_for_random_inputs() -> None:
    """Enforcement holds for arbitrary raw packets and reapplying it changes nothing."""
    rng = random.Random(7)
    modules = list(ModuleName)
    for _ in range(300):
        raw = make_packet(
            regime=rng.choice(list(Regime)),
            permission=rng.choice(list(Permission)),
            allowed_modules=rng.sample(modules, rng.randint(1, len(modules))),
            risk_state=rng.choice(list(RiskState)),
            confidence=round(rng.random(), 3),
        )
        blocked = rng.random() < 0.2
        once = enforce_hard_rules(raw, event_blocked=blocked)
        _assert_invariants(once)
        assert enforce_hard_rules(once, event_blocked=blocked).model_dump() == once.model_dump()


def test_packet_from_classifier_normalizes_fields() -> None:
    base = fallback_packet(make_row(), NOW)
    raw = {
        "regime": " TREND_UP ",
        "permission": "sideways",
        "allowed_modules": ["pullback", "PULLBACK", "bogus"],
        "risk_state": "Elevated",
        "confidence": 1.7,
        "htf_context": {"nearest_support": "1.095", "nearest_resistance": True},
        "notes_codes": ["TREND_CLEAN", "", "TREND_CLEAN"],
    }

    packet = packet_from_classifier(raw, base)

    assert packet.regime == Regime.TREND_UP
    assert packet.permission == base.permission
    assert packet.allowed_modules == [ModuleName.PULLBACK, ModuleName.NONE]
    assert packet.risk_state == RiskState.ELEVATED
    assert packet.confidence == 1.0
    assert packet.htf_context.nearest_support == pytest.approx(1.095)
    assert packet.htf_context.nearest_resistance is None
    assert packet.notes_codes == ["TREND_CLEAN", ReasonCode.AI_PACKET_OK.value]


def test_normalizers() -> None:
    assert clamp_confidence("nan") == 0.0
    assert clamp_confidence(-2) == 0.0
    assert clamp_confidence("0.7") == 0.7
    assert normalize_modules("pullback") == [ModuleName.NONE]
    assert normalize_modules([]) == [ModuleName.NONE]


def test_fallback_packet_from_metrics() -> None:
    trending = fallback_packet(make_row(), NOW, confidence=0.6)
    assert trending.regime == Regime.TREND_UP
    assert trending.permission == Permission.BOTH

    choppy = fallback_packet(make_row(trend_strength=0.5, chop_score=0.6), NOW)
    assert choppy.regime == Regime.RANGE
    assert choppy.allowed_modules == [ModuleName.RANGE_FADE]

    stressed = fallback_packet(make_row(spread_to_atr1h=0.25), NOW)
    assert stressed.permission == Permission.FLAT
    assert stressed.risk_state == RiskState.ELEVATED


@pytest.mark.asyncio
async def test_classifier_error_uses_fallback(settings: FXSettings) -> None:
    """A failing classifier yields an enforced fallback packet."""
    client = AsyncMock()
    client.classify.side_effect = ClassifierError("timeout")
    classifier = RegimeClassifier(settings, client)

    packet = await classifier.build_packet(make_row(), NOW, event_blocked=False)

    assert ReasonCode.AI_PACKET_FALLBACK.value in packet.notes_codes
    assert packet.confidence == settings.ai_fallback_confidence
    assert packet.permission == Permission.FLAT
    _assert_invariants(packet)


@pytest.mark.asyncio
async def test_classifier_output_is_enforced(settings: FXSettings) -> None:
    client = AsyncMock()
    client.classify.return_value = {
        "regime": "range",
        "permission": "both",
        "allowed_modules": ["pullback", "range_fade"],
        "risk_state": "normal",
        "confidence": 0.8,
        "notes_codes": [],
    }
    classifier = RegimeClassifier(settings, client)

    snapshot = await classifier.build_snapshot(
        [make_row("EURUSD"), make_row("USDJPY", rank=2)], NOW, event_blocked_pairs={"USDJPY"}
    )

    by_pair = snapshot.by_pair()
    assert by_pair["EURUSD"].allowed_modules == [ModuleName.RANGE_FADE]
    assert ReasonCode.AI_PACKET_OK.value in by_pair["EURUSD"].notes_codes
    assert by_pair["USDJPY"].regime == Regime.EVENT_RISK
    assert snapshot.generated_at == NOW


@pytest.mark.asyncio
async def test_openai_client_parses_json_object(settings: FXSettings) -> None:
    payload = {"regime": "trend_up", "confidence": 0.7}
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=json.dumps(payload)))]
    )
    openai = MagicMock()
    openai.chat.completions.create = AsyncMock(return_value=response)
    client = OpenAIRegimeClient(settings, client=openai)

    assert await client.classify(make_row()) == payload
    kwargs = openai.chat.completions.create.await_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert json.loads(kwargs["messages"][1]["content"]) == build_classifier_request(make_row())


@pytest.mark.asyncio
async def test_openai_client_rejects_bad_output(settings: FXSettings) -> None:
    openai = MagicMock()
    client = OpenAIRegimeClient(settings, client=openai)

    for content in ("not json", "[1, 2]", ""):
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])
        openai.chat.completions.create = AsyncMock(return_value=response)
        with pytest.raises(ClassifierError):
            await client.classify(make_row())

    openai.chat.completions.create = AsyncMock(side_effect=RuntimeError("network"))
    with pytest.raises(ClassifierError):
        await client.classify(make_row())
