"""Tests for FX engine settings."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from fxengine.config import (
    DEFAULT_UNIVERSE,
    load_settings,
    pair_currencies,
    parse_list_env,
    pip_size_for_pair,
)


def test_defaults() -> None:
    """Defaults cover the ten-pair universe and the documented thresholds."""
    settings = load_settings()
    assert settings.universe_pairs == DEFAULT_UNIVERSE
    assert settings.selector_top_percent == 40
    assert settings.packet_stale_minutes == 120
    assert settings.event_pre_block_minutes == 30
    assert settings.event_post_block_minutes == 15
    assert settings.dry_run_default is True


def test_settings_are_frozen() -> None:
    """A settings value cannot be mutated after construction."""
    settings = load_settings()
    with pytest.raises(ValidationError):
        settings.scan_minutes = 5


def test_universe_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Comma-separated pairs are upper-cased and de-duplicated in order."""
    monkeypatch.setenv("FOREX_UNIVERSE_PAIRS", "eurusd, gbpusd,EURUSD")
    settings = load_settings()
    assert settings.universe_pairs == ["EURUSD", "GBPUSD"]


def test_spread_caps_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Per-pair caps parse from JSON; invalid entries fall back to the default cap."""
    monkeypatch.setenv("FOREX_SPREAD_PIPS_CAP_BY_PAIR", '{"gbpjpy": 5, "EURUSD": -1}')
    settings = load_settings()
    assert settings.spread_pips_cap_for_pair("GBPJPY") == 5.0
    assert settings.spread_pips_cap_for_pair("eurusd") == settings.spread_pips_cap_default


def test_api_key_alias(monkeypatch: pytest.MonkeyPatch) -> None:
    """The classifier key is read from OPENAI_API_KEY."""
    monkeypatch.delenv("FOREX_AI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert load_settings().ai_api_key == "sk-test"


def test_invalid_values_rejected() -> None:
    """Out-of-range numbers fail validation."""
    with pytest.raises(ValidationError):
        load_settings(selector_top_percent=0)
    with pytest.raises(ValidationError):
        load_settings(transition_spread_to_atr_multiplier=1.5)


def test_kill_switch_cooldown_follows_regime_cadence() -> None:
    """Without an explicit value the range-fade suspension lasts one regime cycle."""
    assert load_settings().range_fade_kill_switch_cooldown == timedelta(minutes=60)
    assert load_settings(regime_minutes=30).range_fade_kill_switch_cooldown == timedelta(minutes=30)
    explicit = load_settings(range_fade_kill_switch_cooldown_minutes=15)
    assert explicit.range_fade_kill_switch_cooldown == timedelta(minutes=15)


def test_pair_helpers() -> None:
    assert pair_currencies("EURUSD") == ["EUR", "USD"]
    assert pair_currencies("eur/usd") == ["EUR", "USD"]
    assert pair_currencies("EUR") == []
    assert pip_size_for_pair("USDJPY") == 0.01
    assert pip_size_for_pair("EURUSD") == 0.0001


def test_parse_list_env() -> None:
    assert parse_list_env('["HIGH", "MEDIUM"]') == ["HIGH", "MEDIUM"]
    assert parse_list_env("HIGH,MEDIUM") == ["HIGH", "MEDIUM"]
    assert parse_list_env(None) is None
