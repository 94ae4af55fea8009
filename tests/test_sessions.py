"""Tests for session, rollover and weekend helpers."""

from datetime import UTC, datetime

import pytest

from fxengine.core.reasons import ReasonCode
from fxengine.core.sessions import (
    evaluate_market_gate,
    is_within_pre_rollover_window,
    is_within_session_transition_buffer,
    minutes_to_nearest_session_boundary,
    minutes_until_next_rollover,
    session_factor,
    session_tag_for,
    tighten_spread_to_atr_cap,
)
from fxengine.core.types import SessionTag


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 2, day, hour, minute, tzinfo=UTC)


def test_session_tags() -> None:
    assert session_tag_for(_at(17, 3)) == SessionTag.ASIA
    assert session_tag_for(_at(17, 7)) == SessionTag.LONDON
    assert session_tag_for(_at(17, 12)) == SessionTag.OVERLAP
    assert session_tag_for(_at(17, 16)) == SessionTag.NEW_YORK
    assert session_tag_for(_at(17, 22)) == SessionTag.DEAD_HOURS
    assert session_factor(SessionTag.OVERLAP) > session_factor(SessionTag.ASIA)


def test_transition_buffer() -> None:
    """Within 15 minutes of a boundary on either side."""
    assert minutes_to_nearest_session_boundary(_at(17, 7, 10)) == pytest.approx(10)
    assert is_within_session_transition_buffer(_at(17, 6, 50), 15)
    assert is_within_session_transition_buffer(_at(17, 12, 15), 15)
    assert not is_within_session_transition_buffer(_at(17, 10), 15)
    assert not is_within_session_transition_buffer(_at(17, 7), 0)


def test_transition_cap_only_tightens() -> None:
    assert tighten_spread_to_atr_cap(0.15, 0.75) == pytest.approx(0.1125)
    assert tighten_spread_to_atr_cap(0.15, 2.0) == pytest.approx(0.15)
    assert tighten_spread_to_atr_cap(0.15, 0) == pytest.approx(0.15)


def test_pre_rollover_window() -> None:
    assert minutes_until_next_rollover(_at(17, 23, 45)) == pytest.approx(15)
    assert is_within_pre_rollover_window(_at(17, 23, 45), 30)
    assert is_within_pre_rollover_window(_at(17, 23, 30), 30)
    assert not is_within_pre_rollover_window(_at(17, 23, 0), 30)
    assert not is_within_pre_rollover_window(_at(17, 23, 45), 0)


def test_market_gate_weekend() -> None:
    """Closed from Friday 22:00 until Sunday 22:00 UTC."""
    assert not evaluate_market_gate(_at(20, 21, 59)).market_closed

    friday = evaluate_market_gate(_at(20, 22))
    assert friday.market_closed
    assert friday.reason_code == ReasonCode.MARKET_CLOSED_WEEKEND
    assert friday.reopens_at == _at(22, 22)

    assert evaluate_market_gate(_at(21, 12)).reopens_at == _at(22, 22)

    sunday = evaluate_market_gate(_at(22, 21))
    assert sunday.market_closed
    assert sunday.reopens_at == _at(22, 22)

    reopened = evaluate_market_gate(_at(22, 22))
    assert not reopened.market_closed
    assert reopened.reason_code == ReasonCode.MARKET_OPEN


def test_naive_datetimes_are_utc() -> None:
    assert session_tag_for(datetime(2026, 2, 17, 13, 0)) == SessionTag.OVERLAP
