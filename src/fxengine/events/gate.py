"""Event gate: blocks new entries around high-impact calendar events."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from fxengine.config import normalize_pair, pair_currencies
from fxengine.core.reasons import ReasonCode
from fxengine.core.sessions import as_utc
from fxengine.core.types import EconomicEvent, EventGateDecision, EventImpact, RiskState

DEFAULT_PRE_BLOCK_MINUTES = 30
DEFAULT_POST_BLOCK_MINUTES = 15
DEFAULT_BLOCK_IMPACTS: tuple[str, ...] = ("HIGH",)


@dataclass(slots=True, frozen=True)
class PairEventMatch:
    event: EconomicEvent
    active_window: bool
    time_to_event: timedelta


def resolve_risk_state(value: RiskState | str | None) -> RiskState:
    """Unknown or missing risk states resolve to ``elevated``."""
    try:
        return RiskState(str(getattr(value, "value", value) or "").strip().lower())
    except ValueError:
        return RiskState.ELEVATED


def is_within_event_window(
    event_time: datetime,
    now: datetime,
    pre_block_minutes: int = DEFAULT_PRE_BLOCK_MINUTES,
    post_block_minutes: int = DEFAULT_POST_BLOCK_MINUTES,
) -> bool:
    """``[event - pre, event + post]`` with both bounds inclusive."""
    event_time = as_utc(event_time)
    start = event_time - timedelta(minutes=pre_block_minutes)
    end = event_time + timedelta(minutes=post_block_minutes)
    return start <= as_utc(now) <= end


def list_pair_event_matches(
    pair: str,
    events: Iterable[EconomicEvent],
    now: datetime,
    blocked_impacts: Sequence[str] = DEFAULT_BLOCK_IMPACTS,
    pre_block_minutes: int = DEFAULT_PRE_BLOCK_MINUTES,
    post_block_minutes: int = DEFAULT_POST_BLOCK_MINUTES,
) -> list[PairEventMatch]:
    """Events on either leg of ``pair`` with a blocked impact, nearest first."""
    currencies = set(pair_currencies(pair))
    if not currencies:
        return []
    impacts = {str(impact).upper() for impact in blocked_impacts}

    matches: list[PairEventMatch] = []
    for event in events:
        if event.currency.upper() not in currencies:
            continue
        if event.impact.value not in impacts:
            continue
        matches.append(
            PairEventMatch(
                event=event,
                active_window=is_within_event_window(
                    event.timestamp, now, pre_block_minutes, post_block_minutes
                ),
                time_to_event=as_utc(event.timestamp) - as_utc(now),
            )
        )
    matches.sort(key=lambda match: abs(match.time_to_event))
    return matches


def evaluate_event_gate(
    pair: str,
    events: Iterable[EconomicEvent],
    stale_data: bool,
    now: datetime,
    risk_state: RiskState | str | None = None,
    blocked_impacts: Sequence[str] = DEFAULT_BLOCK_IMPACTS,
    pre_block_minutes: int = DEFAULT_PRE_BLOCK_MINUTES,
    post_block_minutes: int = DEFAULT_POST_BLOCK_MINUTES,
) -> EventGateDecision:
    """Decide whether ``pair`` may open new positions right now.

    Stale calendar data allows entries only under ``normal`` risk. Fresh data
    blocks when at least one matching event window is active and reports the
    impact levels of those events.
    """
    pair = normalize_pair(pair)
    applied = resolve_risk_state(risk_state)

    if stale_data:
        if applied == RiskState.NORMAL:
            return EventGateDecision(
                pair=pair,
                block_new_entries=False,
                allow_new_entries=True,
                stale_data=True,
                reason_codes=[ReasonCode.EVENT_DATA_STALE_ALLOW_NORMAL_RISK],
                risk_state_applied=applied,
            )
        return EventGateDecision(
            pair=pair,
            block_new_entries=True,
            allow_new_entries=False,
            stale_data=True,
            reason_codes=[ReasonCode.EVENT_DATA_STALE_BLOCK_NON_NORMAL_RISK],
            risk_state_applied=applied,
        )

    matches = list_pair_event_matches(
        pair, events, now, blocked_impacts, pre_block_minutes, post_block_minutes
    )
    active = [match.event for match in matches if match.active_window]
    if active:
        levels: list[EventImpact] = []
        for event in active:
            if event.impact not in levels:
                levels.append(event.impact)
        return EventGateDecision(
            pair=pair,
            block_new_entries=True,
            allow_new_entries=False,
            stale_data=False,
            reason_codes=[ReasonCode.EVENT_WINDOW_ACTIVE_BLOCK],
            matched_events=active,
            risk_state_applied=applied,
            active_impact_levels=levels,
        )

    return EventGateDecision(
        pair=pair,
        block_new_entries=False,
        allow_new_entries=True,
        stale_data=False,
        reason_codes=[ReasonCode.EVENT_WINDOW_CLEAR],
        risk_state_applied=applied,
    )


class EventGate:
    """Settings-bound wrapper around ``evaluate_event_gate``."""

    def __init__(
        self,
        blocked_impacts: Sequence[str],
        pre_block_minutes: int,
        post_block_minutes: int,
    ) -> None:
        self.blocked_impacts = tuple(blocked_impacts)
        self.pre_block_minutes = pre_block_minutes
        self.post_block_minutes = post_block_minutes

    @classmethod
    def from_settings(cls, settings) -> "EventGate":
        return cls(
            blocked_impacts=settings.event_block_impacts,
            pre_block_minutes=settings.event_pre_block_minutes,
            post_block_minutes=settings.event_post_block_minutes,
        )

    def evaluate(
        self,
        pair: str,
        events: Iterable[EconomicEvent],
        stale_data: bool,
        now: datetime,
        risk_state: RiskState | str | None = None,
    ) -> EventGateDecision:
        return evaluate_event_gate(
            pair,
            events,
            stale_data,
            now,
            risk_state=risk_state,
            blocked_impacts=self.blocked_impacts,
            pre_block_minutes=self.pre_block_minutes,
            post_block_minutes=self.post_block_minutes,
        )

    def force_close_matches(
        self,
        pair: str,
        events: Iterable[EconomicEvent],
        now: datetime,
        force_close_impacts: Sequence[str],
    ) -> list[EconomicEvent]:
        """Active events whose impact demands closing open positions."""
        matches = list_pair_event_matches(
            pair,
            events,
            now,
            blocked_impacts=force_close_impacts,
            pre_block_minutes=self.pre_block_minutes,
            post_block_minutes=self.post_block_minutes,
        )
        return [match.event for match in matches if match.active_window]
