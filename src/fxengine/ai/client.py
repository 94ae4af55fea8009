"""OpenAI-backed regime classifier call with strict JSON output."""

import json
from typing import Any, Protocol

from openai import AsyncOpenAI

from fxengine.config import FXSettings
from fxengine.core.errors import ClassifierError
from fxengine.core.types import EligibilityRow
from fxengine.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are an FX regime classifier. Return strict JSON only with keys: pair, regime, permission, allowed_modules, risk_state, confidence, htf_context, notes_codes.
regime is one of trend_up|trend_down|range|high_vol|event_risk.
permission is one of long_only|short_only|both|flat.
allowed_modules can include pullback, breakout_retest, range_fade, none.
risk_state is one of normal|elevated|extreme.
htf_context has nearest_support, nearest_resistance, distance_to_support_atr1h, distance_to_resistance_atr1h (numbers or null).
confidence must be 0..1."""


class RegimeClassifierClient(Protocol):
    async def classify(self, row: EligibilityRow) -> dict[str, Any]: ...


def build_classifier_request(row: EligibilityRow) -> dict[str, Any]:
    """Structured user message for one pair."""
    features: dict[str, Any] = {"eligible_now": row.eligible, "selector_score": row.score}
    if row.metrics is not None:
        m = row.metrics
        features.update(
            {
                "session": m.session_tag.value,
                "spread_pips": m.spread_pips,
                "spread_to_atr1h": m.spread_to_atr1h,
                "atr1h_percent": m.atr1h_percent,
                "trend_strength": m.trend_strength,
                "chop_score": m.chop_score,
                "shock_flag": m.shock_flag,
            }
        )
    return {
        "pair": row.pair,
        "features": features,
        "constraints": {
            "objective": "produce conservative regime packet for deterministic execution modules",
        },
    }


class OpenAIRegimeClient:
    """Calls the chat completions API and returns the parsed JSON object.

    Every failure (transport, empty content, invalid JSON, non-object JSON)
    raises ``ClassifierError``; validation of the fields is the caller's job.
    """

    def __init__(self, settings: FXSettings, client: AsyncOpenAI | None = None) -> None:
        self.model = settings.ai_model
        self._client = client or AsyncOpenAI(
            api_key=settings.ai_api_key or None, timeout=settings.ai_timeout_seconds
        )

    async def classify(self, row: EligibilityRow) -> dict[str, Any]:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": json.dumps(build_classifier_request(row))},
                ],
                temperature=0.2,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise ClassifierError(f"Classifier call failed for {row.pair}: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ClassifierError(f"Empty classifier response for {row.pair}")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON from classifier for {row.pair}: {content[:200]}")
            raise ClassifierError(f"Invalid classifier JSON for {row.pair}: {e}") from e

        if not isinstance(data, dict):
            raise ClassifierError(f"Classifier returned non-object JSON for {row.pair}")
        return data

    async def close(self) -> None:
        await self._client.close()
