"""Regime classifier client."""

from .client import OpenAIRegimeClient, RegimeClassifierClient, build_classifier_request

__all__ = ["OpenAIRegimeClient", "RegimeClassifierClient", "build_classifier_request"]
