"""Regime classification into validated, rule-enforced packets."""

from .classifier import (
    RegimeClassifier,
    enforce_hard_rules,
    fallback_packet,
    packet_from_classifier,
    regime_exclusive_modules,
)

__all__ = [
    "RegimeClassifier",
    "enforce_hard_rules",
    "fallback_packet",
    "packet_from_classifier",
    "regime_exclusive_modules",
]
