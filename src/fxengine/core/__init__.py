"""Shared types, reason codes, indicators and session helpers."""
