"""Economic calendar ingestion, cached event state and the entry gate."""

from .calendar import CalendarClient, normalize_event_row
from .gate import EventGate, evaluate_event_gate, is_within_event_window
from .service import EventService

__all__ = [
    "CalendarClient",
    "EventGate",
    "EventService",
    "evaluate_event_gate",
    "is_within_event_window",
    "normalize_event_row",
]
