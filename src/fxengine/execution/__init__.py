"""Order execution boundary."""

from .broker import Broker, BrokerDecision, ExecutionReport, OpenPosition, PaperBroker

__all__ = ["Broker", "BrokerDecision", "ExecutionReport", "OpenPosition", "PaperBroker"]
