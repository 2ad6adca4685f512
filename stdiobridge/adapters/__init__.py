"""Adapters between the correlation core and HTTP clients."""
from __future__ import annotations

from .session_broker import BrokerMetrics, SessionBroker, SseClient

__all__ = ["BrokerMetrics", "SessionBroker", "SseClient"]
