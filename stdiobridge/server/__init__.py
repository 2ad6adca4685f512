"""aiohttp front end for the bridge."""
from __future__ import annotations

from .server import BridgeServer, ServerMetrics

__all__ = ["BridgeServer", "ServerMetrics"]
