"""Server-Sent Events fan-out, one live stream per client session.

Each attached connection gets an outbound frame queue. Producers
(``send``, ``broadcast``, the heartbeat) only enqueue; the HTTP handler
that owns the connection drains the queue with ``pump``. A slow client
therefore never stalls the router, and a frame is either queued whole
or not at all.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class EventStream(Protocol):
    """The part of ``aiohttp.web.StreamResponse`` the broker relies on."""

    async def write(self, data: bytes) -> None: ...


@dataclass
class BrokerMetrics:
    """Lightweight counters for observability."""

    sessions_attached: int = 0
    sessions_replaced: int = 0
    sessions_evicted: int = 0
    sessions_disconnected: int = 0
    events_sent: int = 0
    events_dropped: int = 0
    broadcasts: int = 0
    heartbeats: int = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "sessions_attached": self.sessions_attached,
            "sessions_replaced": self.sessions_replaced,
            "sessions_evicted": self.sessions_evicted,
            "sessions_disconnected": self.sessions_disconnected,
            "events_sent": self.events_sent,
            "events_dropped": self.events_dropped,
            "broadcasts": self.broadcasts,
            "heartbeats": self.heartbeats,
        }


def format_event(event: str, data: str) -> bytes:
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


@dataclass
class SseClient:
    """One attached event stream."""

    session_id: str
    response: EventStream
    connected_at: float
    last_event_at: float
    max_queued: int = 1000
    closed: bool = False
    _queue: asyncio.Queue[bytes | None] = field(
        default_factory=asyncio.Queue, repr=False,
    )

    def enqueue(self, frame: bytes) -> bool:
        if self.closed:
            return False
        if self._queue.qsize() >= self.max_queued:
            logger.warning(
                "SSE queue full for session=%s, dropping frame", self.session_id,
            )
            return False
        self._queue.put_nowait(frame)
        return True

    def close(self) -> None:
        """End the stream once already-queued frames are written."""
        if self.closed:
            return
        self.closed = True
        # The sentinel bypasses max_queued so close always lands.
        self._queue.put_nowait(None)

    async def next_frame(self) -> bytes | None:
        return await self._queue.get()


class SessionBroker:
    """Tracks attached SSE streams by session id."""

    def __init__(
        self,
        heartbeat_interval_seconds: float = 15.0,
        idle_timeout_seconds: float = 120.0,
        queue_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._heartbeat_interval = heartbeat_interval_seconds
        self._idle_timeout = idle_timeout_seconds
        self._queue_size = queue_size
        self._clock = clock
        self._clients: dict[str, SseClient] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self.metrics = BrokerMetrics()

    # ── Lifecycle ──

    def start(self) -> None:
        """Start the heartbeat loop. Requires a running event loop."""
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def close(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        for client in self._clients.values():
            client.close()
        self._clients.clear()

    # ── Attachment ──

    def attach(self, response: EventStream, session_id: str | None = None) -> str:
        """Register ``response`` as the stream for ``session_id``.

        Generates an id when none is given. An existing stream for the
        same id is closed and replaced. Returns the resolved id.
        """
        resolved = session_id if session_id else str(uuid.uuid4())
        existing = self._clients.pop(resolved, None)
        if existing is not None:
            logger.warning(
                "Replacing existing SSE connection for session=%s", resolved,
            )
            existing.close()
            self.metrics.sessions_replaced += 1

        now = self._clock()
        client = SseClient(
            session_id=resolved,
            response=response,
            connected_at=now,
            last_event_at=now,
            max_queued=self._queue_size,
        )
        self._clients[resolved] = client
        self.metrics.sessions_attached += 1
        client.enqueue(format_event("ready", json.dumps({"session": resolved})))
        logger.info(
            "SSE session attached session=%s active=%d", resolved, len(self._clients),
        )
        return resolved

    async def pump(self, session_id: str, response: EventStream) -> None:
        """Write queued frames to ``response`` until the stream ends.

        Returns when the session is closed, replaced or evicted, or when
        the connection fails. The session is deregistered on the way out.
        """
        client = self._clients.get(session_id)
        if client is None or client.response is not response:
            return
        try:
            while True:
                frame = await client.next_frame()
                if frame is None:
                    break
                await response.write(frame)
        except ConnectionResetError as exc:
            logger.info("SSE stream closed by peer session=%s: %s", session_id, exc)
            self.metrics.sessions_disconnected += 1
        except OSError as exc:
            logger.warning("SSE stream error session=%s: %s", session_id, exc)
            self.metrics.sessions_disconnected += 1
        finally:
            self._remove(client)

    def _remove(self, client: SseClient) -> None:
        client.close()
        # Only drop the registration if it still belongs to this stream.
        if self._clients.get(client.session_id) is client:
            del self._clients[client.session_id]
            logger.info(
                "SSE session detached session=%s active=%d",
                client.session_id, len(self._clients),
            )

    # ── Delivery ──

    def send(self, session_id: str, event: str, payload: Any) -> bool:
        """Queue a named event for one session. Returns False if not delivered."""
        client = self._clients.get(session_id)
        if client is None:
            logger.debug("No SSE client for session=%s, dropping %s", session_id, event)
            self.metrics.events_dropped += 1
            return False
        return self._write_event(client, event, payload)

    def broadcast(self, event: str, payload_for_session: Callable[[str], Any]) -> int:
        """Queue an individualized event for every attached session."""
        self.metrics.broadcasts += 1
        delivered = 0
        for session_id, client in list(self._clients.items()):
            if self._write_event(client, event, payload_for_session(session_id)):
                delivered += 1
        return delivered

    def _write_event(self, client: SseClient, event: str, payload: Any) -> bool:
        try:
            data = json.dumps(payload)
        except (TypeError, ValueError):
            logger.error(
                "Failed to serialize SSE payload for session=%s",
                client.session_id, exc_info=True,
            )
            self.metrics.events_dropped += 1
            return False
        if not client.enqueue(format_event(event, data)):
            self.metrics.events_dropped += 1
            return False
        client.last_event_at = self._clock()
        self.metrics.events_sent += 1
        return True

    # ── Heartbeat ──

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                self.sweep()
        except asyncio.CancelledError:
            pass

    def sweep(self) -> None:
        """Evict idle sessions and send a keep-alive comment to the rest."""
        now = self._clock()
        for session_id, client in list(self._clients.items()):
            idle_for = now - client.last_event_at
            if idle_for > self._idle_timeout:
                logger.warning(
                    "SSE session idle for %.1fs, closing stream session=%s",
                    idle_for, session_id,
                )
                self._remove(client)
                self.metrics.sessions_evicted += 1
                continue
            if client.enqueue(f": heartbeat {int(now * 1000)}\n\n".encode("utf-8")):
                self.metrics.heartbeats += 1

    # ── Introspection ──

    def session_ids(self) -> list[str]:
        return list(self._clients.keys())

    def has_session(self, session_id: str) -> bool:
        return session_id in self._clients

    def get_client(self, session_id: str) -> SseClient | None:
        return self._clients.get(session_id)

    def __len__(self) -> int:
        return len(self._clients)
