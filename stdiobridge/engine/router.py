"""Correlates worker responses with the requests that caused them.

Every request carrying an ``id`` gets a PendingRequest keyed by the
normalized id. Exactly one of three paths removes it:

    response  - a worker message with the same id arrives
    timeout   - the per-request timer fires first
    exit      - the worker process dies while the request is in flight

All three go through ``take()``, which pops the entry and disarms its
timer. Whoever pops first delivers; the others find nothing. The three
handlers are synchronous, so on a single event loop each one runs to
completion without interleaving.

Worker messages whose id matches nothing pending are broadcast to every
session, except ids that recently timed out or were cancelled: a late
reply for those is dropped so no caller sees two outcomes for one id.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import DuplicateRequestError, WorkerUnavailableError
from .protocol import (
    CANCELLED_ERROR_CODE,
    CANCELLED_MESSAGE,
    TIMEOUT_ERROR_CODE,
    TIMEOUT_MESSAGE,
    build_error_payload,
    get_request_id,
    peek_request_id,
    session_event,
)
from .worker import WorkerExit

if TYPE_CHECKING:
    from ..adapters.session_broker import SessionBroker
    from .worker import WorkerSupervisor

logger = logging.getLogger(__name__)

RESOLUTION_RESPONSE = "response"
RESOLUTION_TIMEOUT = "timeout"
RESOLUTION_CANCELLED = "cancelled"

# How many timed-out or cancelled ids to remember for dropping late replies.
EXPIRED_ID_MEMORY = 1024


@dataclass(frozen=True)
class Resolution:
    """What a synchronous caller receives for its request."""

    kind: str
    payload: dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.kind == RESOLUTION_RESPONSE


@dataclass
class PendingRequest:
    """A forwarded request still waiting for the worker."""

    request_id: str
    raw_id: Any
    session_id: str
    created_at: float
    timeout_handle: asyncio.TimerHandle | None = field(default=None, repr=False)
    reply: asyncio.Future[Resolution] | None = field(default=None, repr=False)


@dataclass
class RouterMetrics:
    """Lightweight counters for observability."""

    forwarded: int = 0
    forward_failures: int = 0
    responses: int = 0
    timeouts: int = 0
    cancelled: int = 0
    broadcasts: int = 0
    dropped_non_object: int = 0
    late_responses: int = 0
    pending: int = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "forwarded": self.forwarded,
            "forward_failures": self.forward_failures,
            "responses": self.responses,
            "timeouts": self.timeouts,
            "cancelled": self.cancelled,
            "broadcasts": self.broadcasts,
            "dropped_non_object": self.dropped_non_object,
            "late_responses": self.late_responses,
            "pending": self.pending,
        }


class CorrelationRouter:
    """Routes requests to the worker and responses back to sessions."""

    def __init__(
        self,
        worker: WorkerSupervisor,
        broker: SessionBroker,
        request_timeout_seconds: float = 45.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._worker = worker
        self._broker = broker
        self._request_timeout = request_timeout_seconds
        self._clock = clock
        self._pending: dict[str, PendingRequest] = {}
        self._expired: OrderedDict[str, None] = OrderedDict()
        self.metrics = RouterMetrics()

        worker.on_message(self.handle_worker_message)
        worker.on_exit(self.handle_worker_exit)
        worker.on_error(self._handle_worker_error)

    # ── Pending map ──

    def take(self, request_id: str) -> PendingRequest | None:
        """Remove and return the pending entry for ``request_id``, if any."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return None
        if entry.timeout_handle is not None:
            entry.timeout_handle.cancel()
        self.metrics.pending = len(self._pending)
        return entry

    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    # ── Forwarding ──

    async def forward(
        self,
        session_id: str,
        body: dict[str, Any],
        *,
        expect_reply: bool = False,
    ) -> Resolution | None:
        """Forward ``body`` to the worker on behalf of ``session_id``.

        Returns None once the worker has accepted the bytes, unless
        ``expect_reply`` is set and the body carries an id, in which case
        this waits for the correlated Resolution.

        Raises InvalidEnvelopeError, DuplicateRequestError or
        WorkerUnavailableError. A write that fails after the request was
        already resolved is not an error: the caller gets that resolution.
        """
        request_id = get_request_id(body)
        entry: PendingRequest | None = None

        if request_id is not None:
            if request_id in self._pending:
                raise DuplicateRequestError(request_id)
            self._expired.pop(request_id, None)
            loop = asyncio.get_running_loop()
            entry = PendingRequest(
                request_id=request_id,
                raw_id=body.get("id"),
                session_id=session_id,
                created_at=self._clock(),
                reply=loop.create_future() if expect_reply else None,
            )
            entry.timeout_handle = loop.call_later(
                self._request_timeout, self.handle_timeout, request_id,
            )
            self._pending[request_id] = entry
            self.metrics.pending = len(self._pending)

        try:
            await self._worker.send(body)
        except WorkerUnavailableError:
            self.metrics.forward_failures += 1
            if entry is not None and self._pending.get(entry.request_id) is not entry:
                # Resolved while draining (usually cancelled by the worker
                # exit); that outcome was already delivered to the session.
                logger.warning(
                    "Worker write failed after request was resolved session=%s id=%s",
                    session_id, request_id,
                )
                if entry.reply is None:
                    return None
                return await asyncio.shield(entry.reply)
            if entry is not None:
                self.take(entry.request_id)
            logger.error(
                "Failed to forward message to worker session=%s id=%s",
                session_id, request_id, exc_info=True,
            )
            raise

        self.metrics.forwarded += 1
        logger.debug("Forwarded message session=%s id=%s", session_id, request_id)

        if entry is None or entry.reply is None:
            return None
        return await asyncio.shield(entry.reply)

    # ── Worker callbacks ──

    def handle_worker_message(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.warning("Received non-object payload from worker: %.200r", payload)
            self.metrics.dropped_non_object += 1
            return

        request_id = peek_request_id(payload)
        if request_id is not None:
            entry = self.take(request_id)
            if entry is not None:
                self.metrics.responses += 1
                self._deliver(entry, Resolution(RESOLUTION_RESPONSE, payload))
                return
            if request_id in self._expired:
                del self._expired[request_id]
                self.metrics.late_responses += 1
                logger.warning(
                    "Dropping late response for expired request id=%s", request_id,
                )
                return
            logger.warning(
                "Received response with unknown request id=%s, broadcasting",
                request_id,
            )

        self.metrics.broadcasts += 1
        self._broker.broadcast(
            "message", lambda session_id: session_event(session_id, payload),
        )

    def handle_timeout(self, request_id: str) -> None:
        entry = self.take(request_id)
        if entry is None:
            return
        logger.error(
            "Timed out waiting for worker response id=%s session=%s after %.1fs",
            request_id, entry.session_id, self._clock() - entry.created_at,
        )
        self.metrics.timeouts += 1
        self._remember_expired(request_id)
        payload = build_error_payload(entry.raw_id, TIMEOUT_MESSAGE, TIMEOUT_ERROR_CODE)
        self._deliver(entry, Resolution(RESOLUTION_TIMEOUT, payload))

    def handle_worker_exit(self, exit_info: WorkerExit) -> None:
        entries = list(self._pending.values())
        self._pending.clear()
        self.metrics.pending = 0
        logger.warning(
            "Worker exited code=%s signal=%s, cancelling %d pending request(s)",
            exit_info.code, exit_info.signal_name, len(entries),
        )
        for entry in entries:
            if entry.timeout_handle is not None:
                entry.timeout_handle.cancel()
            self.metrics.cancelled += 1
            self._remember_expired(entry.request_id)
            payload = build_error_payload(
                entry.raw_id, CANCELLED_MESSAGE, CANCELLED_ERROR_CODE,
            )
            self._deliver(entry, Resolution(RESOLUTION_CANCELLED, payload))

    def _remember_expired(self, request_id: str) -> None:
        self._expired[request_id] = None
        self._expired.move_to_end(request_id)
        while len(self._expired) > EXPIRED_ID_MEMORY:
            self._expired.popitem(last=False)

    def _handle_worker_error(self, exc: BaseException) -> None:
        logger.error("Worker reported error: %s", exc)

    def _deliver(self, entry: PendingRequest, resolution: Resolution) -> None:
        if entry.reply is not None and not entry.reply.done():
            entry.reply.set_result(resolution)
        self._broker.send(
            entry.session_id,
            "message",
            session_event(entry.session_id, resolution.payload),
        )

    # ── Shutdown ──

    def close(self) -> None:
        """Disarm every timer and drop pending entries without delivering."""
        for entry in self._pending.values():
            if entry.timeout_handle is not None:
                entry.timeout_handle.cancel()
            if entry.reply is not None and not entry.reply.done():
                entry.reply.cancel()
        self._pending.clear()
        self.metrics.pending = 0
        self._expired.clear()
