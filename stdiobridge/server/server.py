"""HTTP + SSE front end for the stdio worker.

Routes:
    GET  /          service info
    GET  /healthz   worker and session status
    GET  /readyz    200 while the worker runs, 503 otherwise
    GET  /metrics   JSON counters
    GET  /messages  SSE stream for one session (?session=<id>)
    POST /messages  submit a protocol message

POST bodies are either ``{"session": "<id>", "body": {...}}`` or a bare
protocol object. ``?mode=sync`` holds the HTTP response open until the
correlated reply arrives; ``?mode=async`` answers 202 immediately and
delivers the reply on the session's stream. Without ``mode``, wrapped
submissions are async and bare ones are sync unless their session has
a stream attached.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from stdiobridge import __version__
from stdiobridge.adapters.session_broker import SessionBroker
from stdiobridge.engine.config import BridgeConfig
from stdiobridge.engine.errors import (
    DuplicateRequestError,
    InvalidEnvelopeError,
    WorkerUnavailableError,
)
from stdiobridge.engine.protocol import DEFAULT_SESSION_ID, MessageEnvelope, parse_envelope
from stdiobridge.engine.router import (
    RESOLUTION_CANCELLED,
    RESOLUTION_RESPONSE,
    RESOLUTION_TIMEOUT,
    CorrelationRouter,
)
from stdiobridge.engine.worker import WorkerSupervisor

logger = logging.getLogger(__name__)

SERVICE_NAME = "stdiobridge"
SERVICE_DESCRIPTION = "HTTP and Server-Sent Events bridge for a newline-JSON stdio worker."

SESSION_HEADER = "X-Session-Id"
REQUEST_ID_HEADER = "X-Request-Id"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_RESOLUTION_STATUS = {
    RESOLUTION_RESPONSE: 200,
    RESOLUTION_TIMEOUT: 504,
    RESOLUTION_CANCELLED: 503,
}


@dataclass
class ServerMetrics:
    """HTTP request counters."""

    requests: int = 0
    request_seconds_total: float = 0.0
    responses_by_status: dict[str, int] = field(default_factory=dict)

    def observe(self, status: int, elapsed: float) -> None:
        self.requests += 1
        self.request_seconds_total += elapsed
        key = str(status)
        self.responses_by_status[key] = self.responses_by_status.get(key, 0) + 1

    def snapshot(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "request_seconds_total": round(self.request_seconds_total, 6),
            "responses_by_status": dict(self.responses_by_status),
        }


class BridgeServer:
    """aiohttp application wiring the worker, broker and router together.

    The three collaborators are injected so tests can swap in fakes;
    ``from_config`` builds the real ones.
    """

    def __init__(
        self,
        config: BridgeConfig,
        worker: WorkerSupervisor,
        broker: SessionBroker,
        router: CorrelationRouter,
    ) -> None:
        self._config = config
        self._worker = worker
        self._broker = broker
        self._router = router
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._port = config.port
        self.metrics = ServerMetrics()

        self._app = web.Application(
            middlewares=[self._request_logging_middleware],
            client_max_size=config.max_body_bytes,
        )
        self._setup_routes()

    @classmethod
    def from_config(cls, config: BridgeConfig) -> BridgeServer:
        worker = WorkerSupervisor(
            config.worker_command,
            auth_command=config.auth_command,
            api_key=config.api_key,
            env=config.worker_env,
            cache_dir=config.cache_dir,
            home_dir=config.home_dir,
            restart_delay_seconds=config.restart_delay_seconds,
            stop_grace_seconds=config.stop_grace_seconds,
        )
        broker = SessionBroker(
            heartbeat_interval_seconds=config.heartbeat_interval_seconds,
            idle_timeout_seconds=config.idle_timeout_seconds,
            queue_size=config.sse_queue_size,
        )
        router = CorrelationRouter(
            worker,
            broker,
            request_timeout_seconds=config.request_timeout_seconds,
        )
        return cls(config, worker, broker, router)

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get(REQUEST_ID_HEADER, str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            self._log_request(request, req_id, exc.status, start)
            raise
        except Exception:
            elapsed = time.monotonic() - start
            self.metrics.observe(500, elapsed)
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed * 1000,
            )
            raise
        self._log_request(request, req_id, response.status, start)
        return response

    def _log_request(self, request: web.Request, req_id: str, status: int, start: float) -> None:
        elapsed = time.monotonic() - start
        self.metrics.observe(status, elapsed)
        if status >= 500:
            log = logger.error
        elif status >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id, status, elapsed * 1000,
        )

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/", self._handle_info)
        r.add_get("/healthz", self._handle_health)
        r.add_get("/readyz", self._handle_ready)
        r.add_get("/metrics", self._handle_metrics)
        r.add_get("/messages", self._handle_sse)
        r.add_post("/messages", self._handle_post_message)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the worker, the heartbeat and the HTTP listener.

        If any step fails, whatever already started is stopped before the
        error propagates.
        """
        try:
            await self._worker.start()
            self._broker.start()

            self._runner = web.AppRunner(self._app)
            await self._runner.setup()
            site = web.TCPSite(
                self._runner,
                self._config.host,
                self._config.port,
                ssl_context=self._config.ssl_context(),
            )
            await site.start()
        except BaseException as exc:
            logger.error("Bridge failed to start: %s", exc)
            await self.stop()
            raise

        addresses = self._runner.addresses
        if addresses:
            self._port = addresses[0][1]
        logger.info(
            "Bridge listening on %s:%d tls=%s",
            self._config.host, self._port, self._config.tls_enabled,
        )

    async def stop(self) -> None:
        """Close streams, stop listening, and stop the worker."""
        logger.info("Bridge shutting down")
        # Ending the streams first lets SSE handlers return before cleanup.
        self._broker.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._router.close()
        await self._worker.stop()

    async def serve_forever(self, stop_event: asyncio.Event | None = None) -> None:
        await self.start()
        try:
            await (stop_event or asyncio.Event()).wait()
        except asyncio.CancelledError:
            logger.info("Server task cancelled")
        finally:
            await self.stop()

    # ── HTTP handlers ──

    async def _handle_info(self, request: web.Request) -> web.Response:
        return web.json_response({
            "name": SERVICE_NAME,
            "version": __version__,
            "description": SERVICE_DESCRIPTION,
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_health(self, request: web.Request) -> web.Response:
        running = self._worker.is_running()
        return web.json_response({
            "status": "ok" if running else "unavailable",
            "worker": {
                "running": running,
                "state": self._worker.state.value,
                "pid": self._worker.pid,
                "restarts": self._worker.restart_count,
                "last_message_at": self._worker.last_message_at,
            },
            "sessions": self._broker.session_ids(),
            "pending_requests": self._router.pending_count(),
        })

    async def _handle_ready(self, request: web.Request) -> web.Response:
        if self._worker.is_running():
            return web.json_response({"ready": True})
        return web.json_response({"ready": False}, status=503)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.json_response({
            "router": self._router.metrics.snapshot(),
            "sessions": {
                **self._broker.metrics.snapshot(),
                "active": len(self._broker),
            },
            "http": self.metrics.snapshot(),
            "worker": {
                "running": self._worker.is_running(),
                "restarts": self._worker.restart_count,
            },
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        requested = _requested_session(request)
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)

        session_id = self._broker.attach(response, requested)
        logger.info("SSE client connected req=%s session=%s", request.get("req_id", "unknown"), session_id)
        await self._broker.pump(session_id, response)
        logger.info("SSE client disconnected req=%s session=%s", request.get("req_id", "unknown"), session_id)
        return response

    async def _handle_post_message(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except ValueError:
            return _error_response(400, "Request body must be valid JSON.")

        try:
            envelope = parse_envelope(data)
            sync = self._wants_inline_reply(request, envelope)
        except InvalidEnvelopeError as exc:
            return _error_response(400, str(exc))

        session_id = envelope.session_id or _requested_session(request) or DEFAULT_SESSION_ID

        try:
            resolution = await self._router.forward(session_id, envelope.body, expect_reply=sync)
        except InvalidEnvelopeError as exc:
            return _error_response(400, str(exc))
        except DuplicateRequestError as exc:
            return _error_response(409, str(exc))
        except WorkerUnavailableError:
            return _error_response(503, "Worker process unavailable.")

        if resolution is None:
            return web.json_response({"accepted": True}, status=202)
        return web.json_response(resolution.payload, status=_RESOLUTION_STATUS[resolution.kind])

    def _wants_inline_reply(self, request: web.Request, envelope: MessageEnvelope) -> bool:
        mode = request.query.get("mode")
        if mode == "sync":
            return True
        if mode == "async":
            return False
        if mode:
            raise InvalidEnvelopeError("Query parameter 'mode' must be 'sync' or 'async'.")
        if envelope.wrapped:
            return False
        session_id = _requested_session(request) or DEFAULT_SESSION_ID
        return not self._broker.has_session(session_id)


def _requested_session(request: web.Request) -> str | None:
    return request.query.get("session") or request.headers.get(SESSION_HEADER) or None


def _error_response(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)
