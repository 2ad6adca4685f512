"""Tests for request/response correlation, timeouts and worker exit."""

from __future__ import annotations

import asyncio
import json

import pytest

from stdiobridge.adapters.session_broker import SessionBroker, SseClient
from stdiobridge.engine.errors import (
    DuplicateRequestError,
    InvalidEnvelopeError,
    WorkerUnavailableError,
)
from stdiobridge.engine.router import CorrelationRouter
from stdiobridge.engine.worker import WorkerExit


class _FakeWorker:
    """Stands in for WorkerSupervisor: records sends, replays callbacks."""

    def __init__(self) -> None:
        self.running = True
        self.sent: list[dict] = []
        self.drain_gate: asyncio.Event | None = None
        self._message_callbacks: list = []
        self._exit_callbacks: list = []
        self._error_callbacks: list = []

    def on_message(self, callback) -> None:
        self._message_callbacks.append(callback)

    def on_exit(self, callback) -> None:
        self._exit_callbacks.append(callback)

    def on_error(self, callback) -> None:
        self._error_callbacks.append(callback)

    async def send(self, payload) -> None:
        if not self.running:
            raise WorkerUnavailableError("Worker process is not running.")
        self.sent.append(payload)
        if self.drain_gate is not None:
            await self.drain_gate.wait()
            if not self.running:
                raise WorkerUnavailableError("Failed writing to worker stdin: broken pipe")

    def emit_message(self, payload) -> None:
        for callback in self._message_callbacks:
            callback(payload)

    def emit_exit(self, code: int | None = 1) -> None:
        for callback in self._exit_callbacks:
            callback(WorkerExit(code=code))


class _NullStream:
    async def write(self, data: bytes) -> None:
        return None


def _messages(client: SseClient) -> list[dict]:
    """Drain queued ``message`` events for one session."""
    bodies: list[dict] = []
    while not client._queue.empty():
        frame = client._queue.get_nowait()
        if frame is None:
            continue
        name_line, data_line = frame.decode("utf-8").strip().split("\n")
        if name_line == "event: message":
            bodies.append(json.loads(data_line[len("data: "):]))
    return bodies


def _build(timeout: float = 30.0) -> tuple[_FakeWorker, SessionBroker, CorrelationRouter]:
    worker = _FakeWorker()
    broker = SessionBroker()
    router = CorrelationRouter(worker, broker, request_timeout_seconds=timeout)
    return worker, broker, router


def _attach(broker: SessionBroker, session_id: str) -> SseClient:
    broker.attach(_NullStream(), session_id)
    client = broker.get_client(session_id)
    _messages(client)
    return client


@pytest.mark.asyncio
async def test_response_is_delivered_to_owning_session() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")
    other = _attach(broker, "other")

    result = await router.forward("s1", {"id": "7", "method": "ping"})
    assert result is None
    assert worker.sent == [{"id": "7", "method": "ping"}]
    assert router.is_pending("7")

    worker.emit_message({"id": "7", "result": "pong"})

    assert _messages(s1) == [{"session": "s1", "body": {"id": "7", "result": "pong"}}]
    assert _messages(other) == []
    assert router.pending_count() == 0
    assert router.metrics.responses == 1


@pytest.mark.asyncio
async def test_numeric_and_string_ids_correlate() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")

    await router.forward("s1", {"id": 42, "method": "ping"})
    worker.emit_message({"id": "42", "result": "pong"})

    assert _messages(s1) == [{"session": "s1", "body": {"id": "42", "result": "pong"}}]


@pytest.mark.asyncio
async def test_timeout_delivers_synthetic_error_and_drops_late_response() -> None:
    worker, broker, router = _build(timeout=0.02)
    s1 = _attach(broker, "s1")
    other = _attach(broker, "other")

    await router.forward("s1", {"id": "7", "method": "ping"})
    await asyncio.sleep(0.08)

    assert router.pending_count() == 0
    assert _messages(s1) == [{
        "session": "s1",
        "body": {
            "jsonrpc": "2.0",
            "id": "7",
            "error": {
                "code": -32000,
                "message": "Timed out waiting for response from worker.",
            },
        },
    }]

    worker.emit_message({"id": "7", "result": "pong"})

    assert _messages(s1) == []
    assert _messages(other) == []
    assert router.metrics.late_responses == 1
    assert router.metrics.timeouts == 1


@pytest.mark.asyncio
async def test_response_before_timeout_disarms_timer() -> None:
    worker, broker, router = _build(timeout=0.02)
    s1 = _attach(broker, "s1")

    await router.forward("s1", {"id": "7", "method": "ping"})
    worker.emit_message({"id": "7", "result": "pong"})
    await asyncio.sleep(0.08)

    assert _messages(s1) == [{"session": "s1", "body": {"id": "7", "result": "pong"}}]
    assert router.metrics.timeouts == 0


@pytest.mark.asyncio
async def test_each_request_resolves_exactly_once_under_races() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")

    for i in range(20):
        await router.forward("s1", {"id": i, "method": "ping"})

    # Race responses against timeouts; the final exit must find nothing left.
    for i in range(20):
        order = i % 3
        if order == 0:
            router.handle_timeout(str(i))
            worker.emit_message({"id": i, "result": "late"})
        elif order == 1:
            worker.emit_message({"id": i, "result": "pong"})
            router.handle_timeout(str(i))
        else:
            router.handle_timeout(str(i))
            router.handle_timeout(str(i))
    worker.emit_exit(code=1)

    bodies = [m["body"] for m in _messages(s1)]
    ids = [str(b["id"]) for b in bodies]
    assert sorted(ids, key=int) == [str(i) for i in range(20)]
    assert router.pending_count() == 0
    assert router.metrics.cancelled == 0


@pytest.mark.asyncio
async def test_worker_exit_cancels_all_pending_requests() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")
    s2 = _attach(broker, "s2")

    await router.forward("s1", {"id": "1", "method": "a"})
    await router.forward("s2", {"id": "2", "method": "b"})
    worker.emit_exit(code=137)

    assert router.pending_count() == 0
    for client, request_id in ((s1, "1"), (s2, "2")):
        [message] = _messages(client)
        assert message["body"]["id"] == request_id
        assert message["body"]["error"] == {
            "code": -32001,
            "message": "Worker process restarted; request cancelled.",
        }
    assert router.metrics.cancelled == 2


@pytest.mark.asyncio
async def test_unknown_id_is_broadcast_to_every_session() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")
    s2 = _attach(broker, "s2")

    worker.emit_message({"id": "999", "result": "surprise"})

    assert _messages(s1) == [{"session": "s1", "body": {"id": "999", "result": "surprise"}}]
    assert _messages(s2) == [{"session": "s2", "body": {"id": "999", "result": "surprise"}}]


@pytest.mark.asyncio
async def test_notification_without_id_is_broadcast() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")

    worker.emit_message({"jsonrpc": "2.0", "method": "notifications/progress"})

    assert _messages(s1) == [{
        "session": "s1",
        "body": {"jsonrpc": "2.0", "method": "notifications/progress"},
    }]
    assert router.metrics.broadcasts == 1


@pytest.mark.asyncio
async def test_non_object_worker_output_is_dropped() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")

    worker.emit_message(["not", "an", "object"])

    assert _messages(s1) == []
    assert router.metrics.dropped_non_object == 1


@pytest.mark.asyncio
async def test_forward_failure_rolls_back_pending_entry() -> None:
    worker, broker, router = _build()
    worker.running = False

    with pytest.raises(WorkerUnavailableError):
        await router.forward("s1", {"id": "7", "method": "ping"})

    assert router.pending_count() == 0
    assert router.metrics.forward_failures == 1


@pytest.mark.asyncio
async def test_invalid_id_type_never_reaches_worker() -> None:
    worker, broker, router = _build()

    with pytest.raises(InvalidEnvelopeError):
        await router.forward("s1", {"id": {"nested": True}, "method": "ping"})

    assert worker.sent == []


@pytest.mark.asyncio
async def test_duplicate_pending_id_is_rejected() -> None:
    worker, broker, router = _build()
    await router.forward("s1", {"id": "7", "method": "ping"})

    with pytest.raises(DuplicateRequestError):
        await router.forward("s2", {"id": "7", "method": "ping"})

    assert len(worker.sent) == 1


@pytest.mark.asyncio
async def test_sync_forward_returns_correlated_response() -> None:
    worker, broker, router = _build()

    task = asyncio.create_task(
        router.forward("direct", {"id": 5, "method": "ping"}, expect_reply=True)
    )
    await asyncio.sleep(0)
    worker.emit_message({"id": 5, "result": "pong"})
    resolution = await asyncio.wait_for(task, timeout=1.0)

    assert resolution.kind == "response"
    assert resolution.ok is True
    assert resolution.payload == {"id": 5, "result": "pong"}


@pytest.mark.asyncio
async def test_sync_forward_resolves_with_timeout_error() -> None:
    worker, broker, router = _build(timeout=0.02)

    resolution = await asyncio.wait_for(
        router.forward("direct", {"id": 5, "method": "ping"}, expect_reply=True),
        timeout=1.0,
    )

    assert resolution.kind == "timeout"
    assert resolution.payload["id"] == 5
    assert resolution.payload["error"]["code"] == -32000


@pytest.mark.asyncio
async def test_sync_forward_resolves_with_cancellation_on_exit() -> None:
    worker, broker, router = _build()
    task = asyncio.create_task(
        router.forward("direct", {"id": "x", "method": "ping"}, expect_reply=True)
    )
    await asyncio.sleep(0)

    worker.emit_exit(code=None)
    resolution = await asyncio.wait_for(task, timeout=1.0)

    assert resolution.kind == "cancelled"
    assert resolution.payload["error"]["code"] == -32001


@pytest.mark.asyncio
async def test_response_arriving_while_send_is_draining_is_not_lost() -> None:
    worker, broker, router = _build()
    worker.drain_gate = asyncio.Event()
    task = asyncio.create_task(
        router.forward("direct", {"id": 1, "method": "ping"}, expect_reply=True)
    )
    await asyncio.sleep(0)
    assert worker.sent

    worker.emit_message({"id": 1, "result": "fast"})
    worker.drain_gate.set()
    resolution = await asyncio.wait_for(task, timeout=1.0)

    assert resolution.payload == {"id": 1, "result": "fast"}


@pytest.mark.asyncio
async def test_exit_while_draining_yields_single_cancellation() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")
    worker.drain_gate = asyncio.Event()
    task = asyncio.create_task(
        router.forward("s1", {"id": 4, "method": "ping"}, expect_reply=True)
    )
    await asyncio.sleep(0)

    worker.running = False
    worker.emit_exit(code=1)
    worker.drain_gate.set()
    resolution = await asyncio.wait_for(task, timeout=1.0)

    assert resolution.kind == "cancelled"
    assert resolution.payload["id"] == 4
    assert [m["body"]["error"]["code"] for m in _messages(s1)] == [-32001]
    assert router.metrics.forward_failures == 1


@pytest.mark.asyncio
async def test_async_forward_failing_after_exit_does_not_raise() -> None:
    worker, broker, router = _build()
    s1 = _attach(broker, "s1")
    worker.drain_gate = asyncio.Event()
    task = asyncio.create_task(router.forward("s1", {"id": "a", "method": "ping"}))
    await asyncio.sleep(0)

    worker.running = False
    worker.emit_exit(code=1)
    worker.drain_gate.set()

    assert await asyncio.wait_for(task, timeout=1.0) is None
    assert len(_messages(s1)) == 1
    assert router.pending_count() == 0


@pytest.mark.asyncio
async def test_request_without_id_is_not_tracked() -> None:
    worker, broker, router = _build()

    result = await router.forward("s1", {"method": "notifications/initialized"}, expect_reply=True)

    assert result is None
    assert router.pending_count() == 0
    assert worker.sent == [{"method": "notifications/initialized"}]


@pytest.mark.asyncio
async def test_close_disarms_timers_without_delivering() -> None:
    worker, broker, router = _build(timeout=0.02)
    s1 = _attach(broker, "s1")
    await router.forward("s1", {"id": "7", "method": "ping"})

    router.close()
    await asyncio.sleep(0.05)

    assert _messages(s1) == []
    assert router.metrics.timeouts == 0
