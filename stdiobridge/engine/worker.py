"""Supervisor for the single backend worker process.

The worker speaks newline-delimited JSON on stdin/stdout. The supervisor
authenticates once per cold start, spawns the worker, frames its stdout
into messages, logs its stderr, and respawns it after a fixed delay
whenever it exits unexpectedly.

Lifecycle:
    STOPPED -> STARTING (auth) -> RUNNING -> (exit) -> RESTART_PENDING
            -> STARTING -> RUNNING -> ... -> CLOSED (on stop())

Owners observe the worker through callbacks registered with
``on_message``, ``on_exit`` and ``on_error``. Callbacks run on the event
loop and must not block.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import (
    WorkerAuthError,
    WorkerClosedError,
    WorkerError,
    WorkerUnavailableError,
)
from .framing import LineFramer

logger = logging.getLogger(__name__)

_READ_CHUNK_SIZE = 64 * 1024
# How long to keep draining stdout after the process itself has exited.
_OUTPUT_DRAIN_SECONDS = 1.0


class WorkerState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTART_PENDING = "restart_pending"
    CLOSED = "closed"


@dataclass(frozen=True)
class WorkerExit:
    """How the worker process ended."""

    code: int | None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int | None) -> WorkerExit:
        # asyncio reports death-by-signal as a negative return code.
        if returncode is not None and returncode < 0:
            return cls(code=None, signal=-returncode)
        return cls(code=returncode)

    @property
    def signal_name(self) -> str | None:
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name
        except ValueError:
            return str(self.signal)


MessageCallback = Callable[[Any], None]
ExitCallback = Callable[[WorkerExit], None]
ErrorCallback = Callable[[BaseException], None]


class WorkerSupervisor:
    """Owns the backend worker process and its restart loop."""

    def __init__(
        self,
        command: list[str],
        *,
        auth_command: list[str] | None = None,
        api_key: str | None = None,
        env: dict[str, str] | None = None,
        cache_dir: str | Path = "/tmp/stdiobridge-cache",
        home_dir: str | Path = "/tmp/stdiobridge-home",
        restart_delay_seconds: float = 5.0,
        stop_grace_seconds: float = 5.0,
    ) -> None:
        if not command:
            raise ValueError("Worker command must not be empty")
        self._command = list(command)
        self._auth_command = list(auth_command or [])
        self._api_key = api_key
        self._extra_env = dict(env or {})
        self._cache_dir = Path(cache_dir)
        self._home_dir = Path(home_dir)
        self._restart_delay = restart_delay_seconds
        self._stop_grace = stop_grace_seconds

        self._process: asyncio.subprocess.Process | None = None
        self._framer = LineFramer()
        self._state = WorkerState.STOPPED
        self._closed = False
        self._restarts = 0
        self._last_message_at: float | None = None

        self._tasks: set[asyncio.Task] = set()
        self._restart_task: asyncio.Task | None = None
        # Held across auth + spawn so at most one process is ever live.
        self._spawn_lock = asyncio.Lock()

        self._message_callbacks: list[MessageCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

    # ── Observers ──

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def _clear_callbacks(self) -> None:
        self._message_callbacks.clear()
        self._exit_callbacks.clear()
        self._error_callbacks.clear()

    def _emit(self, callbacks: list[Callable[[Any], None]], value: Any) -> None:
        for callback in list(callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception("Worker listener %r failed", callback)

    # ── Introspection ──

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def restart_count(self) -> int:
        return self._restarts

    @property
    def last_message_at(self) -> float | None:
        """Epoch seconds of the last line received on stdout."""
        return self._last_message_at

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def is_running(self) -> bool:
        proc = self._process
        return proc is not None and proc.returncode is None

    # ── Lifecycle ──

    async def start(self) -> None:
        """Prepare directories, authenticate, and spawn the worker."""
        if self._closed:
            raise WorkerClosedError("Cannot start worker after shutdown.")
        async with self._spawn_lock:
            if self._closed:
                raise WorkerClosedError("Cannot start worker after shutdown.")
            if self.is_running():
                logger.debug("Worker already running (pid=%s)", self.pid)
                return
            if self._restart_task is not None:
                # A cold start supersedes a pending restart.
                self._restart_task.cancel()
                self._restart_task = None

            self._state = WorkerState.STARTING
            try:
                self._prepare_environment()
                await self._authenticate()
                await self._spawn()
            except BaseException:
                if not self._closed:
                    self._state = WorkerState.STOPPED
                raise

    async def stop(self) -> None:
        """Stop permanently. Safe to call more than once."""
        if self._closed and self._process is None:
            return
        self._closed = True
        self._state = WorkerState.CLOSED
        self._clear_callbacks()

        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None

        proc = self._process
        self._process = None
        if proc is not None and proc.returncode is None:
            logger.info("Stopping worker (pid=%d)", proc.pid)
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            else:
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Worker (pid=%d) ignored SIGTERM for %.1fs, killing",
                        proc.pid, self._stop_grace,
                    )
                    try:
                        proc.kill()
                    except ProcessLookupError:
                        pass

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def send(self, payload: Any) -> None:
        """Write ``payload`` to the worker as one JSON line.

        Suspends while the pipe is above its high-water mark instead of
        buffering without bound.
        """
        proc = self._process
        if proc is None or proc.returncode is not None:
            raise WorkerUnavailableError("Worker process is not running.")
        stdin = proc.stdin
        if stdin is None or stdin.is_closing():
            raise WorkerUnavailableError("Worker stdin is not available.")

        line = json.dumps(payload, separators=(",", ":")) + "\n"
        try:
            stdin.write(line.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise WorkerUnavailableError(
                f"Failed writing to worker stdin: {exc}"
            ) from exc

    # ── Internals ──

    def _prepare_environment(self) -> None:
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._home_dir.mkdir(parents=True, exist_ok=True)

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._extra_env)
        cache_dir = str(self._cache_dir)
        env.update({
            "NPX_YES": "1",
            "FORCE_COLOR": "0",
            "HOME": str(self._home_dir),
            "NPM_CONFIG_CACHE": cache_dir,
            "npm_config_cache": cache_dir,
        })
        return env

    async def _authenticate(self) -> None:
        if not self._auth_command:
            logger.debug("No auth command configured, skipping authentication")
            return
        if not self._api_key:
            raise WorkerAuthError("no API key configured")

        logger.info("Authenticating worker credential")
        # The key goes last and is never logged.
        cmd = [*self._auth_command, self._api_key]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
            )
            _, stderr = await proc.communicate()
        except OSError as exc:
            logger.error("Auth command %r could not run: %s", self._auth_command[0], exc)
            raise WorkerAuthError(str(exc)) from exc

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            logger.error(
                "Worker auth command failed rc=%s stderr=%s",
                proc.returncode, detail[:2000],
            )
            raise WorkerAuthError(
                f"auth command exited with code {proc.returncode}",
                returncode=proc.returncode,
            )
        logger.info("Worker credential authenticated")

    async def _spawn(self) -> None:
        if self._process is not None and self._process.returncode is None:
            raise WorkerError(
                f"Refusing to spawn: worker pid={self._process.pid} still alive"
            )
        logger.info("Spawning worker: %s", " ".join(self._command))

        proc = await asyncio.create_subprocess_exec(
            *self._command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._build_env(),
        )
        if self._closed:
            # stop() ran while we were spawning.
            logger.info("Worker (pid=%d) spawned after shutdown, terminating", proc.pid)
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
            raise WorkerClosedError("Worker was stopped during startup.")

        self._process = proc
        self._framer.reset()
        self._state = WorkerState.RUNNING
        logger.info("Worker started (pid=%d)", proc.pid)

        stdout_task = self._track(self._read_stdout(proc))
        stderr_task = self._track(self._read_stderr(proc))
        self._track(self._watch(proc, stdout_task, stderr_task))

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in self._framer.feed(chunk):
                self._process_line(line)
        leftover = self._framer.flush()
        if leftover:
            logger.warning(
                "Discarding unterminated worker output at EOF (%d chars)",
                len(leftover[0]),
            )

    def _process_line(self, line: str) -> None:
        self._last_message_at = time.time()
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Failed to parse worker output as JSON: %.500s", line)
            return
        self._emit(self._message_callbacks, message)

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        framer = LineFramer()
        while True:
            chunk = await proc.stderr.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in framer.feed(chunk):
                logger.warning("worker stderr: %s", line)
        for line in framer.flush():
            logger.warning("worker stderr: %s", line)

    async def _watch(
        self,
        proc: asyncio.subprocess.Process,
        stdout_task: asyncio.Task,
        stderr_task: asyncio.Task,
    ) -> None:
        returncode = await proc.wait()
        # Deliver responses the worker wrote just before exiting.
        done, pending = await asyncio.wait(
            {stdout_task, stderr_task}, timeout=_OUTPUT_DRAIN_SECONDS,
        )
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                exc = task.exception()
                logger.error("Worker output reader failed: %s", exc)
                self._emit(self._error_callbacks, exc)

        if self._process is proc:
            self._process = None
        exit_info = WorkerExit.from_returncode(returncode)
        self._emit(self._exit_callbacks, exit_info)

        if self._closed:
            logger.info(
                "Worker exited after shutdown code=%s signal=%s",
                exit_info.code, exit_info.signal_name,
            )
            return

        logger.error(
            "Worker exited unexpectedly code=%s signal=%s",
            exit_info.code, exit_info.signal_name,
        )
        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self._closed:
            return
        if self._restart_task is not None and not self._restart_task.done():
            return
        self._state = WorkerState.RESTART_PENDING
        self._restart_task = asyncio.create_task(self._restart_loop())

    async def _restart_loop(self) -> None:
        while not self._closed:
            logger.info(
                "Restarting worker in %.1fs (restarts so far: %d)",
                self._restart_delay, self._restarts,
            )
            await asyncio.sleep(self._restart_delay)
            async with self._spawn_lock:
                if self._closed or self.is_running():
                    return
                self._restarts += 1
                self._state = WorkerState.STARTING
                try:
                    await self._spawn()
                    return
                except WorkerClosedError:
                    return
                except (OSError, WorkerError) as exc:
                    logger.error("Failed to restart worker, retrying: %s", exc)
                    self._emit(self._error_callbacks, exc)
                    self._state = WorkerState.RESTART_PENDING
