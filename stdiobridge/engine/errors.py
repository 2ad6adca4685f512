"""Exception hierarchy for the bridge.

One exception per failure mode. HTTP handlers translate these into
status codes; nothing here is raised through worker callbacks.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ConfigError(BridgeError):
    """Configuration is missing or invalid."""


class InvalidEnvelopeError(BridgeError):
    """Caller submitted a malformed message envelope."""


class DuplicateRequestError(BridgeError):
    """A request with this id is already awaiting a response."""
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            f"Request id {request_id!r} is already pending."
        )


class WorkerError(BridgeError):
    """Base exception for worker process failures."""


class WorkerUnavailableError(WorkerError):
    """No worker process is running, or writing to it failed."""


class WorkerClosedError(WorkerError):
    """The supervisor was stopped and cannot be started again."""


class WorkerAuthError(WorkerError):
    """The one-shot authentication command did not succeed."""
    def __init__(self, reason: str, returncode: int | None = None):
        self.reason = reason
        self.returncode = returncode
        super().__init__(f"Worker authentication failed: {reason}")
