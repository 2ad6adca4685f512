"""Bridge engine: worker supervision, framing and request correlation."""
from .config import BridgeConfig
from .errors import (
    BridgeError,
    ConfigError,
    DuplicateRequestError,
    InvalidEnvelopeError,
    WorkerAuthError,
    WorkerClosedError,
    WorkerError,
    WorkerUnavailableError,
)
from .framing import LineFramer
from .router import CorrelationRouter, PendingRequest, Resolution, RouterMetrics
from .worker import WorkerExit, WorkerState, WorkerSupervisor

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "ConfigError",
    "CorrelationRouter",
    "DuplicateRequestError",
    "InvalidEnvelopeError",
    "LineFramer",
    "PendingRequest",
    "Resolution",
    "RouterMetrics",
    "WorkerAuthError",
    "WorkerClosedError",
    "WorkerError",
    "WorkerExit",
    "WorkerState",
    "WorkerSupervisor",
    "WorkerUnavailableError",
]
