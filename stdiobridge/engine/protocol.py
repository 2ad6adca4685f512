"""Envelope parsing and synthetic JSON-RPC payloads.

Submission shapes accepted from HTTP callers:

    {"session": "<id>", "body": {...}}      # wrapped
    {"jsonrpc": "2.0", "id": 7, ...}        # bare protocol object

Worker messages and request bodies correlate on their ``id`` field.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import InvalidEnvelopeError

# Session used for bare submissions that do not name one.
DEFAULT_SESSION_ID = "direct"

TIMEOUT_ERROR_CODE = -32000
CANCELLED_ERROR_CODE = -32001

TIMEOUT_MESSAGE = "Timed out waiting for response from worker."
CANCELLED_MESSAGE = "Worker process restarted; request cancelled."


@dataclass(frozen=True)
class MessageEnvelope:
    """A validated submission: which session, and what to forward."""

    session_id: str | None
    body: dict[str, Any]
    wrapped: bool


def parse_envelope(data: Any) -> MessageEnvelope:
    """Validate a decoded POST body.

    A body carrying either ``session`` or ``body`` is treated as the
    wrapped shape and both fields become mandatory. Anything else must
    be a bare protocol object.
    """
    if not isinstance(data, dict):
        raise InvalidEnvelopeError("Request body must be a JSON object.")

    if "session" in data or "body" in data:
        session = data.get("session")
        if not isinstance(session, str) or not session:
            raise InvalidEnvelopeError(
                "Field 'session' must be a non-empty string."
            )
        body = data.get("body")
        if not isinstance(body, dict):
            raise InvalidEnvelopeError("Field 'body' must be an object.")
        return MessageEnvelope(session_id=session, body=body, wrapped=True)

    return MessageEnvelope(session_id=None, body=data, wrapped=False)


def get_request_id(body: dict[str, Any]) -> str | None:
    """Return the normalized request id of ``body``, if any.

    Raises InvalidEnvelopeError for ids that are neither strings nor
    numbers. Booleans are rejected even though they subclass int.
    """
    raw = body.get("id")
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
        raise InvalidEnvelopeError(
            "Field 'body.id' must be a string or number when present."
        )
    return normalize_id(raw)


def peek_request_id(payload: Any) -> str | None:
    """Like get_request_id, but never raises. Used on worker output."""
    if not isinstance(payload, dict):
        return None
    try:
        return get_request_id(payload)
    except InvalidEnvelopeError:
        return None


def normalize_id(raw: str | int | float) -> str:
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    return str(raw)


def build_error_payload(
    request_id: Any,
    message: str,
    code: int = TIMEOUT_ERROR_CODE,
) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {
            "code": code,
            "message": message,
        },
    }


def session_event(session_id: str, body: Any) -> dict[str, Any]:
    """Payload of a ``message`` event on a session's stream."""
    return {"session": session_id, "body": body}
