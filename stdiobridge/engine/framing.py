"""Newline framing for the worker's output streams."""
from __future__ import annotations


class LineFramer:
    """Accumulates byte chunks and yields complete, trimmed lines.

    Splitting happens on raw bytes, so a multi-byte UTF-8 sequence cut
    in half by a chunk boundary is decoded only once the whole line has
    arrived. Blank lines are skipped.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        """Append ``chunk`` and return every line it completed."""
        self._buffer.extend(chunk)
        lines: list[str] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx == -1:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            line = raw.decode(self._encoding, errors="replace").strip()
            if line:
                lines.append(line)
        return lines

    def flush(self) -> list[str]:
        """Return whatever remains after EOF as a final line."""
        raw = bytes(self._buffer)
        self._buffer.clear()
        line = raw.decode(self._encoding, errors="replace").strip()
        return [line] if line else []

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()
