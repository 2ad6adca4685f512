"""stdiobridge: expose a newline-JSON stdio worker over HTTP and SSE."""

__version__ = "0.3.0"
