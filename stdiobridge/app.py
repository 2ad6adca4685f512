"""stdiobridge CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from stdiobridge.engine.config import BridgeConfig
from stdiobridge.engine.errors import ConfigError, WorkerError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(level: str, log_file: str | None = None) -> None:
    """Send root logging to stderr and, optionally, a rotating file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # aiohttp's access log duplicates our request middleware.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def run_server(config: BridgeConfig) -> None:
    """Serve until SIGINT or SIGTERM."""
    from stdiobridge.server.server import BridgeServer

    logger = logging.getLogger(__name__)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop(signame: str) -> None:
        logger.info("Received %s, shutting down", signame)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass

    server = BridgeServer.from_config(config)
    await server.serve_forever(stop_event)


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="stdiobridge",
        description="Bridge a newline-JSON stdio worker to HTTP + Server-Sent Events",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: BRIDGE_* environment variables)",
    )
    parser.add_argument("--host", help="Listen address (overrides config)")
    parser.add_argument("--port", type=int, help="Listen port (overrides config)")
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Logging level, e.g. DEBUG or INFO (overrides config)",
    )
    args = parser.parse_args()

    # Basic logging so config errors are visible before the real setup.
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logger = logging.getLogger(__name__)

    try:
        if args.config:
            config = BridgeConfig.from_yaml(args.config)
        else:
            config = BridgeConfig.from_env()
        if args.host:
            config.host = args.host
        if args.port is not None:
            config.port = args.port
        if args.log_level:
            config.log_level = args.log_level.upper()
        config.validate()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)

    configure_logging(config.log_level, config.log_file)
    logger.info(
        "Starting stdiobridge host=%s port=%d config=%s log=%s",
        config.host, config.port, args.config or "<env>", config.log_file or "<stderr>",
    )

    try:
        asyncio.run(run_server(config))
    except (ConfigError, WorkerError) as exc:
        logger.error("Failed to start bridge: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
