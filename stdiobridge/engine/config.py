"""Configuration loaded from environment variables or a YAML file.

All settings have defaults except the worker credential. Override via
BRIDGE_* env vars, or pass ``--config bridge.yaml`` to the CLI.

Example YAML:
    server:
      host: 0.0.0.0
      port: 8443
      allow_http: false
      tls:
        cert: /etc/bridge/tls.crt
        key: /etc/bridge/tls.key
    worker:
      command: npx --yes @mablhq/mabl-cli@latest mcp start
      auth_command: [npx, --yes, "@mablhq/mabl-cli@latest", mabl, auth, activate-key]
      api_key_env: MABL_API_KEY
      restart_delay_seconds: 5
      env:
        NODE_OPTIONS: --max-old-space-size=512
    sessions:
      request_timeout_seconds: 45
      heartbeat_interval_seconds: 15
      idle_timeout_seconds: 120
    logging:
      level: INFO
      file: /var/log/stdiobridge.log
"""
from __future__ import annotations

import logging
import os
import shlex
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = ["npx", "--yes", "@mablhq/mabl-cli@latest", "mcp", "start"]
DEFAULT_AUTH_COMMAND = [
    "npx", "--yes", "@mablhq/mabl-cli@latest", "mabl", "auth", "activate-key",
]

_TRUTHY = {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, value, default)
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value, 10)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, value, default)
        return default


def _env_bool(name: str) -> bool:
    return os.getenv(name, "").lower() in _TRUTHY


def _command(value: Any, default: list[str]) -> list[str]:
    """Accept a command as a list or a shell-style string."""
    if value is None or value == "":
        return list(default)
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list) and all(isinstance(part, str) for part in value):
        return list(value)
    raise ConfigError(f"Invalid command: {value!r}")


@dataclass
class BridgeConfig:
    """Bridge server configuration."""

    # HTTP listener
    host: str = "0.0.0.0"
    port: int = 443
    allow_http: bool = False
    tls_cert_path: str | None = None
    tls_key_path: str | None = None
    tls_ca_path: str | None = None
    # Largest accepted POST body (bytes).
    max_body_bytes: int = 2 * 1024 * 1024

    # Correlation and streams
    request_timeout_seconds: float = 45.0
    heartbeat_interval_seconds: float = 15.0
    idle_timeout_seconds: float = 120.0
    sse_queue_size: int = 1000

    # Worker process
    worker_command: list[str] = field(
        default_factory=lambda: list(DEFAULT_WORKER_COMMAND)
    )
    # Credential is appended as the final argument. Empty list skips auth.
    auth_command: list[str] = field(
        default_factory=lambda: list(DEFAULT_AUTH_COMMAND)
    )
    api_key: str | None = field(default=None, repr=False)
    worker_env: dict[str, str] = field(default_factory=dict)
    cache_dir: str = "/tmp/stdiobridge-cache"
    home_dir: str = "/tmp/stdiobridge-home"
    restart_delay_seconds: float = 5.0
    stop_grace_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from BRIDGE_* environment variables."""
        bridge_vars = sorted(k for k in os.environ if k.startswith("BRIDGE_"))
        if bridge_vars:
            logger.debug(
                "BridgeConfig.from_env: BRIDGE_* overrides: %s",
                ", ".join(bridge_vars),
            )

        config = cls(
            host=os.getenv("BRIDGE_HOST", cls.host),
            port=_env_int("BRIDGE_PORT", cls.port),
            allow_http=_env_bool("BRIDGE_ALLOW_HTTP"),
            tls_cert_path=os.getenv("BRIDGE_TLS_CERT_PATH") or None,
            tls_key_path=os.getenv("BRIDGE_TLS_KEY_PATH") or None,
            tls_ca_path=os.getenv("BRIDGE_TLS_CA_PATH") or None,
            max_body_bytes=_env_int("BRIDGE_MAX_BODY_BYTES", cls.max_body_bytes),
            request_timeout_seconds=_env_float(
                "BRIDGE_REQUEST_TIMEOUT", cls.request_timeout_seconds,
            ),
            heartbeat_interval_seconds=_env_float(
                "BRIDGE_HEARTBEAT_INTERVAL", cls.heartbeat_interval_seconds,
            ),
            idle_timeout_seconds=_env_float(
                "BRIDGE_IDLE_TIMEOUT", cls.idle_timeout_seconds,
            ),
            sse_queue_size=_env_int("BRIDGE_SSE_QUEUE_SIZE", cls.sse_queue_size),
            worker_command=_command(
                os.getenv("BRIDGE_WORKER_COMMAND"), DEFAULT_WORKER_COMMAND,
            ),
            auth_command=_command(
                os.getenv("BRIDGE_AUTH_COMMAND"), DEFAULT_AUTH_COMMAND,
            ),
            api_key=os.getenv("BRIDGE_API_KEY") or None,
            cache_dir=os.getenv("BRIDGE_CACHE_DIR", cls.cache_dir),
            home_dir=os.getenv("BRIDGE_HOME_DIR", cls.home_dir),
            restart_delay_seconds=_env_float(
                "BRIDGE_RESTART_DELAY", cls.restart_delay_seconds,
            ),
            stop_grace_seconds=_env_float(
                "BRIDGE_STOP_GRACE", cls.stop_grace_seconds,
            ),
            log_level=os.getenv("BRIDGE_LOG_LEVEL", cls.log_level).upper(),
            log_file=os.getenv("BRIDGE_LOG_FILE") or None,
        )
        if _env_bool("BRIDGE_SKIP_AUTH"):
            config.auth_command = []
        logger.info(
            "BridgeConfig.from_env: host=%s port=%d tls=%s request_timeout=%.1fs",
            config.host, config.port, config.tls_enabled,
            config.request_timeout_seconds,
        )
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> BridgeConfig:
        """Load configuration from a YAML file.

        Missing sections and keys keep their defaults. The credential is
        never stored in the file: ``worker.api_key_env`` names the
        environment variable holding it (default BRIDGE_API_KEY).
        """
        config_path = Path(path)
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"Cannot read config file {config_path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Config root must be a mapping: {config_path}")

        server = _section(raw, "server")
        worker = _section(raw, "worker")
        sessions = _section(raw, "sessions")
        logging_cfg = _section(raw, "logging")
        tls = server.get("tls") or {}
        if not isinstance(tls, dict):
            raise ConfigError("'server.tls' must be a mapping")

        worker_env = worker.get("env") or {}
        if not isinstance(worker_env, dict):
            raise ConfigError("'worker.env' must be a mapping")

        api_key_env = str(worker.get("api_key_env") or "BRIDGE_API_KEY")
        # An explicit empty or null auth_command disables authentication.
        if "auth_command" in worker and not worker["auth_command"]:
            auth_command: list[str] = []
        else:
            auth_command = _command(worker.get("auth_command"), DEFAULT_AUTH_COMMAND)

        try:
            config = cls(
                host=str(server.get("host", cls.host)),
                port=int(server.get("port", cls.port)),
                allow_http=bool(server.get("allow_http", False)),
                tls_cert_path=tls.get("cert"),
                tls_key_path=tls.get("key"),
                tls_ca_path=tls.get("ca"),
                max_body_bytes=int(server.get("max_body_bytes", cls.max_body_bytes)),
                request_timeout_seconds=float(sessions.get(
                    "request_timeout_seconds", cls.request_timeout_seconds,
                )),
                heartbeat_interval_seconds=float(sessions.get(
                    "heartbeat_interval_seconds", cls.heartbeat_interval_seconds,
                )),
                idle_timeout_seconds=float(sessions.get(
                    "idle_timeout_seconds", cls.idle_timeout_seconds,
                )),
                sse_queue_size=int(sessions.get("queue_size", cls.sse_queue_size)),
                worker_command=_command(worker.get("command"), DEFAULT_WORKER_COMMAND),
                auth_command=auth_command,
                api_key=os.getenv(api_key_env) or None,
                worker_env={str(k): str(v) for k, v in worker_env.items()},
                cache_dir=str(worker.get("cache_dir", cls.cache_dir)),
                home_dir=str(worker.get("home_dir", cls.home_dir)),
                restart_delay_seconds=float(worker.get(
                    "restart_delay_seconds", cls.restart_delay_seconds,
                )),
                stop_grace_seconds=float(worker.get(
                    "stop_grace_seconds", cls.stop_grace_seconds,
                )),
                log_level=str(logging_cfg.get("level", cls.log_level)).upper(),
                log_file=logging_cfg.get("file"),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value in {config_path}: {exc}") from exc

        logger.info("Loaded config from %s", config_path)
        return config

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert_path and self.tls_key_path)

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot run."""
        if not self.worker_command:
            raise ConfigError("Worker command must not be empty.")
        if self.auth_command and not self.api_key:
            raise ConfigError(
                "An API key is required for worker authentication "
                "(set BRIDGE_API_KEY, or disable auth)."
            )
        if not self.tls_enabled and not self.allow_http:
            raise ConfigError(
                "TLS cert and key paths must be set, or allow_http enabled "
                "to run without TLS."
            )
        for name in (
            "request_timeout_seconds",
            "heartbeat_interval_seconds",
            "idle_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive.")
        if self.restart_delay_seconds < 0:
            raise ConfigError("restart_delay_seconds must not be negative.")

    def ssl_context(self) -> ssl.SSLContext | None:
        """Build the server TLS context, or None when serving plain HTTP."""
        if not self.tls_enabled:
            return None
        ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        try:
            ctx.load_cert_chain(self.tls_cert_path, self.tls_key_path)
            if self.tls_ca_path:
                ctx.load_verify_locations(cafile=self.tls_ca_path)
        except (OSError, ssl.SSLError) as exc:
            raise ConfigError(f"Cannot load TLS material: {exc}") from exc
        return ctx


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return value
