"""Gateway configuration loader."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from urllib.parse import urlparse

import yaml

logger = logging.getLogger("chatgate.config")


DEFAULT_CONFIG = Path("chatgate.yaml")


@dataclass
class GatewayConfig:
    #: Base URL of the Ollama-compatible backend; ``/api/chat`` is appended.
    backend_url: str = "http://localhost:11434"
    #: Model name sent in every backend request.
    backend_model: str = "nemotron-3-nano"
    host: str = "0.0.0.0"
    port: int = 8000
    #: SQLAlchemy async URL of the key store.
    database_url: str = "sqlite+aiosqlite:///./chatgate.db"
    #: Upper bound on the ``messages`` list of a chat request.
    max_messages: int = 100
    #: Maximum allowed request body size in bytes.
    #:
    #: Checked against ``Content-Length`` before the body is read, and again
    #: against the bytes actually received.
    max_body_size: int = 1024 * 1024
    #: Seconds allowed to open a connection to the backend.  There is no read
    #: timeout: a backend may legitimately stream for an unbounded time.
    connect_timeout: float = 10.0
    #: Seconds in-flight sessions get to finish after SIGTERM/SIGINT.
    shutdown_grace: float = 10.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.backend_url = _validate_backend_url(self.backend_url)
        self.database_url = normalize_database_url(self.database_url)


# (env var, legacy fallback, field)
_ENV_OVERRIDES = [
    ("CHATGATE_BACKEND_URL", "OLLAMA_URL", "backend_url"),
    ("CHATGATE_BACKEND_MODEL", "OLLAMA_MODEL", "backend_model"),
    ("CHATGATE_HOST", None, "host"),
    ("CHATGATE_PORT", "PORT", "port"),
    ("CHATGATE_DATABASE_URL", "DATABASE_URL", "database_url"),
    ("CHATGATE_MAX_MESSAGES", None, "max_messages"),
    ("CHATGATE_MAX_BODY_SIZE", None, "max_body_size"),
    ("CHATGATE_CONNECT_TIMEOUT", None, "connect_timeout"),
    ("CHATGATE_SHUTDOWN_GRACE", None, "shutdown_grace"),
    ("CHATGATE_LOG_LEVEL", None, "log_level"),
]


def _validate_backend_url(url: str) -> str:
    """Return *url* without a trailing slash.

    Raises
    ------
    ValueError
        If the scheme is not http/https or the host is missing.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(
            f"backend_url must use http or https, got {url!r}"
        )
    if not parsed.netloc:
        raise ValueError(f"backend_url has no host: {url!r}")
    return url.rstrip("/")


def normalize_database_url(url: str) -> str:
    """Translate a ``file:./keys.db`` style URL into an aiosqlite URL.

    Anything already carrying a SQLAlchemy scheme is returned unchanged.
    """
    if url.startswith("file:"):
        return "sqlite+aiosqlite:///" + url[len("file:"):]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    return url


def _coerce(name: str, raw: object) -> object:
    """Convert a YAML/env value to the type of the GatewayConfig field *name*."""
    default = GatewayConfig.__dataclass_fields__[name].default
    if isinstance(default, bool):
        return str(raw).lower() not in ("false", "0", "no")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return str(raw)


def _resolve_config_path(path: str | Path | None) -> tuple[Path, bool]:
    """Return the config file path and whether it was explicitly requested."""
    if path:
        return Path(path), True
    env_path = os.environ.get("CHATGATE_CONFIG")
    if env_path:
        return Path(env_path), True
    return DEFAULT_CONFIG, False


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """Load gateway config from YAML, then apply environment overrides.

    The YAML file is optional when no path was requested; an explicitly
    requested file that does not exist raises ``FileNotFoundError``.
    """
    config_path, explicit = _resolve_config_path(path)

    values: dict[str, object] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        section = raw.get("gateway", {}) or {}
        known = {f.name for f in fields(GatewayConfig)}
        for key, value in section.items():
            if key not in known:
                logger.warning("Ignoring unknown config key %r in %s", key, config_path)
                continue
            values[key] = _coerce(key, value)
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    for env_name, legacy_name, field_name in _ENV_OVERRIDES:
        raw_value = os.environ.get(env_name)
        if raw_value is None and legacy_name:
            raw_value = os.environ.get(legacy_name)
        if raw_value is not None and raw_value != "":
            values[field_name] = _coerce(field_name, raw_value)

    return GatewayConfig(**values)
