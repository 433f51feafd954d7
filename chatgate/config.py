"""Global configuration for Chatgate."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict


ENV_PREFIX = "CHATGATE_"


@dataclass
class GatewayConfig:
    """Gateway configuration."""
    # Upstream
    base_url: str = "http://localhost:54321"
    functions_path: str = "/functions/v1"
    public_api_key: str = ""
    batch_timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0

    # Anonymous quota
    daily_limit: int = 10
    reset_hour: int = 2  # Local hour at which anonymous counts reset
    burst_max_messages: int = 2  # Messages allowed inside the burst window
    burst_window_seconds: float = 2.0
    fingerprint_tolerance: int = 2

    # Session cache
    session_ttl_seconds: float = 300.0
    auth_timeout_seconds: float = 10.0

    # Single-flight lock
    lock_wait_seconds: float = 1.0
    lock_poll_seconds: float = 0.05
    lock_stale_seconds: float = 90.0  # Must exceed batch_timeout_seconds

    # Persistence
    db_path: str = "chatgate.db"
    persistence_queue_size: int = 1000

    @classmethod
    def from_env(cls, environ: Dict[str, str] | None = None) -> "GatewayConfig":
        """
        Build a config from CHATGATE_* environment variables.

        Unknown variables are ignored; values that fail to convert keep the default.

        Example:
            CHATGATE_DAILY_LIMIT=20 CHATGATE_BASE_URL=https://xyz.supabase.co
        """
        environ = os.environ if environ is None else environ
        config = cls()
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            default = getattr(config, f.name)
            try:
                value: Any = type(default)(raw)
            except (TypeError, ValueError):
                logging.getLogger("chatgate.config").warning(
                    "Ignoring invalid value for %s%s: %r", ENV_PREFIX, f.name.upper(), raw
                )
                continue
            setattr(config, f.name, value)
        return config

    @property
    def functions_url(self) -> str:
        return self.base_url.rstrip("/") + "/" + self.functions_path.strip("/")


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def get_model_overrides() -> Dict[str, str]:
    """Return extra model id -> provider family mappings from the environment."""
    parsed = _parse_json_env("CHATGATE_MODELS_JSON")
    if not parsed:
        return {}
    return {str(k): str(v) for k, v in parsed.items()}


def configure_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach a single stream handler to the ``chatgate`` logger."""
    logger = logging.getLogger("chatgate")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            )
        )
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
