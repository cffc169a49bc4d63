"""Runtime configuration for the bridge, read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8765
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_HANDSHAKE_TIMEOUT = 5.0
DEFAULT_RECONNECT_DELAY = 3.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_BACKOFF_CAP = 5
DEFAULT_MAX_PENDING = 256

# The Android emulator cannot resolve loopback to the host machine.
ANDROID_EMULATOR_HOST = "10.0.2.2"


def default_host(platform: str | None = None, emulator: bool = False) -> str:
    """Get the host an application should use to reach the controller.

    Emulated Android devices reach the host through a fixed alias address;
    everything else connects over loopback.
    """
    if emulator and platform == "android":
        return ANDROID_EMULATOR_HOST
    return "localhost"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


@dataclass
class BridgeConfig:
    """Settings shared by the controller and the embedded client."""

    host: str = "localhost"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    backoff_cap: int = DEFAULT_BACKOFF_CAP
    max_pending: int = DEFAULT_MAX_PENDING

    @classmethod
    def from_env(cls, platform: str | None = None, emulator: bool = False) -> BridgeConfig:
        """Build a config from ``MCP_*`` environment variables."""
        return cls(
            host=os.environ.get("MCP_HOST") or default_host(platform, emulator),
            port=_env_int("MCP_PORT", DEFAULT_PORT),
            log_level=os.environ.get("MCP_LOG_LEVEL", "INFO").upper(),
            request_timeout=_env_float("MCP_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            handshake_timeout=_env_float(
                "MCP_HANDSHAKE_TIMEOUT", DEFAULT_HANDSHAKE_TIMEOUT
            ),
            reconnect_delay=_env_float("MCP_RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY),
            max_reconnect_attempts=_env_int(
                "MCP_MAX_RECONNECT_ATTEMPTS", DEFAULT_MAX_RECONNECT_ATTEMPTS
            ),
            max_pending=_env_int("MCP_MAX_PENDING", DEFAULT_MAX_PENDING),
        )

    @property
    def server_url(self) -> str:
        return f"ws://{self.host}:{self.port}"
