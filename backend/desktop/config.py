"""Timeouts, bounds and environment-driven settings for the desktop core."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

_log = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# Port allocation
DYNAMIC_ALLOCATION_ATTEMPTS = 3
DYNAMIC_ALLOCATION_BACKOFF = (1.0,)

# Service lifecycle
START_ATTEMPTS = 3
START_BACKOFF = (1.0, 2.0)
LIVENESS_INTERVAL = 0.5
LIVENESS_TIMEOUT = 5.0
SHUTDOWN_TIMEOUT = 5.0

# Session orchestration
VALIDATION_TIMEOUT = 3.0
UI_READY_TIMEOUT = 10.0
MAX_NAVIGATIONS = 3
MAX_INJECTION_ATTEMPTS = 2

# Routes served by the embedded service.
API_PREFIX = "/api/desktop"
AUTHENTICATED_ENTRY = "/pro"
UNAUTHENTICATED_ENTRY = "/pro/login"
REASON_TOKEN_INVALID = "token_invalid_or_missing"
REASON_INJECTION_FAILED = "token_injection_failed"

# Windows refuses some low and historically reserved ports to non-admin
# processes, so only curated user-range ports are tried there.
_WINDOWS_PORTS = (
    4000, 4001, 4002, 4003, 4004, 4005,
    3000, 3001, 3002, 3003, 3004, 3005,
    8000, 8001, 8002, 8003, 8004, 8005,
    5000, 5001, 5002, 5003, 5004, 5005,
)
_DEFAULT_FIRST_PORT = 4000
_DEFAULT_PORT_SPAN = 100


def preferred_ports(platform: str | None = None) -> list[int]:
    """Platform default ordering of candidate ports."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return list(_WINDOWS_PORTS)
    return list(range(_DEFAULT_FIRST_PORT, _DEFAULT_FIRST_PORT + _DEFAULT_PORT_SPAN))


def _parse_ports(raw: str) -> list[int]:
    ports = [int(p.strip()) for p in raw.split(",") if p.strip()]
    for port in ports:
        if not 1 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
    return ports


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


def _default_data_dir() -> Path:
    return Path.home() / ".pressdesk"


@dataclass(frozen=True)
class DesktopSettings:
    data_dir: Path = field(default_factory=_default_data_dir)
    ports: tuple[int, ...] = field(default_factory=lambda: tuple(preferred_ports()))
    require_login: bool = True
    log_level: str = "INFO"

    @property
    def store_path(self) -> Path:
        return self.data_dir / "settings.json"

    @property
    def runtime_path(self) -> Path:
        return self.data_dir / "runtime.json"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "DesktopSettings":
        env = os.environ if environ is None else environ

        data_root = env.get("PRESSDESK_DATA_DIR")
        data_dir = Path(data_root).expanduser() if data_root else _default_data_dir()

        ports = tuple(preferred_ports())
        raw_ports = env.get("PRESSDESK_PORTS", "")
        if raw_ports:
            try:
                ports = tuple(_parse_ports(raw_ports))
            except ValueError:
                _log.warning("Invalid PRESSDESK_PORTS=%r, using platform defaults", raw_ports)

        raw_login = env.get("PRESSDESK_REQUIRE_LOGIN")
        require_login = True if raw_login is None else _parse_bool(raw_login)

        return cls(
            data_dir=data_dir,
            ports=ports,
            require_login=require_login,
            log_level=env.get("PRESSDESK_LOG_LEVEL", "INFO").upper(),
        )
