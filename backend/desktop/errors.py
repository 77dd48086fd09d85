"""Error taxonomy for the local service lifecycle and session orchestration.

Port and lifecycle errors are surfaced to whoever called ``start`` /
``restart`` and end up in a user-facing dialog, so each carries a
``user_message()`` with actionable text.  Auth errors are raised inside the
session orchestrator and handled there; they never reach the shell.
"""

from __future__ import annotations

from typing import Sequence

_PERMISSION_GUIDANCE = (
    "Suggested fixes:\n"
    "1. Run the application with administrator privileges\n"
    "2. Check the firewall settings for local connections\n"
    "3. Make sure no other application is holding the port"
)


class DesktopError(Exception):
    """Base class for every error raised by the desktop core."""

    def user_message(self) -> str:
        return str(self)


# ── Port allocation ─────────────────────────────────────────────────────────

class PortError(DesktopError):
    pass


class PortPermissionDenied(PortError):
    def __init__(self, port: int) -> None:
        super().__init__(f"Permission denied binding 127.0.0.1:{port}")
        self.port = port

    def user_message(self) -> str:
        return f"Port {self.port} could not be opened: permission denied.\n{_PERMISSION_GUIDANCE}"


class PortExhausted(PortError):
    def __init__(self, tried: Sequence[int] = (), denied: Sequence[int] = ()) -> None:
        super().__init__(
            f"No usable port found (tried {len(tried)} preferred ports, "
            f"{len(denied)} permission-denied, dynamic allocation failed)"
        )
        self.tried = list(tried)
        self.denied = list(denied)

    @property
    def permission_related(self) -> bool:
        return bool(self.tried) and len(self.denied) == len(self.tried)

    def user_message(self) -> str:
        if self.permission_related:
            return f"Every candidate port was refused by the operating system.\n{_PERMISSION_GUIDANCE}"
        return "No free local port is available. Close other local servers and try again."


class AllocationError(PortError):
    """The OS failed to hand out an ephemeral port."""


class PortInUse(PortError):
    """The port was free when probed but taken by the time we bound it."""

    def __init__(self, port: int) -> None:
        super().__init__(f"Address already in use: 127.0.0.1:{port}")
        self.port = port


# ── Service lifecycle ───────────────────────────────────────────────────────

class LifecycleError(DesktopError):
    pass


class AlreadyRunning(LifecycleError):
    def __init__(self, running_key: str | None, requested_key: str) -> None:
        super().__init__(
            f"Service already active for {running_key!r}; stop it before starting {requested_key!r}"
        )
        self.running_key = running_key
        self.requested_key = requested_key


class StartTimeout(LifecycleError):
    def __init__(self, base_url: str, waited: float) -> None:
        super().__init__(f"Service at {base_url} not reachable after {waited:.1f}s")
        self.base_url = base_url
        self.waited = waited

    def user_message(self) -> str:
        return "The local server did not respond in time. Try reopening the project."


class StartFailed(LifecycleError):
    def __init__(self, attempts: int, cause: BaseException) -> None:
        super().__init__(f"Service failed to start after {attempts} attempt(s): {cause}")
        self.attempts = attempts
        self.cause = cause

    def user_message(self) -> str:
        if isinstance(self.cause, DesktopError):
            return self.cause.user_message()
        return f"The local server could not be started: {self.cause}"


# ── Authentication / UI surface ─────────────────────────────────────────────

class AuthError(DesktopError):
    pass


class InvalidTokenShape(AuthError):
    def __init__(self, token: str | None) -> None:
        preview = (token or "")[:8]
        super().__init__(f"Token is not a three-segment compact token (starts with {preview!r})")


class ValidationTimeout(AuthError):
    pass


class ValidationUnauthorized(AuthError):
    pass


class NavigationTimeout(AuthError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"UI surface did not report ready within {timeout:.1f}s")
        self.timeout = timeout


class InjectionFailed(AuthError):
    pass
