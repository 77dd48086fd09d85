"""Loopback port discovery aware of per-platform permission failures.

A candidate is probed by binding a listener on 127.0.0.1 and releasing it
straight away.  ``EADDRINUSE`` and ``EACCES`` are told apart: a refused port
is skipped, not retried, because some platforms reserve ranges for
non-administrator processes regardless of whether anything listens there.
When every preferred candidate fails we ask the OS for an ephemeral port.

The candidate ordering is an input; see ``desktop.config.preferred_ports``.
"""

from __future__ import annotations

import enum
import errno
import logging
import socket
from typing import Callable, Iterable

from desktop.config import (
    DYNAMIC_ALLOCATION_ATTEMPTS,
    DYNAMIC_ALLOCATION_BACKOFF,
    LOOPBACK_HOST,
)
from desktop.errors import AllocationError, PortExhausted
from desktop.retry import RetryPolicy

_log = logging.getLogger(__name__)

# Windows socket error codes (WSAEACCES / WSAEADDRINUSE).
_WSAEACCES = 10013
_WSAEADDRINUSE = 10048

_IN_USE_CODES = {errno.EADDRINUSE, _WSAEADDRINUSE}
_DENIED_CODES = {errno.EACCES, errno.EPERM, _WSAEACCES}

SocketFactory = Callable[[], socket.socket]


class PortProbeResult(enum.Enum):
    AVAILABLE = "available"
    IN_USE = "in_use"
    PERMISSION_DENIED = "permission_denied"


def is_address_in_use(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and (
        exc.errno in _IN_USE_CODES or getattr(exc, "winerror", None) == _WSAEADDRINUSE
    )


def is_permission_denied(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and (
        exc.errno in _DENIED_CODES or getattr(exc, "winerror", None) == _WSAEACCES
    )


def classify_bind_error(exc: OSError) -> PortProbeResult:
    if is_permission_denied(exc):
        return PortProbeResult.PERMISSION_DENIED
    # Anything else (in use, address unavailable, ...) just means "not this one".
    return PortProbeResult.IN_USE


def _tcp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_STREAM)


class PortAllocator:
    """Hands out loopback ports that it has itself bound and released.

    Ports handed out stay *issued* until ``release`` is called, so two
    callers sharing one allocator never receive the same port even when the
    OS recycles an ephemeral port between dynamic allocations.
    """

    def __init__(
        self,
        host: str = LOOPBACK_HOST,
        *,
        socket_factory: SocketFactory = _tcp_socket,
        dynamic_policy: RetryPolicy | None = None,
    ) -> None:
        self.host = host
        self._socket_factory = socket_factory
        self._issued: set[int] = set()
        self._dynamic_policy = dynamic_policy or RetryPolicy(
            max_attempts=DYNAMIC_ALLOCATION_ATTEMPTS,
            backoff=DYNAMIC_ALLOCATION_BACKOFF,
            name="dynamic port allocation",
        )

    @property
    def issued(self) -> frozenset[int]:
        return frozenset(self._issued)

    def probe(self, port: int) -> PortProbeResult:
        if not 1 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
        sock = self._socket_factory()
        try:
            sock.bind((self.host, port))
            sock.listen(1)
        except OSError as exc:
            result = classify_bind_error(exc)
            _log.debug("Port %d probe: %s (%s)", port, result.value, exc)
            return result
        finally:
            sock.close()
        return PortProbeResult.AVAILABLE

    async def acquire(self, preferred_ports: Iterable[int]) -> int:
        """First bindable port from ``preferred_ports``, else an OS-assigned one.

        Raises ``PortExhausted`` when the dynamic fallback also fails.
        """
        tried: list[int] = []
        denied: list[int] = []
        for port in preferred_ports:
            if port in tried:
                continue
            tried.append(port)
            if port in self._issued:
                continue
            result = self.probe(port)
            if result is PortProbeResult.AVAILABLE:
                self._issued.add(port)
                _log.info("Acquired preferred port %d", port)
                return port
            if result is PortProbeResult.PERMISSION_DENIED:
                denied.append(port)
                _log.info("Port %d refused by the OS (permission denied), skipping", port)

        if tried:
            _log.info(
                "All %d preferred ports unavailable (%d permission-denied), falling back to dynamic",
                len(tried), len(denied),
            )
        try:
            return await self.acquire_dynamic()
        except AllocationError as exc:
            raise PortExhausted(tried, denied) from exc

    async def acquire_dynamic(self) -> int:
        """Bind port 0 and keep the port the OS picked."""

        async def _attempt(attempt: int) -> int:
            port = self._bind_ephemeral()
            if port in self._issued:
                raise AllocationError(f"OS returned already-issued port {port}")
            return port

        try:
            port = await self._dynamic_policy.run(_attempt)
        except AllocationError:
            raise
        except OSError as exc:
            raise AllocationError(f"Dynamic port allocation failed: {exc}") from exc
        self._issued.add(port)
        _log.info("Acquired dynamic port %d", port)
        return port

    def _bind_ephemeral(self) -> int:
        sock = self._socket_factory()
        try:
            sock.bind((self.host, 0))
            sock.listen(1)
            return int(sock.getsockname()[1])
        finally:
            sock.close()

    def release(self, port: int | None) -> None:
        if port is not None:
            self._issued.discard(port)
