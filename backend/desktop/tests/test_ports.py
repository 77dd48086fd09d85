"""Port allocation tests: real loopback sockets plus scripted bind failures.

Covers:
  probe() classification (available / in use / permission denied)
  acquire() preferred ordering, skipping, dynamic fallback
  PortExhausted when the fallback fails too
  issued-port bookkeeping and release()
"""

from __future__ import annotations

import asyncio
import errno
import socket

import pytest

from desktop.errors import AllocationError, PortExhausted
from desktop.ports import (
    PortAllocator,
    PortProbeResult,
    classify_bind_error,
    is_address_in_use,
    is_permission_denied,
)
from desktop.retry import RetryPolicy
from desktop.tests.fakes import no_sleep


def _quiet_policy(attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, backoff=(1.0,), sleep=no_sleep)


def _occupied_port() -> tuple[socket.socket, int]:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    return sock, sock.getsockname()[1]


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class _RefusingSocket:
    """Socket stand-in whose bind() fails with a fixed errno for chosen ports."""

    def __init__(self, refused: dict[int, int]) -> None:
        self._refused = refused
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)

    def bind(self, address) -> None:
        code = self._refused.get(address[1])
        if code is not None:
            raise OSError(code, "refused")
        self._sock.bind(address)

    def listen(self, backlog: int) -> None:
        self._sock.listen(backlog)

    def getsockname(self):
        return self._sock.getsockname()

    def close(self) -> None:
        self._sock.close()


# ── Error classification ───────────────────────────────────────────────────

class TestClassification:
    def test_eaddrinuse(self) -> None:
        exc = OSError(errno.EADDRINUSE, "in use")
        assert is_address_in_use(exc)
        assert not is_permission_denied(exc)
        assert classify_bind_error(exc) is PortProbeResult.IN_USE

    def test_eacces(self) -> None:
        exc = OSError(errno.EACCES, "denied")
        assert is_permission_denied(exc)
        assert classify_bind_error(exc) is PortProbeResult.PERMISSION_DENIED

    def test_windows_codes(self) -> None:
        assert is_address_in_use(OSError(10048, "WSAEADDRINUSE"))
        assert is_permission_denied(OSError(10013, "WSAEACCES"))

    def test_other_errors_count_as_in_use(self) -> None:
        exc = OSError(errno.EADDRNOTAVAIL, "not available")
        assert classify_bind_error(exc) is PortProbeResult.IN_USE


# ── probe ──────────────────────────────────────────────────────────────────

class TestProbe:
    def test_free_port_is_available(self) -> None:
        allocator = PortAllocator()
        assert allocator.probe(_free_port()) is PortProbeResult.AVAILABLE

    def test_listening_port_is_in_use(self) -> None:
        sock, port = _occupied_port()
        try:
            assert PortAllocator().probe(port) is PortProbeResult.IN_USE
        finally:
            sock.close()

    def test_refused_port_is_permission_denied(self) -> None:
        allocator = PortAllocator(socket_factory=lambda: _RefusingSocket({4242: errno.EACCES}))
        assert allocator.probe(4242) is PortProbeResult.PERMISSION_DENIED

    def test_out_of_range_rejected(self) -> None:
        with pytest.raises(ValueError):
            PortAllocator().probe(70000)


# ── acquire ────────────────────────────────────────────────────────────────

class TestAcquire:
    def test_first_free_preferred_port_wins(self) -> None:
        sock, busy = _occupied_port()
        free = _free_port()
        try:
            allocator = PortAllocator(dynamic_policy=_quiet_policy())
            port = asyncio.run(allocator.acquire([busy, free]))
        finally:
            sock.close()
        assert port == free
        assert free in allocator.issued

    def test_permission_denied_port_is_skipped(self) -> None:
        free = _free_port()
        allocator = PortAllocator(
            socket_factory=lambda: _RefusingSocket({80: errno.EACCES}),
            dynamic_policy=_quiet_policy(),
        )
        assert asyncio.run(allocator.acquire([80, free])) == free

    def test_falls_back_to_dynamic_when_all_preferred_taken(self) -> None:
        sock, busy = _occupied_port()
        try:
            allocator = PortAllocator(dynamic_policy=_quiet_policy())
            port = asyncio.run(allocator.acquire([busy]))
        finally:
            sock.close()
        assert port != busy
        assert 0 < port <= 65535

    def test_empty_preference_goes_dynamic(self) -> None:
        allocator = PortAllocator(dynamic_policy=_quiet_policy())
        port = asyncio.run(allocator.acquire([]))
        assert port in allocator.issued

    def test_issued_port_not_handed_out_twice(self) -> None:
        free = _free_port()
        allocator = PortAllocator(dynamic_policy=_quiet_policy())

        async def _two():
            return await allocator.acquire([free]), await allocator.acquire([free])

        first, second = asyncio.run(_two())
        assert first == free
        assert second != free

    def test_concurrent_acquires_are_disjoint(self) -> None:
        allocator = PortAllocator(dynamic_policy=_quiet_policy())
        preferred = [_free_port(), _free_port()]

        async def _many():
            return await asyncio.gather(*(allocator.acquire(preferred) for _ in range(4)))

        ports = asyncio.run(_many())
        assert len(set(ports)) == 4

    def test_disjoint_preferences_never_collide(self) -> None:
        allocator = PortAllocator(dynamic_policy=_quiet_policy())
        sock, busy = _occupied_port()
        try:
            # The first list is taken, so that caller falls back to a dynamic port.
            first, second = [busy], [_free_port()]

            async def _pair():
                return await asyncio.gather(allocator.acquire(first), allocator.acquire(second))

            a, b = asyncio.run(_pair())
        finally:
            sock.close()
        assert a != b
        assert a != busy

    def test_release_makes_port_available_again(self) -> None:
        free = _free_port()
        allocator = PortAllocator(dynamic_policy=_quiet_policy())
        assert asyncio.run(allocator.acquire([free])) == free
        allocator.release(free)
        assert free not in allocator.issued
        assert asyncio.run(allocator.acquire([free])) == free

    def test_release_none_is_noop(self) -> None:
        PortAllocator().release(None)


# ── Exhaustion ─────────────────────────────────────────────────────────────

class TestExhaustion:
    def _allocator(self, refused: dict[int, int]) -> PortAllocator:
        # Port 0 refused too, so the dynamic fallback fails.
        return PortAllocator(
            socket_factory=lambda: _RefusingSocket(refused),
            dynamic_policy=_quiet_policy(attempts=2),
        )

    def test_all_denied_is_permission_related(self) -> None:
        allocator = self._allocator({81: errno.EACCES, 82: errno.EACCES, 0: errno.EACCES})
        with pytest.raises(PortExhausted) as info:
            asyncio.run(allocator.acquire([81, 82]))
        assert info.value.permission_related
        assert info.value.denied == [81, 82]
        assert "administrator" in info.value.user_message()
        assert isinstance(info.value.__cause__, AllocationError)

    def test_busy_ports_are_not_permission_related(self) -> None:
        allocator = self._allocator({81: errno.EADDRINUSE, 0: errno.EADDRINUSE})
        with pytest.raises(PortExhausted) as info:
            asyncio.run(allocator.acquire([81]))
        assert not info.value.permission_related
        assert "administrator" not in info.value.user_message()

    def test_acquire_dynamic_raises_allocation_error(self) -> None:
        allocator = self._allocator({0: errno.EADDRINUSE})
        with pytest.raises(AllocationError):
            asyncio.run(allocator.acquire_dynamic())
