"""
Start/stop/restart/force-stop of the single embedded service instance.

State machine::

    Stopped -> Starting -> Running -> Stopping -> Stopped
    any     -> Failed  (unrecoverable start error)
    Failed  -> Starting

Transitions are serialized: ``start``, ``stop``, ``restart`` and
``ensure_running`` each wait for the transition already in flight before
acting, so nobody ever sees a half-initialised instance.  ``force_stop`` is
the exception: it does not wait, it drives the state to Stopped at once and
bumps a generation counter that makes any in-flight start abandon its work.

Startup is probe-then-bind, which races with other processes: if the port
is taken between allocation and bind the whole sequence is retried with a
freshly allocated port (``START_ATTEMPTS`` tries, ``START_BACKOFF`` delays).
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import math
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Protocol, TypeVar

import httpx
import uvicorn
from fastapi import FastAPI

from app.main import create_app
from app.state import ServiceContext
from desktop.config import (
    API_PREFIX,
    LIVENESS_INTERVAL,
    LIVENESS_TIMEOUT,
    LOOPBACK_HOST,
    SHUTDOWN_TIMEOUT,
    START_ATTEMPTS,
    START_BACKOFF,
)
from desktop.credentials import CredentialStore
from desktop.errors import (
    AlreadyRunning,
    LifecycleError,
    PortExhausted,
    PortInUse,
    PortPermissionDenied,
    StartFailed,
    StartTimeout,
)
from desktop.ports import PortAllocator, is_address_in_use, is_permission_denied
from desktop.retry import RetryPolicy

_log = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class ServiceInstance:
    project_key: str
    working_directory: Path
    bound_port: int | None = None
    base_url: str | None = None
    state: ServiceState = ServiceState.STARTING
    started_at: datetime | None = None


class StartAborted(LifecycleError):
    """An in-flight start was superseded by ``force_stop``."""


# ── Backend handle ──────────────────────────────────────────────────────────

class ServiceBackend(Protocol):
    """One serving attempt of the service on one port."""

    async def start(self) -> None:
        """Bind and begin serving; raises ``OSError`` if the bind fails."""

    def failure(self) -> BaseException | None:
        """The error that ended serving early, if it has ended."""

    async def shutdown(self, timeout: float) -> None:
        """Graceful stop; may raise."""

    def kill(self) -> None:
        """Immediate teardown, must not raise."""


BackendFactory = Callable[[FastAPI, str, int], ServiceBackend]
LivenessProbe = Callable[[str], Awaitable[bool]]
AppFactory = Callable[[ServiceContext], FastAPI]


class _EmbeddedServer(uvicorn.Server):
    # Signals belong to the host process, not to the embedded server.
    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class UvicornBackend:
    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self.host = host
        self.port = port
        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            loop="asyncio",
            lifespan="on",
            log_level="warning",
            # The service logs through the desktop loggers already.
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._socket: socket.socket | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        # Bind ourselves so a taken port surfaces as OSError here instead of
        # uvicorn logging it and calling sys.exit().
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        self._socket = sock
        self._task = asyncio.create_task(
            self._server.serve(sockets=[sock]), name=f"service:{self.port}",
        )

    def failure(self) -> BaseException | None:
        if self._task is None or not self._task.done():
            return None
        if self._task.cancelled():
            return RuntimeError("service task cancelled")
        return self._task.exception() or RuntimeError("service exited during startup")

    async def shutdown(self, timeout: float) -> None:
        self._server.should_exit = True
        try:
            if self._task is not None:
                await asyncio.wait_for(asyncio.shield(self._task), timeout)
        finally:
            self._close_socket()

    def kill(self) -> None:
        self._server.force_exit = True
        self._server.should_exit = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._close_socket()

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None


async def http_liveness_probe(base_url: str) -> bool:
    try:
        async with httpx.AsyncClient(timeout=LIVENESS_INTERVAL * 2, trust_env=False) as client:
            resp = await client.get(f"{base_url}{API_PREFIX}/status")
    except httpx.HTTPError:
        return False
    return resp.status_code == 200


def _is_port_race(exc: BaseException) -> bool:
    return isinstance(exc, PortInUse)


# ── Manager ─────────────────────────────────────────────────────────────────

class ServiceLifecycleManager:
    def __init__(
        self,
        allocator: PortAllocator,
        preferred_ports: Iterable[int],
        *,
        credentials: CredentialStore | None = None,
        require_login: bool = True,
        app_factory: AppFactory = create_app,
        backend_factory: BackendFactory = UvicornBackend,
        liveness_probe: LivenessProbe = http_liveness_probe,
        start_policy: RetryPolicy | None = None,
        liveness_interval: float = LIVENESS_INTERVAL,
        liveness_timeout: float = LIVENESS_TIMEOUT,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
        runtime_file: Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_transition: Callable[[ServiceState, ServiceState], None] | None = None,
        host: str = LOOPBACK_HOST,
    ) -> None:
        self._allocator = allocator
        self._preferred_ports = list(preferred_ports)
        self._credentials = credentials
        self._require_login = require_login
        self._app_factory = app_factory
        self._backend_factory = backend_factory
        self._probe = liveness_probe
        self._start_policy = start_policy or RetryPolicy(
            max_attempts=START_ATTEMPTS,
            backoff=START_BACKOFF,
            retryable=_is_port_race,
            sleep=sleep,
            name="service start",
        )
        self._liveness_interval = liveness_interval
        self._liveness_timeout = liveness_timeout
        self._shutdown_timeout = shutdown_timeout
        self._runtime_file = runtime_file
        self._sleep = sleep
        self._on_transition = on_transition
        self.host = host

        self._state = ServiceState.STOPPED
        self._instance: ServiceInstance | None = None
        self._backend: ServiceBackend | None = None
        self._port: int | None = None
        # One-time wiring of the application for the current instance.
        self._wired = False
        self._app: FastAPI | None = None
        self._context: ServiceContext | None = None

        self._transition: asyncio.Future | None = None
        self._generation = 0

    # ── Introspection ──

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def instance(self) -> ServiceInstance | None:
        return self._instance

    @property
    def wired(self) -> bool:
        return self._wired

    @property
    def base_url(self) -> str | None:
        if self._state is not ServiceState.RUNNING or self._instance is None:
            return None
        return self._instance.base_url

    # ── Public operations ──

    async def start(self, project_key: str, working_directory: Path | str) -> ServiceInstance:
        return await self._serialized(lambda: self._start_locked(project_key, Path(working_directory)))

    async def stop(self) -> None:
        await self._serialized(self._stop_locked)

    async def restart(self, project_key: str, working_directory: Path | str) -> ServiceInstance:
        async def _restart() -> ServiceInstance:
            await self._stop_locked()
            return await self._start_locked(project_key, Path(working_directory))

        return await self._serialized(_restart)

    async def ensure_running(self, project_key: str, working_directory: Path | str) -> ServiceInstance:
        """Reuse a healthy instance for the same project, else (re)start."""

        async def _ensure() -> ServiceInstance:
            inst = self._instance
            if (
                self._state is ServiceState.RUNNING
                and inst is not None
                and inst.project_key == project_key
                and inst.base_url is not None
            ):
                if await self._probe(inst.base_url):
                    return inst
                _log.warning("Service for %s stopped answering, restarting", project_key)
            await self._stop_locked()
            return await self._start_locked(project_key, Path(working_directory))

        return await self._serialized(_ensure)

    async def force_stop(self) -> None:
        """Best-effort teardown that never waits; always ends Stopped."""
        self._generation += 1
        backend = self._backend
        if backend is not None:
            try:
                backend.kill()
            except Exception:
                _log.exception("Error while killing service backend")
        if self._state is ServiceState.RUNNING:
            self._set_state(ServiceState.STOPPING)
        self._teardown()
        _log.info("Service force-stopped")

    # ── Serialization ──

    async def _serialized(self, operation: Callable[[], Awaitable[T]]) -> T:
        while self._transition is not None:
            await asyncio.shield(self._transition)
        marker = asyncio.get_running_loop().create_future()
        self._transition = marker
        try:
            return await operation()
        finally:
            self._transition = None
            marker.set_result(None)

    # ── Start ──

    async def _start_locked(self, project_key: str, working_directory: Path) -> ServiceInstance:
        if self._instance is not None and self._state is ServiceState.RUNNING:
            if self._instance.project_key == project_key:
                return self._instance
            raise AlreadyRunning(self._instance.project_key, project_key)

        generation = self._generation
        instance = ServiceInstance(project_key=project_key, working_directory=working_directory)
        self._instance = instance
        self._set_state(ServiceState.STARTING)
        _log.info("Starting service for %s (%s)", project_key, working_directory)

        attempts = 0
        raced: set[int] = set()

        async def _attempt(attempt: int) -> ServiceInstance:
            nonlocal attempts
            attempts = attempt
            try:
                return await self._start_once(instance, generation, raced)
            except PortInUse as exc:
                raced.add(exc.port)
                raise

        try:
            return await self._start_policy.run(_attempt)
        except StartAborted:
            raise
        except (StartTimeout, PortExhausted, PortPermissionDenied) as exc:
            self._fail(generation, exc)
            raise
        except Exception as exc:
            self._fail(generation, exc)
            raise StartFailed(attempts, exc) from exc

    async def _start_once(
        self,
        inst: ServiceInstance,
        generation: int,
        exclude: set[int],
    ) -> ServiceInstance:
        project_key = inst.project_key
        # A port that lost the bind race is not offered again in this start.
        candidates = [p for p in self._preferred_ports if p not in exclude]
        port = await self._allocator.acquire(candidates)
        self._check_generation(generation, port)

        base_url = f"http://{self.host}:{port}"
        try:
            app, context = self._wire(project_key, inst.working_directory)
            context.port = port
            backend = self._backend_factory(app, self.host, port)
            await backend.start()
        except OSError as exc:
            self._allocator.release(port)
            if is_address_in_use(exc):
                raise PortInUse(port) from exc
            if is_permission_denied(exc):
                raise PortPermissionDenied(port) from exc
            raise
        except BaseException:
            self._allocator.release(port)
            raise

        self._backend = backend
        self._port = port
        try:
            await self._wait_until_live(base_url, backend, generation)
            self._check_generation(generation)
        except BaseException:
            self._discard_backend()
            raise

        now = datetime.now(timezone.utc)
        context.started_at = now
        inst.bound_port = port
        inst.base_url = base_url
        inst.started_at = now
        self._set_state(ServiceState.RUNNING)
        self._announce(inst)
        _log.info("Service for %s running at %s", project_key, base_url)
        return inst

    def _wire(self, project_key: str, working_directory: Path) -> tuple[FastAPI, ServiceContext]:
        if self._wired and self._app is not None and self._context is not None:
            return self._app, self._context
        context = ServiceContext(
            project_key=project_key,
            working_directory=working_directory,
            credentials=self._credentials,
            require_login=self._require_login,
        )
        app = self._app_factory(context)
        self._context, self._app = context, app
        self._wired = True
        _log.debug("Wired service application for %s", project_key)
        return app, context

    async def _wait_until_live(self, base_url: str, backend: ServiceBackend, generation: int) -> None:
        # Bounded by elapsed time; a slow probe is cut off at the deadline.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._liveness_timeout
        polls = max(1, math.ceil(self._liveness_timeout / self._liveness_interval))
        for _ in range(polls):
            self._check_generation(generation)
            failure = backend.failure()
            if failure is not None:
                raise failure
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                live = await asyncio.wait_for(self._probe(base_url), remaining)
            except asyncio.TimeoutError:
                break
            if live:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await self._sleep(min(self._liveness_interval, remaining))
        self._check_generation(generation)
        raise StartTimeout(base_url, self._liveness_timeout)

    def _check_generation(self, generation: int, port: int | None = None) -> None:
        if generation != self._generation:
            self._allocator.release(port)
            raise StartAborted("Start superseded by force stop")

    def _fail(self, generation: int, exc: BaseException) -> None:
        if generation != self._generation:
            return
        _log.error("Service start failed: %s", exc)
        self._discard_backend()
        self._reset_wiring()
        self._set_state(ServiceState.FAILED)

    # ── Stop ──

    async def _stop_locked(self) -> None:
        if self._state is ServiceState.STOPPED:
            return
        if self._state is ServiceState.FAILED:
            self._teardown()
            return

        self._set_state(ServiceState.STOPPING)
        backend = self._backend
        if backend is not None:
            try:
                await backend.shutdown(self._shutdown_timeout)
            except Exception as exc:
                _log.warning("Graceful shutdown failed (%s), forcing stop", exc)
                await self.force_stop()
                return
        self._teardown()
        _log.info("Service stopped")

    # ── Resource bookkeeping ──

    def _discard_backend(self) -> None:
        backend, self._backend = self._backend, None
        if backend is not None:
            try:
                backend.kill()
            except Exception:
                _log.exception("Error while killing service backend")
        self._allocator.release(self._port)
        self._port = None

    def _reset_wiring(self) -> None:
        self._wired = False
        self._app = None
        self._context = None

    def _teardown(self) -> None:
        self._backend = None
        self._allocator.release(self._port)
        self._port = None
        self._reset_wiring()
        self._withdraw_announcement()
        self._instance = None
        self._set_state(ServiceState.STOPPED)

    def _set_state(self, new: ServiceState) -> None:
        old = self._state
        self._state = new
        if self._instance is not None:
            self._instance.state = new
        if old is not new and self._on_transition is not None:
            self._on_transition(old, new)

    def _announce(self, inst: ServiceInstance) -> None:
        if self._runtime_file is None:
            return
        payload = {
            "projectKey": inst.project_key,
            "port": inst.bound_port,
            "baseUrl": inst.base_url,
            "pid": os.getpid(),
            "startedAt": inst.started_at.isoformat() if inst.started_at else None,
        }
        try:
            self._runtime_file.parent.mkdir(parents=True, exist_ok=True)
            self._runtime_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            _log.warning("Could not write runtime file %s: %s", self._runtime_file, exc)

    def _withdraw_announcement(self) -> None:
        if self._runtime_file is None:
            return
        try:
            self._runtime_file.unlink(missing_ok=True)
        except OSError as exc:
            _log.warning("Could not remove runtime file %s: %s", self._runtime_file, exc)
