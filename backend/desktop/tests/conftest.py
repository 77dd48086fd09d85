"""Shared pytest fixtures for the desktop core and the embedded service.

Provides:
- credentials: CredentialStore over an in-memory key-value store
- service_context: ServiceContext for a project under tmp_path
- test_client: TestClient over create_app(service_context)
- backends: FakeBackendFactory for lifecycle tests
- make_manager: builds a ServiceLifecycleManager wired to fakes
"""

from __future__ import annotations

from pathlib import Path

import pytest
from starlette.testclient import TestClient

from app.main import create_app
from app.state import ServiceContext
from desktop.credentials import CredentialStore, MemoryStore
from desktop.lifecycle import ServiceLifecycleManager
from desktop.ports import PortAllocator
from desktop.retry import RetryPolicy
from desktop.tests.fakes import PROJECT_KEY, FakeBackendFactory, always_live, no_sleep


# ── Credentials & service ──────────────────────────────────────────────────

@pytest.fixture()
def credentials() -> CredentialStore:
    return CredentialStore(MemoryStore())

@pytest.fixture()
def service_context(tmp_path: Path, credentials: CredentialStore) -> ServiceContext:
    return ServiceContext(
        project_key=PROJECT_KEY,
        working_directory=tmp_path / "blog",
        credentials=credentials,
        port=4000,
    )

@pytest.fixture()
def test_client(service_context: ServiceContext):
    with TestClient(create_app(service_context)) as client:
        yield client

# ── Lifecycle ──────────────────────────────────────────────────────────────

@pytest.fixture()
def backends() -> FakeBackendFactory:
    return FakeBackendFactory()

@pytest.fixture()
def make_manager(backends: FakeBackendFactory, credentials: CredentialStore):
    """Factory for managers that never open sockets or sleep for real."""

    def _make(**overrides) -> ServiceLifecycleManager:
        kwargs = dict(
            credentials=credentials,
            backend_factory=backends,
            liveness_probe=always_live,
            sleep=no_sleep,
        )
        kwargs.update(overrides)
        allocator = kwargs.pop("allocator", None) or PortAllocator(
            dynamic_policy=RetryPolicy(max_attempts=3, backoff=(1.0,), sleep=no_sleep),
        )
        preferred = kwargs.pop("preferred_ports", [])
        return ServiceLifecycleManager(allocator, preferred, **kwargs)

    return _make
