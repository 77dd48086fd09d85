"""
Keeps the UI surface in step with the stored token for a project.

One ``reconcile`` pass:

1. returns at once if another pass is in progress;
2. counts a navigation and gives up if the per-project budget is spent,
   leaving the UI on whatever it shows (loop breaker);
3. makes sure the service is running;
4. with no stored token, sends the UI to the login entry
   (``reason=token_invalid_or_missing``);
5. otherwise checks the token remotely unless it is the token last
   confirmed by the service; a rejected token is cleared and the UI goes
   to the login entry;
6. a valid token that has not been injected yet (and while the injection
   budget lasts) is injected after loading the authenticated entry.

A timed-out or unreachable validation counts as valid: a network hiccup
should not force a re-login.  That is an availability policy, not a
security property; the service remains the authority on every request.

Counters live on an ``InjectionSession`` kept per project until ``reset``
or a switch to another project.

Nothing escapes ``reconcile``.  Port and lifecycle errors are handed to
``on_service_error`` (the shell shows ``user_message()``); anything else is
logged and the UI stays where it is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import urlencode

from desktop.config import (
    AUTHENTICATED_ENTRY,
    MAX_INJECTION_ATTEMPTS,
    MAX_NAVIGATIONS,
    REASON_INJECTION_FAILED,
    REASON_TOKEN_INVALID,
    UI_READY_TIMEOUT,
    UNAUTHENTICATED_ENTRY,
)
from desktop.credentials import CredentialStore, token_preview
from desktop.errors import (
    DesktopError,
    InjectionFailed,
    LifecycleError,
    NavigationTimeout,
    PortError,
    ValidationTimeout,
    ValidationUnauthorized,
)
from desktop.lifecycle import ServiceLifecycleManager
from desktop.surface import UISurface
from desktop.validation import TokenValidator

_log = logging.getLogger(__name__)


@dataclass
class InjectionSession:
    project_key: str
    max_attempts: int = MAX_INJECTION_ATTEMPTS
    max_navigations: int = MAX_NAVIGATIONS
    attempted_token: str | None = None
    attempt_count: int = 0
    navigation_count: int = 0
    last_injected: str | None = None
    last_validated: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.navigation_count > self.max_navigations


class SessionOrchestrator:
    def __init__(
        self,
        credentials: CredentialStore,
        lifecycle: ServiceLifecycleManager,
        surface: UISurface,
        validator: TokenValidator | None = None,
        *,
        workdir_for: Callable[[str], Path] = Path,
        max_navigations: int = MAX_NAVIGATIONS,
        max_attempts: int = MAX_INJECTION_ATTEMPTS,
        ready_timeout: float = UI_READY_TIMEOUT,
        on_service_error: Callable[[DesktopError], None] | None = None,
    ) -> None:
        self._credentials = credentials
        self._lifecycle = lifecycle
        self._surface = surface
        self._validator = validator or TokenValidator()
        self._workdir_for = workdir_for
        self._max_navigations = max_navigations
        self._max_attempts = max_attempts
        self._ready_timeout = ready_timeout
        # The shell's error dialog; start failures carry user_message().
        self._on_service_error = on_service_error

        self._in_progress = False
        self._session: InjectionSession | None = None

    @property
    def session(self) -> InjectionSession | None:
        return self._session

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def reset(self) -> None:
        """Forget counters and cached tokens, e.g. when a project is reopened."""
        self._session = None

    def _session_for(self, project_key: str) -> InjectionSession:
        if self._session is None or self._session.project_key != project_key:
            self._session = InjectionSession(
                project_key=project_key,
                max_attempts=self._max_attempts,
                max_navigations=self._max_navigations,
            )
        return self._session

    async def reconcile(self, project_key: str) -> None:
        if self._in_progress:
            _log.info("Reconciliation already running, ignoring request for %s", project_key)
            return
        self._in_progress = True
        try:
            await self._reconcile(project_key)
        except (PortError, LifecycleError) as exc:
            _log.error("Service for %s unavailable: %s", project_key, exc)
            if self._on_service_error is not None:
                self._on_service_error(exc)
        except Exception:
            _log.exception("Reconciliation for %s failed, leaving the UI in place", project_key)
        finally:
            self._in_progress = False

    async def watch_navigation(self, project_key: str, timeout: float) -> str | None:
        """Wait for one in-page navigation and reconcile after it."""
        try:
            url = await self._surface.await_navigation(timeout)
        except NavigationTimeout:
            return None
        _log.debug("In-page navigation to %s", url)
        await self.reconcile(project_key)
        return url

    # ── The pass ──

    async def _reconcile(self, project_key: str) -> None:
        session = self._session_for(project_key)
        session.navigation_count += 1
        if session.exhausted:
            _log.warning(
                "Navigation budget for %s spent (%d), not navigating again",
                project_key, session.max_navigations,
            )
            return

        instance = await self._lifecycle.ensure_running(project_key, self._workdir_for(project_key))
        base_url = instance.base_url
        if base_url is None:
            raise LifecycleError(f"Service for {project_key} is running without an address")

        token = self._credentials.get(project_key)
        if token is None:
            _log.info("No stored token for %s, user has to log in", project_key)
            await self._surface.navigate(self._login_url(base_url, REASON_TOKEN_INVALID))
            return

        if not await self._token_is_valid(session, base_url, token):
            self._credentials.clear(project_key)
            await self._surface.navigate(self._login_url(base_url, REASON_TOKEN_INVALID))
            return

        if token == session.last_injected:
            _log.info("Token %s already injected, nothing to do", token_preview(token))
            return
        if session.attempt_count >= session.max_attempts:
            _log.warning("Injection attempts for %s exhausted", project_key)
            await self._surface.navigate(self._login_url(base_url, REASON_INJECTION_FAILED))
            return

        await self._surface.navigate(f"{base_url}{AUTHENTICATED_ENTRY}")
        try:
            await self._surface.await_ready(self._ready_timeout)
        except NavigationTimeout as exc:
            _log.warning("%s; injecting anyway", exc)

        session.attempt_count += 1
        session.attempted_token = token
        try:
            await self._inject(token)
        except InjectionFailed as exc:
            # Retrying is left to the next external trigger.
            _log.warning("Token injection for %s failed: %s", project_key, exc)
            return
        session.last_injected = token
        _log.info("Injected token %s for %s", token_preview(token), project_key)

    async def _token_is_valid(self, session: InjectionSession, base_url: str, token: str) -> bool:
        if token == session.last_validated:
            return True
        project_key = session.project_key
        try:
            await self._validator.check(base_url, token)
        except ValidationUnauthorized as exc:
            _log.info("Token for %s rejected: %s", project_key, exc)
            session.last_validated = None
            self._credentials.record_validation(project_key, False)
            return False
        except ValidationTimeout as exc:
            _log.warning("No validation verdict for %s (%s), assuming token is valid", project_key, exc)
            return True
        session.last_validated = token
        self._credentials.record_validation(project_key, True)
        return True

    async def _inject(self, token: str) -> None:
        try:
            result = await self._surface.inject_token(token)
        except InjectionFailed:
            raise
        except Exception as exc:
            raise InjectionFailed(f"UI surface raised during injection: {exc}") from exc
        if not result.success:
            raise InjectionFailed(result.message or "surface reported failure")

    @staticmethod
    def _login_url(base_url: str, reason: str) -> str:
        return f"{base_url}{UNAUTHENTICATED_ENTRY}?{urlencode({'reason': reason})}"
