"""Contract of the UI surface (the webview window) the orchestrator drives.

The surface is owned by the shell; the core only calls these methods and
never touches rendering.  Waits are expressed as awaitables with explicit
timeouts rather than event callbacks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class InjectionResult:
    success: bool
    message: str = ""


class UISurface(Protocol):
    async def navigate(self, url: str) -> None:
        """Load ``url`` in the surface."""

    async def await_ready(self, timeout: float) -> None:
        """Return once the current page is ready; raise ``NavigationTimeout``."""

    async def await_navigation(self, timeout: float) -> str:
        """Return the URL of the next in-page navigation; raise ``NavigationTimeout``."""

    async def inject_token(self, token: str) -> InjectionResult:
        """Place ``token`` in the page's client-side store."""
