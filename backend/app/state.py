"""
Per-instance state of the embedded service.

Everything a request handler needs lives on one ``ServiceContext`` attached to
``app.state.context`` by ``create_app``.  The lifecycle manager that owns the
instance is the only writer; handlers read it through ``get_context``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from fastapi import Request

from desktop.credentials import CredentialStore, is_token_shaped


@dataclass
class ServiceContext:
    project_key: str | None = None
    working_directory: Path | None = None
    credentials: CredentialStore | None = None
    require_login: bool = True
    # Authentication decisions belong to the backend; the default only
    # checks the token shape.
    verify_token: Callable[[str], bool] = is_token_shaped
    port: int = 0
    started_at: datetime | None = None

    @property
    def has_project(self) -> bool:
        return self.project_key is not None


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context
