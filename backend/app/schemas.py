"""Pydantic models defining the REST contract between the desktop shell and the service."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    # The shell and the web frontend speak camelCase JSON.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Status & auth ───────────────────────────────────────────────────────────

class StatusResponse(_CamelModel):
    running: bool
    project_key: str | None = None
    port: int
    has_project: bool


class AuthCheckResponse(_CamelModel):
    needs_auth: bool
    is_desktop: bool = True


class ValidateResponse(_CamelModel):
    valid: bool


# ── Token capture ───────────────────────────────────────────────────────────

class SaveTokenRequest(_CamelModel):
    token: str | None = None


class SaveTokenResponse(_CamelModel):
    success: bool
    message: str


# ── Project ─────────────────────────────────────────────────────────────────

class ProjectInfoResponse(_CamelModel):
    project_key: str
    project_name: str
    working_directory: str
