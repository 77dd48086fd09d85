"""Orchestration routes: status, auth-check, token capture, validation, project info."""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException
from fastapi.responses import JSONResponse

from app.schemas import (
    AuthCheckResponse,
    ProjectInfoResponse,
    SaveTokenRequest,
    SaveTokenResponse,
    StatusResponse,
    ValidateResponse,
)
from app.state import ServiceContext, get_context
from desktop.credentials import is_token_shaped, token_preview
from desktop.errors import InvalidTokenShape

_log = logging.getLogger(__name__)

router = APIRouter()


def _save_token_error(status_code: int, message: str) -> JSONResponse:
    body = SaveTokenResponse(success=False, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


async def _persist_token(context: ServiceContext, project_key: str, token: str) -> None:
    """Runs after the response has been sent, on the event loop like every other store write."""
    if context.credentials is None:
        _log.error("No credential store attached, dropping token for %s", project_key)
        return
    try:
        context.credentials.set(project_key, token)
    except (InvalidTokenShape, OSError):
        _log.exception("Persisting token for %s failed", project_key)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


# ── Status ──────────────────────────────────────────────────────────────────

@router.get("/status", response_model=StatusResponse)
def get_status(context: ServiceContext = Depends(get_context)) -> StatusResponse:
    return StatusResponse(
        running=True,
        project_key=context.project_key,
        port=context.port,
        has_project=context.has_project,
    )


@router.get("/project-info", response_model=ProjectInfoResponse)
def get_project_info(context: ServiceContext = Depends(get_context)) -> ProjectInfoResponse:
    if context.project_key is None:
        raise HTTPException(status_code=404, detail="No project loaded")
    workdir = context.working_directory or Path(context.project_key)
    return ProjectInfoResponse(
        project_key=context.project_key,
        project_name=workdir.name or str(workdir),
        working_directory=str(workdir),
    )


# ── Auth ────────────────────────────────────────────────────────────────────

@router.get("/auth-check", response_model=AuthCheckResponse)
def auth_check(context: ServiceContext = Depends(get_context)) -> AuthCheckResponse:
    return AuthCheckResponse(needs_auth=context.require_login)


@router.get("/validate", response_model=ValidateResponse)
def validate_token(
    authorization: str | None = Header(default=None),
    context: ServiceContext = Depends(get_context),
) -> ValidateResponse:
    if not context.require_login:
        return ValidateResponse(valid=True)
    token = _bearer_token(authorization)
    if token is None or not is_token_shaped(token) or not context.verify_token(token):
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return ValidateResponse(valid=True)


@router.post("/save-token", response_model=SaveTokenResponse)
def save_token(
    req: SaveTokenRequest,
    background_tasks: BackgroundTasks,
    context: ServiceContext = Depends(get_context),
):
    token = req.token
    if not token:
        return _save_token_error(400, "Missing token")
    if not is_token_shaped(token):
        _log.warning("Rejected malformed token from UI: %s", token_preview(token))
        return _save_token_error(400, "Invalid token format: expected three dot-separated segments")
    if context.project_key is None:
        return _save_token_error(400, "No project loaded")
    if context.credentials is None:
        return _save_token_error(500, "Credential store unavailable")

    background_tasks.add_task(_persist_token, context, context.project_key, token)
    _log.info("Accepted token for %s: %s", context.project_key, token_preview(token))
    return SaveTokenResponse(success=True, message="Token save request accepted")
