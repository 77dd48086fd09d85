"""
Embedded service – FastAPI application the desktop shell starts per project.

=== ROLE IN THE SYSTEM ===
The desktop core (``desktop.lifecycle``) builds one application per service
instance with ``create_app`` and serves it on a loopback port.  The shell and
the web frontend talk to it for orchestration only:

  GET  /status        – liveness and which project is loaded
  GET  /auth-check    – whether the project requires login
  POST /save-token    – the frontend hands over a token after login
  GET  /validate      – bearer-token check used before token injection
  GET  /project-info  – project key / name / directory

Every route is mounted under ``/api/desktop`` and, for older frontends, at
the bare path as well.

The content-management request handlers themselves are not part of this
package.

Module-level ``app`` is a project-less instance (status reports
``hasProject=false``) for running the service standalone:
``uvicorn app.main:app``.
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.routers.desktop import router as desktop_router
from app.state import ServiceContext
from desktop.config import API_PREFIX


def create_app(context: ServiceContext) -> FastAPI:
    service = FastAPI(title="pressdesk embedded service")
    service.state.context = context

    # Only the local webview and loopback tooling ever call us.
    service.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    service.include_router(desktop_router, prefix=API_PREFIX)
    service.include_router(desktop_router, include_in_schema=False)
    return service


app = create_app(ServiceContext())
