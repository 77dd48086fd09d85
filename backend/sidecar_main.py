"""
pressdesk – desktop shell sidecar entry point.

The desktop shell spawns this module (or the frozen binary built from it)
once per opened project.  During development the service can also be run on
its own with ``uvicorn app.main:app --reload``, without a project.

Startup protocol:
  1. Settings are read from the environment (``DesktopSettings.from_env``).
  2. The lifecycle manager picks a loopback port (preferred ports first,
     OS-assigned as a fallback), starts the embedded service on it and waits
     until ``/api/desktop/status`` answers.
  3. "PORT:{port}" is printed to stdout (flushed) so the shell knows where to
     point the webview.  The same information is written to runtime.json in
     the data directory for tools that attach later.
  4. The process serves until SIGINT/SIGTERM, then stops the service and
     removes runtime.json.

A start failure prints "ERROR:{message}" (the user-facing text) and exits 1.

Environment variables set by the shell before spawning this process:
  PRESSDESK_DATA_DIR       – user-data directory (token store, runtime.json)
  PRESSDESK_PORTS          – comma-separated preferred ports
  PRESSDESK_REQUIRE_LOGIN  – "0" to serve the project without login
  PRESSDESK_LOG_LEVEL      – logging level (default INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# ── Static import so PyInstaller walks the full dependency tree ──────────────
# The lifecycle manager builds the service through app.main.create_app; the
# import here keeps fastapi, starlette and pydantic in the frozen bundle.
from app.main import create_app  # noqa: E402
from desktop.config import DesktopSettings
from desktop.credentials import CredentialStore, JsonFileStore
from desktop.errors import DesktopError
from desktop.lifecycle import ServiceLifecycleManager
from desktop.ports import PortAllocator

_log = logging.getLogger("pressdesk.sidecar")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pressdesk-sidecar")
    parser.add_argument("--project", required=True, type=Path, help="project working directory")
    parser.add_argument("--project-key", default=None, help="defaults to the resolved project path")
    return parser.parse_args(argv)


def build_manager(settings: DesktopSettings) -> ServiceLifecycleManager:
    credentials = CredentialStore(JsonFileStore(settings.store_path))
    return ServiceLifecycleManager(
        PortAllocator(),
        settings.ports,
        credentials=credentials,
        require_login=settings.require_login,
        app_factory=create_app,
        runtime_file=settings.runtime_path,
    )


async def _serve(project_key: str, working_directory: Path, settings: DesktopSettings) -> int:
    manager = build_manager(settings)
    try:
        instance = await manager.ensure_running(project_key, working_directory)
    except DesktopError as exc:
        _log.error("Could not start service: %s", exc)
        print("ERROR:" + exc.user_message().replace("\n", " "), flush=True)
        return 1

    # Signal the shell with the bound port.
    print(f"PORT:{instance.bound_port}", flush=True)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows event loops cannot install signal handlers.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_requested.set))

    await stop_requested.wait()
    _log.info("Stop requested, shutting down")
    await manager.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = DesktopSettings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    working_directory = args.project.expanduser().resolve()
    project_key = args.project_key or str(working_directory)
    return asyncio.run(_serve(project_key, working_directory, settings))


if __name__ == "__main__":
    sys.exit(main())
