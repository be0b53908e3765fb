"""
Starlette-based web server for warden.

Endpoints:
- /api/{session}/start-session, /close-session, /status-session
- /api/sessions: stored and live sessions
- /api/backup-sessions, /api/restore-sessions: bulk export / import
- /health, /health/sessions
- /ws/events: live session events
"""

import os
import sys
from contextlib import asynccontextmanager
from typing import Callable, Optional

from dotenv import load_dotenv
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route, WebSocketRoute

from warden.client.base import RemoteClient
from warden.client.loader import load_client_driver
from warden.config import CONFIG, PROJECT_DIR, Settings
from warden.dispatch import EventDispatcher
from warden.logger import get_logger, setup_logging
from warden.routes.backup_routes import backup_sessions, restore_sessions
from warden.routes.event_routes import events_websocket_endpoint
from warden.routes.health_routes import health_check, sessions_health
from warden.routes.session_routes import (
    close_session,
    list_sessions,
    session_status,
    start_session,
)
from warden.sessions.bulk import BulkBackupManager
from warden.sessions.health import HealthChecker, terminate_process
from warden.sessions.registry import SessionRegistry
from warden.sessions.supervisor import SessionSupervisor
from warden.storage.paths import PathStore
from warden.storage.token_store import FileTokenStore

load_dotenv(PROJECT_DIR / ".env")

logger = get_logger(__name__)


def ensure_data_dirs(settings: Settings) -> None:
    """Create token and profile directories if they are missing."""
    for target in (settings.token_store_path, settings.user_data_dir):
        if not target.exists():
            target.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created directory: {target}")


def create_app(
    settings: Optional[Settings] = None,
    client: Optional[RemoteClient] = None,
    restart_process: Callable[[], None] = terminate_process,
) -> Starlette:
    """
    Build the application.

    Args:
        settings: Defaults to the process-wide ``CONFIG``.
        client: Remote client driver. When omitted, ``settings.client_driver``
            is imported on startup.
        restart_process: Called by the health checker after closing all
            sessions.
    """

    async def startup():
        logger.info("Application startup - initializing services")
        cfg = settings or CONFIG.settings
        ensure_data_dirs(cfg)

        driver = client
        if driver is None:
            if not cfg.client_driver:
                logger.error(
                    "No client driver configured (WARDEN_CLIENT_DRIVER); "
                    "sessions are disabled"
                )
                return
            try:
                driver = load_client_driver(cfg.client_driver, cfg)
            except Exception as e:
                logger.error(f"Failed to load client driver: {e}")
                return

        paths = PathStore(rm_max_retries=cfg.rm_max_retries)
        registry = SessionRegistry()
        token_store = FileTokenStore(cfg.token_store_path)
        dispatcher = EventDispatcher(default_webhook_url=cfg.webhook.url)
        supervisor = SessionSupervisor(
            driver, registry, token_store, dispatcher, cfg, path_store=paths
        )

        app.state.settings = cfg
        app.state.registry = registry
        app.state.dispatcher = dispatcher
        app.state.supervisor = supervisor
        app.state.bulk_backup = BulkBackupManager(
            supervisor, cfg.token_store_path, cfg.user_data_dir, path_store=paths
        )

        if cfg.start_all_on_boot:
            await supervisor.start_all()

        if cfg.health_check_enabled:
            checker = HealthChecker(
                registry,
                token_store,
                supervisor,
                interval_seconds=cfg.health_check_interval,
                restart_process=restart_process,
            )
            app.state.health_checker = checker
            await checker.start()

    async def shutdown():
        logger.info("Application shutdown - cleaning up services")
        state = app.state

        checker = getattr(state, "health_checker", None)
        if checker:
            await checker.stop()

        supervisor = getattr(state, "supervisor", None)
        if supervisor:
            try:
                await supervisor.close_all()
            except Exception as e:
                logger.error(f"Error closing sessions: {e}")

        dispatcher = getattr(state, "dispatcher", None)
        if dispatcher:
            await dispatcher.close()

    @asynccontextmanager
    async def lifespan(_app: Starlette):
        await startup()
        try:
            yield
        finally:
            await shutdown()

    app = Starlette(
        routes=[
            Route("/api/sessions", list_sessions, methods=["GET"]),
            Route("/api/backup-sessions", backup_sessions, methods=["GET"]),
            Route("/api/restore-sessions", restore_sessions, methods=["POST"]),
            Route("/api/{session}/start-session", start_session, methods=["POST"]),
            Route("/api/{session}/close-session", close_session, methods=["POST"]),
            Route("/api/{session}/status-session", session_status, methods=["GET"]),
            Route("/health", health_check, methods=["GET"]),
            Route("/health/sessions", sessions_health, methods=["GET"]),
            WebSocketRoute("/ws/events", events_websocket_endpoint),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
        lifespan=lifespan,
    )
    return app


def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Configure logging and serve the app with uvicorn."""
    import uvicorn

    cfg = CONFIG.settings
    if "--debug" in sys.argv:
        os.environ["WARDEN_LOG_LEVEL"] = "DEBUG"
    setup_logging(level=os.getenv("WARDEN_LOG_LEVEL", cfg.log_level), log_file=cfg.log_file)

    uvicorn.run(
        create_app(cfg),
        host=host or cfg.host,
        port=port or cfg.port,
        log_level="warning",
    )


if __name__ == "__main__":
    run()
