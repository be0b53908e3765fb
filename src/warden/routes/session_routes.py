"""
Routes for starting, closing and inspecting sessions.
"""

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from warden.logger import get_logger
from warden.sessions.models import SessionConfig

logger = get_logger(__name__)


def _get_services(request):
    """Get the supervisor and registry from app state."""
    state = request.app.state
    return getattr(state, "supervisor", None), getattr(state, "registry", None)


def _not_initialized() -> JSONResponse:
    return JSONResponse({"error": "Session system not initialized"}, status_code=503)


async def start_session(request: Request) -> JSONResponse:
    """
    Start (or resume) a session in the background.

    Body: optional JSON ``SessionConfig``.
    """
    supervisor, registry = _get_services(request)
    if supervisor is None:
        return _not_initialized()

    name = request.path_params["session"]
    try:
        body = await request.json() if await request.body() else {}
        if not isinstance(body, dict):
            raise ValueError("Body must be a JSON object")
        config = SessionConfig(**body)
    except ValidationError as e:
        return JSONResponse({"error": f"Invalid session config: {e}"}, status_code=400)
    except ValueError:
        return JSONResponse({"error": "Body must be JSON"}, status_code=400)

    session = registry.get(name)
    if session is not None and session.is_running:
        return JSONResponse(session.to_dict())

    known = name in await supervisor.token_store.list_names()
    if not known and not await supervisor.can_create_new_instance():
        return JSONResponse(
            {"error": "Maximum number of sessions reached"}, status_code=429
        )

    supervisor.spawn(name, config)
    logger.info(f"[{name}] Start requested")
    return JSONResponse({"status": "INITIALIZING", "session": name}, status_code=202)


async def close_session(request: Request) -> JSONResponse:
    supervisor, _ = _get_services(request)
    if supervisor is None:
        return _not_initialized()

    name = request.path_params["session"]
    clear = request.query_params.get("clear_data", "false").lower() == "true"
    try:
        closed = await supervisor.close(name, discard_snapshot=clear)
        removed = await supervisor.token_store.remove(name) if clear else False
    except Exception as e:
        logger.error(f"[{name}] Error closing session: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)

    if not closed and not removed:
        return JSONResponse({"error": f"Session {name} is not running"}, status_code=404)
    return JSONResponse({"status": "CLOSED", "session": name})


async def session_status(request: Request) -> JSONResponse:
    _, registry = _get_services(request)
    if registry is None:
        return _not_initialized()

    name = request.path_params["session"]
    session = registry.get(name)
    if session is None:
        return JSONResponse({"session": name, "status": "CLOSED", "qrcode": None})
    return JSONResponse(session.to_dict())


async def list_sessions(request: Request) -> JSONResponse:
    supervisor, registry = _get_services(request)
    if supervisor is None:
        return _not_initialized()

    stored = await supervisor.token_store.list_names()
    live = {s["session"]: s for s in registry.list_sessions()}
    sessions = [live.get(name, {"session": name, "status": "CLOSED"}) for name in stored]
    sessions.extend(s for name, s in live.items() if name not in stored)
    return JSONResponse({"sessions": sessions, "count": len(sessions)})
