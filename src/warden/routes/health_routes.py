"""
Health check and monitoring endpoints.
"""

import time
from datetime import datetime

from starlette.requests import Request
from starlette.responses import JSONResponse

from warden.sessions.health import get_active_health_checker

start_time = time.time()


async def health_check(request: Request) -> JSONResponse:
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    registry = getattr(request.app.state, "registry", None)
    return JSONResponse({
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "uptime_seconds": int(time.time() - start_time),
        "connected_sessions": registry.connected_count if registry else 0,
    })


async def sessions_health(request: Request) -> JSONResponse:
    """Result of the last session health scan."""
    checker = get_active_health_checker()
    if checker is None:
        return JSONResponse({"error": "HealthChecker not running"}, status_code=503)
    return JSONResponse(checker.get_status())
