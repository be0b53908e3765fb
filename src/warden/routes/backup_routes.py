"""
Bulk backup routes: download every session as a zip, or restore from one.
"""

import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path

from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response

from warden.errors import InvalidBundleError
from warden.logger import get_logger

logger = get_logger(__name__)


def _get_manager(request):
    return getattr(request.app.state, "bulk_backup", None)


async def backup_sessions(request: Request) -> Response:
    """
    Stop all sessions and stream them as a zip archive.
    Sessions are restarted once the download completes.
    """
    manager = _get_manager(request)
    if manager is None:
        return JSONResponse({"error": "Backup system not initialized"}, status_code=503)

    try:
        archive = await manager.export_archive()
    except Exception as e:
        logger.error(f"Error exporting sessions: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return FileResponse(
        archive,
        media_type="application/zip",
        filename=f"backupSessions_{timestamp}.zip",
        background=BackgroundTask(manager.finish_export, archive),
    )


async def restore_sessions(request: Request) -> JSONResponse:
    """
    Restore sessions from an uploaded zip.

    Form field: ``file``.
    """
    manager = _get_manager(request)
    if manager is None:
        return JSONResponse({"error": "Backup system not initialized"}, status_code=503)

    form = await request.form()
    upload = form.get("file")
    if upload is None or not hasattr(upload, "read"):
        return JSONResponse({"error": "Please, send zipped file"}, status_code=400)

    fd, name = tempfile.mkstemp(suffix=".zip")
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as out:
            shutil.copyfileobj(upload.file, out)
        result = await manager.import_archive(path, content_type=upload.content_type)
        return JSONResponse(result)
    except InvalidBundleError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except Exception as e:
        logger.error(f"Error restoring sessions: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)
    finally:
        path.unlink(missing_ok=True)
        await upload.close()
