"""
Shared HTTP helpers for CLI commands that talk to the running server.
"""

import os
from pathlib import Path
from typing import Optional

import typer


def get_server_url() -> str:
    """Get the server URL from environment or default."""
    explicit = os.getenv("WARDEN_SERVER_URL")
    if explicit:
        return explicit.rstrip("/")

    port = os.getenv("WARDEN_PORT", "21465")
    host = os.getenv("WARDEN_CLI_HOST", "localhost")
    return f"http://{host}:{port}"


def _fail(message: str):
    typer.echo(f"❌ {message}")
    raise typer.Exit(code=1)


def _error_detail(e) -> str:
    try:
        return e.response.json().get("error", str(e))
    except Exception:
        return f"{e.response.status_code}"


def _http_get(path: str) -> dict:
    """Make a GET request to the running server."""
    import httpx

    url = f"{get_server_url()}{path}"
    try:
        resp = httpx.get(url, timeout=10.0)
        resp.raise_for_status()
        return resp.json()
    except httpx.ConnectError:
        _fail("Cannot connect to warden server. Is it running?")
    except httpx.HTTPStatusError as e:
        _fail(f"Server error: {_error_detail(e)}")
    except httpx.HTTPError as e:
        _fail(f"Error: {e}")


def _http_post(path: str, data: Optional[dict] = None) -> dict:
    """Make a POST request to the running server."""
    import httpx

    url = f"{get_server_url()}{path}"
    try:
        resp = httpx.post(url, json=data or {}, timeout=30.0)
        resp.raise_for_status()
        return resp.json()
    except httpx.ConnectError:
        _fail("Cannot connect to warden server. Is it running?")
    except httpx.HTTPStatusError as e:
        _fail(f"Server error: {_error_detail(e)}")
    except httpx.HTTPError as e:
        _fail(f"Error: {e}")


def _http_download(path: str, target: Path) -> Path:
    """Stream a GET response into ``target``."""
    import httpx

    url = f"{get_server_url()}{path}"
    try:
        # Export stops every session first; allow it time
        with httpx.stream("GET", url, timeout=300.0) as resp:
            resp.raise_for_status()
            with open(target, "wb") as out:
                for chunk in resp.iter_bytes():
                    out.write(chunk)
        return target
    except httpx.ConnectError:
        _fail("Cannot connect to warden server. Is it running?")
    except httpx.HTTPStatusError as e:
        _fail(f"Server error: {e.response.status_code}")
    except httpx.HTTPError as e:
        _fail(f"Error: {e}")


def _http_upload(path: str, source: Path) -> dict:
    """POST a zip file as multipart field ``file``."""
    import httpx

    url = f"{get_server_url()}{path}"
    try:
        with open(source, "rb") as f:
            resp = httpx.post(
                url,
                files={"file": (source.name, f, "application/zip")},
                timeout=300.0,
            )
        resp.raise_for_status()
        return resp.json()
    except httpx.ConnectError:
        _fail("Cannot connect to warden server. Is it running?")
    except httpx.HTTPStatusError as e:
        _fail(f"Server error: {_error_detail(e)}")
    except httpx.HTTPError as e:
        _fail(f"Error: {e}")
