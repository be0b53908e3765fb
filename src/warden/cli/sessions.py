"""
CLI subcommands for managing sessions on a running server.

Usage:
    warden sessions list
    warden sessions start <name> [--webhook URL] [--phone NUMBER] [--proxy URL]
    warden sessions close <name> [--clear-data]
    warden sessions status <name>
"""

from typing import Optional

import typer

from warden.cli._http import _http_get, _http_post

sessions_app = typer.Typer(help="Manage sessions on the running server")

STATUS_ICONS = {
    "CONNECTED": "🟢",
    "QRCODE": "🟡",
    "PHONECODE": "🟡",
    "INITIALIZING": "🔵",
}


def _icon(status: str) -> str:
    return STATUS_ICONS.get(status, "🔴")


@sessions_app.command("list")
def sessions_list():
    """List stored and live sessions."""
    data = _http_get("/api/sessions")
    sessions = data.get("sessions", [])

    if not sessions:
        typer.echo("No sessions.")
        return

    typer.echo(f"📱 Sessions ({len(sessions)}):\n")
    for session in sessions:
        status = session.get("status", "CLOSED")
        typer.echo(f"  {_icon(status)} {session['session']}  {status}")


@sessions_app.command("start")
def sessions_start(
    name: str = typer.Argument(help="Session name"),
    webhook: Optional[str] = typer.Option(None, "--webhook", help="Webhook URL"),
    phone: Optional[str] = typer.Option(
        None, "--phone", help="Link by phone code instead of QR"
    ),
    proxy: Optional[str] = typer.Option(None, "--proxy", help="Proxy URL"),
):
    """Start (or resume) a session."""
    config = {}
    if webhook:
        config["webhook"] = webhook
    if phone:
        config["phone"] = phone
    if proxy:
        config["proxy"] = {"url": proxy}

    data = _http_post(f"/api/{name}/start-session", config)
    typer.echo(f"✅ {name}: {data.get('status', 'INITIALIZING')}")


@sessions_app.command("close")
def sessions_close(
    name: str = typer.Argument(help="Session name"),
    clear_data: bool = typer.Option(
        False, "--clear-data", help="Also delete the token and profile snapshot"
    ),
):
    """Close a running session."""
    suffix = "?clear_data=true" if clear_data else ""
    _http_post(f"/api/{name}/close-session{suffix}")
    typer.echo(f"✅ {name} closed")


@sessions_app.command("status")
def sessions_status(name: str = typer.Argument(help="Session name")):
    """Show a session's status."""
    data = _http_get(f"/api/{name}/status-session")
    status = data.get("status", "CLOSED")

    typer.echo(f"{_icon(status)} {name}: {status}")
    if data.get("urlcode"):
        typer.echo(f"   QR code: {data['urlcode']}")
    if data.get("phone_code"):
        typer.echo(f"   Link code: {data['phone_code']}")
