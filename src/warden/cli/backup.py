"""
CLI subcommands for bulk session backup.

Usage:
    warden backup export [--output FILE]
    warden backup import <FILE>
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from warden.cli._http import _http_download, _http_upload

backup_app = typer.Typer(help="Export or import all sessions as a zip bundle")


@backup_app.command("export")
def backup_export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Target zip file"),
):
    """Download every session. Sessions restart once the download completes."""
    if output is None:
        output = Path(f"backupSessions_{datetime.now():%Y%m%d_%H%M%S}.zip")

    _http_download("/api/backup-sessions", output)
    typer.echo(f"✅ Sessions exported to {output}")


@backup_app.command("import")
def backup_import(
    archive: Path = typer.Argument(help="Zip file made by 'warden backup export'"),
):
    """Restore sessions from a bundle and restart them."""
    if not archive.is_file():
        typer.echo(f"❌ File not found: {archive}")
        raise typer.Exit(code=1)

    data = _http_upload("/api/restore-sessions", archive)
    sessions = data.get("sessions", [])
    typer.echo(f"✅ Restored {len(sessions)} sessions")
    for name in sessions:
        typer.echo(f"  • {name}")
