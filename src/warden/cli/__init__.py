"""
Warden CLI.

This package splits CLI commands into focused modules:
- main:     start
- sessions: list, start, close, status
- backup:   export, import
"""

import typer

from warden.cli.backup import backup_app
from warden.cli.main import configure_logging, register_commands
from warden.cli.sessions import sessions_app

app = typer.Typer(help="Warden - session supervisor for automated messaging clients")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    Warden - session supervisor for automated messaging clients.
    """
    configure_logging(verbose)


register_commands(app)

app.add_typer(sessions_app, name="sessions")
app.add_typer(backup_app, name="backup")

if __name__ == "__main__":
    app()
