"""
Top-level CLI commands: start.
"""

import os
from typing import Optional

import typer


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from warden.logger import setup_logging

    log_level = "DEBUG" if verbose else "WARNING"
    setup_logging(level=log_level)
    if verbose:
        os.environ["WARDEN_LOG_LEVEL"] = "DEBUG"


def register_commands(app: typer.Typer):
    @app.command()
    def start(
        host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
        port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on"),
        driver: Optional[str] = typer.Option(
            None, "--driver", help="Remote client driver (package.module.Class)"
        ),
    ):
        """Start the warden server."""
        from warden.config import CONFIG

        if driver:
            CONFIG.override(CONFIG.settings.model_copy(update={"client_driver": driver}))

        settings = CONFIG.settings
        if not settings.client_driver:
            typer.echo("⚠️  No client driver configured; sessions will not start.")

        typer.echo(f"🚀 Starting warden on {host or settings.host}:{port or settings.port}")

        from warden.server import run

        run(host=host, port=port)
