"""
Top-level CLI commands: serve.
"""

import os
from typing import Optional

import typer


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from blobferry.logger import setup_logging

    log_level = "DEBUG" if verbose else "WARNING"
    setup_logging(level=log_level)

    if not verbose:
        os.environ["LOGURU_LEVEL"] = "WARNING"


def register_commands(app: typer.Typer):
    """Register top-level commands onto the app."""

    @app.command()
    def serve(
        host: Optional[str] = typer.Option(None, help="Host to bind to"),
        port: Optional[int] = typer.Option(None, help="Port to bind to"),
        debug: bool = typer.Option(False, "--debug", help="Run in debug mode"),
    ):
        """Start the transfer server."""
        from blobferry.config import CONFIG
        from blobferry.server import run

        host = host or CONFIG.settings.host
        port = port or CONFIG.settings.port
        typer.echo(f"🚀 Starting blobferry server on {host}:{port}...")

        try:
            run(host=host, port=port, debug=debug)
        except KeyboardInterrupt:
            typer.echo("\n🛑 Server stopped.")
        except Exception as e:
            typer.echo(f"❌ Server failed: {e}")
            raise typer.Exit(code=1)
