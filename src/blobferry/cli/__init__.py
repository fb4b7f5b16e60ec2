"""
blobferry CLI.

This package splits CLI commands into focused modules:
- main:     serve
- transfer: send, receive, status, cancel, remove, reshare
"""

import typer

from blobferry.cli._http import _http_delete, _http_get, _http_post  # noqa: F401 re-export for test patching
from blobferry.cli.main import configure_logging, register_commands
from blobferry.cli.transfer import register_transfer_commands

app = typer.Typer(help="blobferry - peer-to-peer file sharing")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    blobferry - peer-to-peer file sharing.
    """
    configure_logging(verbose)


register_commands(app)
register_transfer_commands(app)

if __name__ == "__main__":
    app()
