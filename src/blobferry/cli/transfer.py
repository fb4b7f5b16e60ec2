"""
CLI commands for transfer sessions.

Usage:
    blobferry send PATHS... [--zip/--no-zip]
    blobferry receive TICKET [--output DIR]
    blobferry status
    blobferry cancel [ID]
    blobferry remove ID
    blobferry reshare ID
"""

import os
from typing import Optional

import typer

from blobferry.cli._http import _http_delete, _http_get, _http_post

STATE_ICONS = {
    "pending": "⏳",
    "active": "🔄",
    "completed": "✅",
    "failed": "❌",
    "cancelled": "🚫",
}


def _format_session(session: dict) -> str:
    icon = STATE_ICONS.get(session.get("state"), "•")
    arrow = "↑" if session.get("direction") == "send" else "↓"
    name = session.get("display_name") or session.get("filename") or session["id"]
    line = f"  {icon} {arrow} {name} [{session['id']}] {session.get('state')}"

    if session.get("state") == "active":
        line += f" {session.get('progress', 0):.1f}%"
        if session.get("is_transferring"):
            line += f" {session.get('transferred_text', '')} @ {session.get('speed_text', '')}"
    if session.get("ticket"):
        line += f"\n     Ticket: {session['ticket']}"
    if session.get("error"):
        line += f"\n     Error: {session['error']}"
    return line


def register_transfer_commands(app: typer.Typer):
    """Register transfer commands onto the app."""

    @app.command()
    def send(
        paths: list[str] = typer.Argument(help="Files or folders to share"),
        zip_: Optional[bool] = typer.Option(
            None, "--zip/--no-zip", help="Force (or forbid) packing into an archive"
        ),
    ):
        """Share files or folders."""
        sources = [os.path.abspath(p) for p in paths]
        missing = [p for p in sources if not os.path.exists(p)]
        if missing:
            typer.echo(f"❌ Not found: {', '.join(missing)}")
            raise typer.Exit(code=1)

        payload = {"sources": sources}
        if zip_ is not None:
            payload["forceZip"] = zip_
        data = _http_post("/transfers/send", payload)
        typer.echo(f"📤 Send session started: {data['id']}")
        typer.echo("   Run `blobferry status` to see the ticket once it is ready.")

    @app.command()
    def receive(
        ticket: str = typer.Argument(help="Ticket shared by the sender"),
        output: Optional[str] = typer.Option(
            None, "--output", "-o", help="Directory to save into"
        ),
    ):
        """Download a share by its ticket."""
        payload = {"ticket": ticket}
        if output:
            payload["outputDir"] = os.path.abspath(output)
        data = _http_post("/transfers/receive", payload)
        typer.echo(f"📥 Receive session started: {data['id']}")

    @app.command()
    def status():
        """Show every transfer session."""
        data = _http_get("/transfers")
        sessions = data.get("sessions", [])

        if not sessions:
            typer.echo("No transfer sessions.")
            return

        typer.echo(f"📦 Transfer sessions ({len(sessions)}):\n")
        for session in sessions:
            typer.echo(_format_session(session))

    @app.command()
    def cancel(
        session_id: Optional[str] = typer.Argument(
            None, help="Session to cancel (all pending/active when omitted)"
        ),
    ):
        """Cancel one session, or all of them."""
        payload = {"id": session_id} if session_id else {}
        data = _http_post("/transfers/cancel", payload)

        if session_id and not data.get("found", True):
            typer.echo(f"⚠️  No session {session_id}")
            return
        typer.echo(f"🚫 Cancelled {session_id or 'all active transfers'}")

    @app.command()
    def remove(session_id: str = typer.Argument(help="Session to remove")):
        """Remove a session and clean up its files."""
        data = _http_delete(f"/transfers/{session_id}")

        if not data.get("found", True):
            typer.echo(f"⚠️  No session {session_id}")
            return
        typer.echo(f"🗑️  Removed {session_id}")

    @app.command()
    def reshare(session_id: str = typer.Argument(help="Send session to re-share")):
        """Re-stage a share under a new ticket."""
        data = _http_post(f"/transfers/{session_id}/reshare")
        typer.echo(f"📤 Re-shared as {data['id']}")
