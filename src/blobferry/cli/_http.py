"""
Shared HTTP helpers for CLI commands that talk to the running server.
"""

import os

import typer


def get_server_url() -> str:
    """Get the server URL from environment or default."""
    url = os.getenv("BLOBFERRY_SERVER_URL")
    if url:
        return url.rstrip("/")

    port = os.getenv("BLOBFERRY_PORT") or "25400"
    host = os.getenv("BLOBFERRY_HOST", "127.0.0.1")
    return f"http://{host}:{port}"


def _error_detail(e) -> str:
    try:
        return e.response.json().get("error", str(e))
    except Exception:
        return str(e)


def _request(method: str, path: str, data: dict = None, timeout: float = 10.0) -> dict:
    import httpx

    url = f"{get_server_url()}{path}"
    try:
        if method in ("POST", "PUT"):
            resp = httpx.request(method, url, json=data or {}, timeout=timeout)
        else:
            resp = httpx.request(method, url, timeout=timeout)
        resp.raise_for_status()
        return resp.json()
    except httpx.ConnectError:
        typer.echo("❌ Cannot connect to blobferry server. Is it running?")
        raise typer.Exit(code=1)
    except httpx.HTTPStatusError as e:
        typer.echo(f"❌ Server error: {_error_detail(e)}")
        raise typer.Exit(code=1)
    except Exception as e:
        typer.echo(f"❌ Error: {e}")
        raise typer.Exit(code=1)


def _http_get(path: str) -> dict:
    """Make a GET request to the running server."""
    return _request("GET", path)


def _http_post(path: str, data: dict = None) -> dict:
    """Make a POST request to the running server."""
    return _request("POST", path, data, timeout=30.0)


def _http_delete(path: str) -> dict:
    """Make a DELETE request to the running server."""
    return _request("DELETE", path)
