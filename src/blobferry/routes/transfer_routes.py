"""
Routes for transfer sessions.

Provides:
- POST   /transfers/send                  start a send
- POST   /transfers/receive               start a receive
- GET    /transfers                       status of every session
- GET    /transfers/tray                  compact "what is moving" summary
- POST   /transfers/cancel                cancel one or all sessions
- DELETE /transfers/{session_id}          remove a session
- POST   /transfers/{session_id}/reshare  re-stage a send with a new ticket
"""

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from blobferry.logger import get_logger
from blobferry.transfer.errors import InvalidRequestError, SessionNotFoundError
from blobferry.transfer.models import (
    CancelRequest,
    ReceiveRequest,
    SendRequest,
    StatusResponse,
)

logger = get_logger(__name__)


def _get_coordinator(request: Request):
    """Get the TransferCoordinator from app state."""
    return getattr(request.app.state, "coordinator", None)


def _not_ready() -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": "Transfer system not initialized"}, status_code=503
    )


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestError("Invalid JSON body")
    if not isinstance(body, dict):
        raise InvalidRequestError("JSON body must be an object")
    return body


async def start_send(request: Request) -> JSONResponse:
    """POST /transfers/send. Body: {"sources": [...], "forceZip": bool?}"""
    coordinator = _get_coordinator(request)
    if not coordinator:
        return _not_ready()

    try:
        send_req = SendRequest(**await _read_json(request))
        session_id = coordinator.start_send(
            send_req.sources, send_req.force_zip, send_req.source_folder_path
        )
    except ValidationError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    except InvalidRequestError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    return JSONResponse({"success": True, "id": session_id})


async def start_receive(request: Request) -> JSONResponse:
    """POST /transfers/receive. Body: {"ticket": "...", "outputDir": "..."?}"""
    coordinator = _get_coordinator(request)
    if not coordinator:
        return _not_ready()

    try:
        receive_req = ReceiveRequest(**await _read_json(request))
        session_id = coordinator.start_receive(
            receive_req.ticket, receive_req.output_dir
        )
    except ValidationError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    except InvalidRequestError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    return JSONResponse({"success": True, "id": session_id})


async def list_transfers(request: Request) -> JSONResponse:
    """GET /transfers: snapshot of every session."""
    coordinator = _get_coordinator(request)
    if not coordinator:
        return _not_ready()

    sessions = coordinator.get_status()
    resp = StatusResponse(sessions=sessions, count=len(sessions))
    return JSONResponse(resp.model_dump(mode="json"))


async def tray_status(request: Request) -> JSONResponse:
    """GET /transfers/tray: sessions currently moving data."""
    coordinator = _get_coordinator(request)
    if not coordinator:
        return _not_ready()
    return JSONResponse(coordinator.tray_status())


async def cancel_transfer(request: Request) -> JSONResponse:
    """POST /transfers/cancel. Body: {"id": "..."} or {} to cancel everything."""
    coordinator = _get_coordinator(request)
    if not coordinator:
        return _not_ready()

    try:
        cancel_req = CancelRequest(**await _read_json(request))
    except (ValidationError, InvalidRequestError) as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    found = coordinator.cancel(cancel_req.id)
    return JSONResponse({"success": True, "found": found})


async def remove_transfer(request: Request) -> JSONResponse:
    """DELETE /transfers/{session_id}"""
    coordinator = _get_coordinator(request)
    if not coordinator:
        return _not_ready()

    session_id = request.path_params.get("session_id", "")
    found = await coordinator.remove(session_id)
    return JSONResponse({"success": True, "found": found})


async def reshare_transfer(request: Request) -> JSONResponse:
    """POST /transfers/{session_id}/reshare"""
    coordinator = _get_coordinator(request)
    if not coordinator:
        return _not_ready()

    session_id = request.path_params.get("session_id", "")
    try:
        new_id = coordinator.reshare(session_id)
    except SessionNotFoundError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=404)
    except InvalidRequestError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    return JSONResponse({"success": True, "id": new_id})
