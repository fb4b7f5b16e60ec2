"""
Starlette server exposing the transfer coordinator over HTTP.

The coordinator is created in the lifespan hook (it needs a running event
loop), restores persisted sessions, and is shut down with the app.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route

from blobferry.config import CONFIG, Settings
from blobferry.logger import get_logger, setup_logging
from blobferry.routes.transfer_routes import (
    cancel_transfer,
    list_transfers,
    remove_transfer,
    reshare_transfer,
    start_receive,
    start_send,
    tray_status,
)
from blobferry.transfer.coordinator import TransferCoordinator
from blobferry.transfer.launcher import ProcessLauncher
from blobferry.transfer.store import JsonTransferStore, TransferStore

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    launcher: Optional[ProcessLauncher] = None,
    store: Optional[TransferStore] = None,
    restore: bool = True,
) -> Starlette:
    """
    Build the application.

    Args:
        settings: Settings to use (defaults to the global config).
        launcher: Process launcher override (tests inject a fake one).
        store: Persistence store (defaults to JSON files in the data dir).
        restore: Whether to reload persisted sessions on startup.
    """

    @asynccontextmanager
    async def lifespan(app: Starlette):
        active_settings = settings or CONFIG.settings
        active_store = store
        if active_store is None:
            active_store = JsonTransferStore(
                active_settings.data_dir, active_settings.downloads_dir
            )

        coordinator = TransferCoordinator(
            active_settings, launcher=launcher, store=active_store
        )
        app.state.coordinator = coordinator
        logger.info(
            f"Transfer system ready (binary: {coordinator.launcher.binary_path}, "
            f"max concurrent: {active_settings.max_concurrent})"
        )

        if restore:
            try:
                coordinator.restore()
            except Exception as e:
                logger.error(f"Failed to restore transfer sessions: {e}")

        try:
            yield
        finally:
            await coordinator.shutdown()
            app.state.coordinator = None

    return Starlette(
        debug=False,
        routes=[
            Route("/transfers", list_transfers, methods=["GET"]),
            Route("/transfers/tray", tray_status, methods=["GET"]),
            Route("/transfers/send", start_send, methods=["POST"]),
            Route("/transfers/receive", start_receive, methods=["POST"]),
            Route("/transfers/cancel", cancel_transfer, methods=["POST"]),
            Route("/transfers/{session_id}", remove_transfer, methods=["DELETE"]),
            Route(
                "/transfers/{session_id}/reshare", reshare_transfer, methods=["POST"]
            ),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
        lifespan=lifespan,
    )


def run(
    host: Optional[str] = None, port: Optional[int] = None, debug: bool = False
) -> None:
    """Run the server with uvicorn. Host and port default to the settings."""
    import uvicorn

    setup_logging(
        level="DEBUG" if debug else os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE"),
    )

    settings = CONFIG.settings
    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
