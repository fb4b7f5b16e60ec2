"""
Transfer session management.

- staging:     archive / batch-folder / as-is payload preparation
- launcher:    spawning the binary with pipe capture or log tailing
- parser:      turning binary output into session updates
- scheduler:   bounded-concurrency admission
- coordinator: session lifecycle and the public API
- store:       persisted session lists
"""

from blobferry.transfer.coordinator import TransferCoordinator
from blobferry.transfer.errors import (
    InvalidRequestError,
    SessionNotFoundError,
    SpawnError,
    StagingError,
    TransferError,
)
from blobferry.transfer.models import (
    Direction,
    SessionSnapshot,
    SessionState,
    TransferSession,
)
from blobferry.transfer.store import JsonTransferStore, MemoryTransferStore

__all__ = [
    "TransferCoordinator",
    "TransferError",
    "InvalidRequestError",
    "SessionNotFoundError",
    "SpawnError",
    "StagingError",
    "Direction",
    "SessionSnapshot",
    "SessionState",
    "TransferSession",
    "JsonTransferStore",
    "MemoryTransferStore",
]
