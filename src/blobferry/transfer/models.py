"""
Data models for transfer sessions.

``TransferSession`` is the in-memory record owned by the coordinator.
The pydantic models describe what leaves the process (status snapshots).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from blobferry.transfer.errors import InvalidTransitionError


class Direction(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class SessionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
)

# pending -> failed covers staging errors: the session never reached the scheduler.
ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.PENDING: frozenset(
        {SessionState.ACTIVE, SessionState.FAILED, SessionState.CANCELLED}
    ),
    SessionState.ACTIVE: frozenset(
        {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
    ),
    SessionState.COMPLETED: frozenset(),
    SessionState.FAILED: frozenset(),
    SessionState.CANCELLED: frozenset(),
}


class PayloadKind(str, Enum):
    ARCHIVE = "archive"
    BATCH = "batch"
    RAW = "raw"


CANCELLED_MESSAGE = "Cancelled"
LONG_TICKET_LENGTH = 20

Payload = Union[str, list[str]]


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class PeerProgress:
    """Progress of one remote peer downloading from a send session."""

    transferred: str
    total: str
    last_seen: float


@dataclass
class TransferSession:
    """
    One send or receive, from request to removal.

    ``handle`` and ``tracker`` are runtime collaborators owned exclusively
    by this session and never appear in snapshots.
    """

    direction: Direction
    id: str = field(default_factory=new_session_id)
    state: SessionState = SessionState.PENDING
    ticket: str = ""
    sources: list[str] = field(default_factory=list)
    payload: Optional[Payload] = None
    filename: str = ""
    force_zip: Optional[bool] = None
    source_folder_path: Optional[Payload] = None
    output_dir: Optional[str] = None

    progress: float = 0.0
    is_transferring: bool = False
    transferred_text: str = ""
    speed_text: str = "0 MB/s"
    connected: bool = False
    error: str = ""
    active_peers: dict[str, PeerProgress] = field(default_factory=dict)

    staging_suffix: Optional[str] = None
    staging_kind: Optional[PayloadKind] = None
    staged_path: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    output_buffer: str = ""

    handle: Any = field(default=None, repr=False, compare=False)
    tracker: Any = field(default=None, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, new_state: SessionState) -> None:
        """Move to ``new_state``, refusing anything the lifecycle forbids."""
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Session {self.id}: {self.state.value} -> {new_state.value} "
                "is not allowed"
            )
        self.state = new_state

    def set_ticket(self, ticket: str) -> bool:
        """Record the ticket once. Returns False if one was already set."""
        if self.ticket or not ticket:
            return False
        self.ticket = ticket
        return True

    def clear_activity(self) -> None:
        """Drop the live transfer indicators."""
        self.is_transferring = False
        self.transferred_text = ""
        self.speed_text = ""
        self.active_peers.clear()

    def append_output(self, chunk: str, limit: int, keep: int) -> None:
        self.output_buffer += chunk
        if len(self.output_buffer) > limit:
            self.output_buffer = self.output_buffer[-keep:]

    @property
    def display_name(self) -> str:
        if self.direction is Direction.RECEIVE:
            if self.filename:
                return PurePath(self.filename).name or self.filename
            if self.ticket:
                if len(self.ticket) > LONG_TICKET_LENGTH:
                    return f"Receiving: {self.ticket[:10]}..."
                return f"Receiving: {self.ticket}"
            return "Connecting..."

        if self.source_folder_path:
            folder = (
                self.source_folder_path[0]
                if isinstance(self.source_folder_path, list)
                else self.source_folder_path
            )
            return PurePath(folder).name or "Folder"
        if self.filename:
            return PurePath(self.filename).name or "File"
        return "File"

    def to_snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(
            id=self.id,
            direction=self.direction,
            state=self.state,
            active=self.state is SessionState.ACTIVE,
            ticket=self.ticket,
            sources=list(self.sources),
            payload=self.payload,
            filename=self.filename,
            display_name=self.display_name,
            force_zip=self.force_zip,
            source_folder_path=self.source_folder_path,
            output_dir=self.output_dir,
            progress=round(self.progress, 2),
            is_transferring=self.is_transferring,
            transferred_text=self.transferred_text,
            speed_text=self.speed_text,
            connected=self.connected,
            error=self.error,
            active_peers={
                peer_id: PeerSnapshot(
                    transferred=peer.transferred,
                    total=peer.total,
                    last_seen=peer.last_seen,
                )
                for peer_id, peer in self.active_peers.items()
            },
            staging_suffix=self.staging_suffix,
            created_at=self.created_at.isoformat(),
        )


# ─── Snapshots ───────────────────────────────────────────────────────


class PeerSnapshot(BaseModel):
    transferred: str
    total: str
    last_seen: float


class SessionSnapshot(BaseModel):
    """Everything a caller may see about a session (no process handle)."""

    id: str
    direction: Direction
    state: SessionState
    active: bool
    ticket: str
    sources: list[str] = Field(default_factory=list)
    payload: Optional[Payload] = None
    filename: str = ""
    display_name: str = ""
    force_zip: Optional[bool] = None
    source_folder_path: Optional[Payload] = None
    output_dir: Optional[str] = None
    progress: float = 0.0
    is_transferring: bool = False
    transferred_text: str = ""
    speed_text: str = ""
    connected: bool = False
    error: str = ""
    active_peers: dict[str, PeerSnapshot] = Field(default_factory=dict)
    staging_suffix: Optional[str] = None
    created_at: str


class StatusResponse(BaseModel):
    sessions: list[SessionSnapshot]
    count: int


class SendRequest(BaseModel):
    sources: list[str]
    force_zip: Optional[bool] = Field(default=None, alias="forceZip")
    source_folder_path: Optional[Payload] = Field(
        default=None, alias="sourceFolderPath"
    )

    model_config = {"populate_by_name": True}


class ReceiveRequest(BaseModel):
    ticket: str
    output_dir: Optional[str] = Field(default=None, alias="outputDir")

    model_config = {"populate_by_name": True}


class CancelRequest(BaseModel):
    id: Optional[str] = None
