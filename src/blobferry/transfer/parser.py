"""
Progress parsing for transfer binary output.

The binary has no structured output, so state is inferred from its
human-readable text. ``parse_line`` turns one line into a ``LineEvent``
and has no side effects. ``ProgressTracker`` applies events to a session
and owns the debounce/idle timers that infer "transfer finished" and
"peer left" from silence.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from blobferry.logger import get_logger
from blobferry.transfer.models import Direction, PeerProgress, TransferSession

logger = get_logger(__name__)

ANSI_ESCAPE_RE = re.compile(r"\x1B\[[0-9;?]*[a-zA-Z]")
LINE_SPLIT_RE = re.compile(r"[\r\n]+")
TICKET_RE = re.compile(r"(blob[a-z0-9]{40,})", re.IGNORECASE)
CONNECTED_RE = re.compile(r"\bconnected\b", re.IGNORECASE)
SPEED_RE = re.compile(r"(\d+(?:\.\d+)?\s*[KMG]i?B/s)", re.IGNORECASE)
AMOUNT_PAIR_RE = re.compile(
    r"(\d[\d.]*\s*[A-Za-z]+)\s*/\s*(\d[\d.]*\s*[A-Za-z]+)"
)
PEER_RE = re.compile(r"^n\s+([a-f0-9]{10})\s+r\s+", re.IGNORECASE)
AMOUNT_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")

_UNIT_FACTORS = {
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


@dataclass
class LineEvent:
    """Everything recognised on one cleaned line."""

    text: str
    ticket: Optional[str] = None
    connected: bool = False
    speed: Optional[str] = None
    transferred: Optional[str] = None
    total: Optional[str] = None
    peer_id: Optional[str] = None

    @property
    def has_amounts(self) -> bool:
        return self.transferred is not None and self.total is not None

    @property
    def rendered_amounts(self) -> str:
        return f"{self.transferred} / {self.total}"


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)


def split_lines(chunk: str) -> Iterator[str]:
    for line in LINE_SPLIT_RE.split(chunk):
        if line:
            yield line


def parse_amount(text: str) -> Optional[float]:
    """
    Convert ``"12.3 MiB"`` to a number of bytes.

    Unknown units keep the raw number so that two amounts in the same
    unknown unit still divide correctly.
    """
    match = AMOUNT_RE.match(text)
    if not match:
        return None
    try:
        value = float(match.group(1))
    except ValueError:
        return None
    factor = _UNIT_FACTORS.get(match.group(2).lower(), 1)
    return value * factor


def compute_percent(transferred: str, total: str) -> Optional[float]:
    """Percentage of ``transferred`` over ``total``, clamped to 100."""
    current_val = parse_amount(transferred)
    total_val = parse_amount(total)
    if current_val is None or total_val is None or total_val <= 0:
        return None
    return min(current_val / total_val * 100, 100.0)


def parse_line(line: str, direction: Direction) -> Optional[LineEvent]:
    """
    Parse one raw output line.

    Returns None for lines that are blank once escape sequences are
    removed. A line that matches nothing yields an event with no fields
    set, which callers simply ignore.
    """
    clean = strip_ansi(line).strip()
    if not clean:
        return None

    event = LineEvent(text=clean)

    if direction is Direction.SEND:
        ticket_match = TICKET_RE.search(clean)
        if ticket_match:
            event.ticket = ticket_match.group(1)

    if CONNECTED_RE.search(clean):
        event.connected = True

    speed_match = SPEED_RE.search(clean)
    if speed_match:
        event.speed = speed_match.group(1)
        event.connected = True

    pair_match = AMOUNT_PAIR_RE.search(clean)
    if pair_match:
        event.transferred = pair_match.group(1)
        event.total = pair_match.group(2)

    if direction is Direction.SEND:
        peer_match = PEER_RE.match(clean)
        if peer_match:
            event.peer_id = peer_match.group(1).lower()

    return event


class ProgressTracker:
    """
    Applies parsed output to one session.

    Args:
        session: The session whose fields are updated.
        idle_seconds: Quiet period after the last progress change before
            the session is considered idle again.
        peer_idle_seconds: Quiet period before a peer entry is dropped.
        on_ticket: Called once when a ticket is first captured.
        buffer_limit / buffer_keep: Bounds for the raw output buffer.
    """

    def __init__(
        self,
        session: TransferSession,
        idle_seconds: float = 2.0,
        peer_idle_seconds: float = 3.0,
        on_ticket: Optional[Callable[[TransferSession], None]] = None,
        buffer_limit: int = 10000,
        buffer_keep: int = 5000,
    ):
        self.session = session
        self.idle_seconds = idle_seconds
        self.peer_idle_seconds = peer_idle_seconds
        self.on_ticket = on_ticket
        self.buffer_limit = buffer_limit
        self.buffer_keep = buffer_keep
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._peer_timers: dict[str, asyncio.TimerHandle] = {}
        self._closed = False

    @property
    def has_pending_timers(self) -> bool:
        return self._idle_timer is not None or bool(self._peer_timers)

    def feed(self, chunk: str) -> None:
        """Process a chunk of raw text (pipe read or tailed log slice)."""
        if self._closed or not chunk:
            return
        self.session.append_output(chunk, self.buffer_limit, self.buffer_keep)
        for line in split_lines(chunk):
            event = parse_line(line, self.session.direction)
            if event is None:
                continue
            logger.debug(f"CLI OUT ({self.session.id}): {event.text}")
            self.apply(event)

    def apply(self, event: LineEvent) -> None:
        session = self.session

        if event.ticket and session.set_ticket(event.ticket):
            logger.info(f"Ticket captured for {session.id}: {session.ticket}")
            if self.on_ticket:
                self.on_ticket(session)

        if event.connected:
            session.connected = True
        if event.speed:
            session.speed_text = event.speed

        if not event.has_amounts:
            return

        rendered = event.rendered_amounts
        if rendered != session.transferred_text:
            session.transferred_text = rendered
            session.is_transferring = True
            percent = compute_percent(event.transferred, event.total)
            if percent is not None and percent > session.progress:
                session.progress = percent
            self._arm_idle_timer()

        if event.peer_id and session.direction is Direction.SEND:
            session.active_peers[event.peer_id] = PeerProgress(
                transferred=event.transferred,
                total=event.total,
                last_seen=time.time(),
            )
            self._arm_peer_timer(event.peer_id)

    def reset(self) -> None:
        """Cancel every timer and clear the live transfer indicators."""
        self._cancel_timers()
        self.session.clear_activity()

    def close(self) -> None:
        """Reset and stop accepting output."""
        self.reset()
        self._closed = True

    # -- Timers --------------------------------------------------------------

    def _arm_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(self.idle_seconds, self._on_idle)

    def _on_idle(self) -> None:
        self._idle_timer = None
        session = self.session
        session.is_transferring = False
        session.transferred_text = ""
        session.speed_text = ""
        logger.debug(f"Transfer idle for {session.id}, back to sharing state")

    def _arm_peer_timer(self, peer_id: str) -> None:
        timer = self._peer_timers.pop(peer_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._peer_timers[peer_id] = loop.call_later(
            self.peer_idle_seconds, self._on_peer_idle, peer_id
        )

    def _on_peer_idle(self, peer_id: str) -> None:
        self._peer_timers.pop(peer_id, None)
        if self.session.active_peers.pop(peer_id, None) is not None:
            logger.debug(f"Peer {peer_id} idle, removed from {self.session.id}")

    def _cancel_timers(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None
        for timer in self._peer_timers.values():
            timer.cancel()
        self._peer_timers.clear()
