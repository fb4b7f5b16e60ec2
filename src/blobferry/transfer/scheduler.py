"""
Admission scheduler: bounded-concurrency FIFO of pending sessions.
"""

from collections import deque
from typing import Callable

from blobferry.logger import get_logger
from blobferry.transfer.models import SessionState, TransferSession

logger = get_logger(__name__)


class AdmissionScheduler:
    """
    Promotes pending sessions to active while fewer than ``max_concurrent``
    sessions are active.

    ``on_promote`` is called synchronously right after a session becomes
    active; it must only schedule work (e.g. create a task), never re-enter
    ``pump``.
    """

    def __init__(
        self,
        max_concurrent: int,
        on_promote: Callable[[TransferSession], None],
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._on_promote = on_promote
        self._queue: deque[TransferSession] = deque()
        self._running: dict[str, TransferSession] = {}

    @property
    def active_count(self) -> int:
        self._prune()
        return len(self._running)

    @property
    def pending_count(self) -> int:
        return sum(1 for s in self._queue if s.state is SessionState.PENDING)

    def enqueue(self, session: TransferSession) -> None:
        if session.state is not SessionState.PENDING:
            return
        if any(s is session for s in self._queue):
            return
        self._queue.append(session)

    def discard(self, session: TransferSession) -> None:
        """Forget a session, whether queued or running."""
        self._running.pop(session.id, None)
        try:
            self._queue.remove(session)
        except ValueError:
            pass

    def pump(self) -> list[TransferSession]:
        """
        Promote as many queued sessions as capacity allows.

        Safe to call any number of times; with nothing queued or no free
        slot it changes nothing.
        """
        self._prune()
        promoted = []
        while len(self._running) < self.max_concurrent and self._queue:
            session = self._queue.popleft()
            if session.state is not SessionState.PENDING:
                continue
            session.transition(SessionState.ACTIVE)
            self._running[session.id] = session
            promoted.append(session)
            logger.info(
                f"Promoted session {session.id} ({session.direction.value}), "
                f"{len(self._running)}/{self.max_concurrent} active"
            )
            self._on_promote(session)
        return promoted

    def _prune(self) -> None:
        for session_id in [
            sid for sid, s in self._running.items() if s.state is not SessionState.ACTIVE
        ]:
            del self._running[session_id]
