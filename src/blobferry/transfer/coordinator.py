"""
Transfer coordinator.

Owns every session, the batch-suffix pool and the admission scheduler,
and is the only writer of the persisted session list. All mutations run
on the event loop, so no locking is needed as long as no mutation awaits
half-way through.

Lifecycle of a send:
    start_send -> staging task -> scheduler queue -> launcher -> tracker
    updates from output -> exit/cancel -> cleanup and a freed slot.
"""

import asyncio
import os
import shutil
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Coroutine, Iterable, Optional, Union

from blobferry.config import Settings
from blobferry.logger import get_logger
from blobferry.transfer.errors import (
    InvalidRequestError,
    SessionNotFoundError,
    SpawnError,
    StagingError,
)
from blobferry.transfer.launcher import LaunchMode, ProcessLauncher
from blobferry.transfer.models import (
    CANCELLED_MESSAGE,
    Direction,
    Payload,
    SessionSnapshot,
    SessionState,
    TransferSession,
)
from blobferry.transfer.parser import ProgressTracker
from blobferry.transfer.scheduler import AdmissionScheduler
from blobferry.transfer.staging import (
    StagedPayload,
    StagingPlanner,
    SuffixPool,
    is_archive,
    remove_staged,
)
from blobferry.transfer.store import ReceiveItem, ShareItem, TransferStore

logger = get_logger(__name__)

# (batch suffix, staged path) of a share that a new staging run replaces.
Superseded = tuple[Optional[str], Optional[str]]


def detect_folder_share(sources: list[str]) -> Optional[Payload]:
    """Return the folder path(s) when every source is a directory."""
    folders = [s for s in sources if os.path.isdir(s)]
    if not folders or len(folders) != len(sources):
        return None
    return folders[0] if len(folders) == 1 else folders


def launch_mode_for(session: TransferSession) -> LaunchMode:
    """Archives are piped; folders and raw files go through a tailed log."""
    if session.direction is Direction.SEND and not is_archive(session.filename):
        return LaunchMode.TAIL
    return LaunchMode.PIPE


class TransferCoordinator:
    """
    Manages concurrent send/receive sessions around the transfer binary.

    Args:
        settings: Runtime settings.
        launcher: Process launcher (defaults to one built from settings).
        store: Optional persistence collaborator.
        suffix_pool: Batch suffix pool (defaults to a fresh one).
    """

    def __init__(
        self,
        settings: Settings,
        launcher: Optional[ProcessLauncher] = None,
        store: Optional[TransferStore] = None,
        suffix_pool: Optional[SuffixPool] = None,
    ):
        self.settings = settings
        settings.ensure_dirs()

        self.suffix_pool = suffix_pool or SuffixPool(settings.suffix_pool_size)
        self.planner = StagingPlanner(
            settings.sender_dir, self.suffix_pool, settings.archive_name_attempts
        )
        self.launcher = launcher or ProcessLauncher(
            binary_path=settings.resolve_binary(),
            wrapper=settings.pty_wrapper,
            log_dir=settings.log_dir,
            tail_interval=settings.tail_interval_seconds,
            log_cleanup_delay=settings.log_cleanup_delay_seconds,
        )
        self.store = store
        self.scheduler = AdmissionScheduler(settings.max_concurrent, self._on_promote)

        self._sessions: dict[str, TransferSession] = {}
        self._staging: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closing = False

    # ─── Public API ──────────────────────────────────────────────────

    def start_send(
        self,
        sources: Union[str, os.PathLike, Iterable[Union[str, os.PathLike]]],
        force_zip: Optional[bool] = None,
        source_folder_path: Optional[Payload] = None,
        *,
        supersedes: Optional[Superseded] = None,
    ) -> str:
        """
        Create a send session and start staging it.

        Raises:
            InvalidRequestError: No usable source path was given.
        """
        if isinstance(sources, (str, os.PathLike)):
            sources = [sources]
        clean = [os.fspath(s) for s in (sources or []) if s and os.fspath(s).strip()]
        if not clean:
            raise InvalidRequestError("No sources to send")

        if source_folder_path is None:
            source_folder_path = detect_folder_share(clean)
            if source_folder_path:
                logger.debug(f"Auto-detected folder share: {source_folder_path}")

        single = len(clean) == 1 and not force_zip
        session = TransferSession(
            direction=Direction.SEND,
            sources=clean,
            payload=clean[0] if single else list(clean),
            filename=os.path.basename(clean[0]) if single else "",
            force_zip=force_zip,
            source_folder_path=source_folder_path,
        )
        self._add(session)
        self._persist()

        task = self._spawn(self._stage(session, supersedes))
        self._staging[session.id] = task
        return session.id

    def start_receive(self, ticket: str, output_dir: Optional[str] = None) -> str:
        """
        Create a receive session and queue it.

        Raises:
            InvalidRequestError: The ticket is empty.
        """
        ticket = (ticket or "").strip()
        if not ticket:
            raise InvalidRequestError("A ticket is required to receive")

        session = TransferSession(
            direction=Direction.RECEIVE,
            ticket=ticket,
            output_dir=str(output_dir) if output_dir else self._default_output_dir(),
        )
        self._add(session)
        self._persist()
        self.scheduler.enqueue(session)
        self.scheduler.pump()
        return session.id

    def get_session(self, session_id: str) -> TransferSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None

    @property
    def sessions(self) -> list[TransferSession]:
        return list(self._sessions.values())

    def get_status(self) -> list[SessionSnapshot]:
        return [session.to_snapshot() for session in self._sessions.values()]

    def cancel(self, session_id: Optional[str] = None) -> bool:
        """
        Cancel one session, or every pending/active one when no id is given.

        The state is ``cancelled`` before the process is killed, so a status
        read right after this returns never reports ``active``.
        """
        if session_id is not None:
            session = self._sessions.get(session_id)
            if session is None:
                logger.warning(f"Attempted to cancel unknown session: {session_id}")
                return False
            self._cancel_session(session)
        else:
            for session in list(self._sessions.values()):
                if session.state in (SessionState.PENDING, SessionState.ACTIVE):
                    self._cancel_session(session)

        self._persist()
        self.scheduler.pump()
        return True

    async def remove(self, session_id: str) -> bool:
        """Kill, forget and clean up after a session."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.warning(f"Attempted to remove unknown session: {session_id}")
            return False

        self._release_process(session)
        self.scheduler.discard(session)
        await self._reclaim(session)
        if session.direction is Direction.RECEIVE:
            await asyncio.to_thread(
                shutil.rmtree, self._receive_cwd(session), ignore_errors=True
            )

        logger.info(f"Removed session {session_id}")
        self._persist()
        self.scheduler.pump()
        return True

    def reshare(self, session_id: str) -> str:
        """
        Re-stage a send session's sources as a brand-new session.

        The new session gets a new id and, once running, a new ticket. The
        old session is dropped; its batch suffix and staged payload are
        reclaimed when the new staging run finishes.
        """
        old = self.get_session(session_id)
        if old.direction is not Direction.SEND:
            raise InvalidRequestError("Only send sessions can be re-shared")

        supersedes: Superseded = (old.staging_suffix, old.staged_path)
        old.staging_suffix = None
        old.staged_path = None

        del self._sessions[old.id]
        self._release_process(old)
        self.scheduler.discard(old)
        logger.info(f"Re-sharing session {old.id}")

        return self.start_send(
            old.sources, old.force_zip, old.source_folder_path, supersedes=supersedes
        )

    def restore(self) -> list[str]:
        """
        Reload persisted sessions.

        Finished receives come back as history. Unfinished receives and all
        shares are queued again as new sessions; re-queued shares get new
        tickets, so old tickets stop working.
        """
        if self.store is None:
            return []

        receive_items = self.store.load_receive_sessions()
        share_items = self.store.load_send_sessions()
        new_ids: list[str] = []

        for item in receive_items:
            if item.id in self._sessions:
                continue
            try:
                state = SessionState(item.status)
            except ValueError:
                state = SessionState.FAILED

            if state in (SessionState.PENDING, SessionState.ACTIVE):
                new_ids.append(self.start_receive(item.ticket, item.output_dir))
                continue

            session = TransferSession(
                direction=Direction.RECEIVE,
                id=item.id,
                state=state,
                ticket=item.ticket,
                filename=item.filename or "",
                payload=item.filename,
                progress=item.progress,
                speed_text="",
                output_dir=item.output_dir,
                created_at=_parse_timestamp(item.created_at),
            )
            self._add(session)

        for item in share_items:
            if item.batch_suffix:
                self.suffix_pool.reserve(item.batch_suffix)

        for item in share_items:
            if not item.files:
                continue
            new_ids.append(
                self.start_send(
                    item.files,
                    item.force_zip,
                    item.source_folder_path,
                    supersedes=(item.batch_suffix, item.staged_path),
                )
            )

        logger.info(
            f"Restored {len(receive_items)} receive and {len(share_items)} share item(s)"
        )
        self._persist()
        return new_ids

    def tray_status(self) -> dict[str, list[dict[str, Any]]]:
        """Compact summary of what is moving right now."""
        sharing = [
            {
                "id": s.id,
                "filename": s.filename,
                "displayName": s.display_name,
                "receiverCount": len(s.active_peers) or 1,
            }
            for s in self._sessions.values()
            if s.direction is Direction.SEND and s.is_transferring
        ]
        receiving = [
            {
                "id": s.id,
                "filename": s.display_name,
                "progress": round(s.progress, 2),
                "speed": s.speed_text,
                "transferred": s.transferred_text,
            }
            for s in self._sessions.values()
            if s.direction is Direction.RECEIVE
            and s.state in (SessionState.PENDING, SessionState.ACTIVE)
        ]
        return {"sharing": sharing, "receiving": receiving}

    async def settle(self) -> None:
        """Wait until no staging run is in flight."""
        while self._staging:
            await asyncio.gather(*list(self._staging.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Kill every process and stop every background task."""
        # Staging threads cannot be interrupted; wait for them and reclaim their output.
        self._closing = True
        await self.settle()
        for session in self._sessions.values():
            self._release_process(session)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Transfer coordinator shut down")

    # ─── Staging ─────────────────────────────────────────────────────

    async def _stage(
        self, session: TransferSession, supersedes: Optional[Superseded]
    ) -> None:
        staged: Optional[StagedPayload] = None
        error = ""
        try:
            staged = await self.planner.plan(session.sources, session.force_zip)
        except (StagingError, OSError) as e:
            error = str(e)
            logger.error(f"Staging failed for {session.id}: {error}")
        finally:
            self._staging.pop(session.id, None)
            if supersedes:
                await self._reclaim_paths(*supersedes)

        if staged is None:
            if session.id in self._sessions:
                self._finish(session, SessionState.FAILED, error)
            return

        if (
            self._closing
            or session.id not in self._sessions
            or session.state is not SessionState.PENDING
        ):
            logger.info(f"Session {session.id} went away during staging, discarding payload")
            await self._reclaim_paths(staged.batch_suffix, staged.path if staged.staged else None)
            return

        session.payload = staged.path
        session.filename = staged.filename
        session.staging_kind = staged.kind
        session.staging_suffix = staged.batch_suffix
        session.staged_path = staged.path if staged.staged else None
        self._persist()

        self.scheduler.enqueue(session)
        self.scheduler.pump()

    # ─── Process lifecycle ───────────────────────────────────────────

    def _on_promote(self, session: TransferSession) -> None:
        self._spawn(self._run(session))

    async def _run(self, session: TransferSession) -> None:
        if self._closing or session.state is not SessionState.ACTIVE:
            return

        tracker = ProgressTracker(
            session,
            idle_seconds=self.settings.transfer_idle_seconds,
            peer_idle_seconds=self.settings.peer_idle_seconds,
            on_ticket=self._on_ticket,
            buffer_limit=self.settings.output_buffer_limit,
            buffer_keep=self.settings.output_buffer_keep,
        )
        session.tracker = tracker
        mode = launch_mode_for(session)

        try:
            if session.direction is Direction.SEND:
                args = ["send", str(session.payload), "-v"]
                cwd = self.settings.sender_dir
            else:
                session.transferred_text = "Connecting..."
                args = ["receive", session.ticket, "-v"]
                cwd = self._receive_cwd(session)
                cwd.mkdir(parents=True, exist_ok=True)

            handle = await self.launcher.launch(
                session.id,
                args,
                mode,
                cwd,
                on_output=tracker.feed,
                on_exit=partial(self._on_exit, session, mode),
            )
        except (SpawnError, OSError) as e:
            self._finish(session, SessionState.FAILED, str(e))
            return

        if session.state is not SessionState.ACTIVE or session.id not in self._sessions:
            handle.kill()
            return
        session.handle = handle

    def _on_ticket(self, session: TransferSession) -> None:
        self._persist()
        # A tailed share is ready to download once it has a ticket; its
        # process keeps running to serve peers.
        if launch_mode_for(session) is LaunchMode.TAIL:
            self._finish(session, SessionState.COMPLETED, keep_process=True)

    async def _on_exit(
        self, session: TransferSession, mode: LaunchMode, code: int
    ) -> None:
        logger.info(f"Process for {session.id} exited with code {code}")
        session.handle = None
        if session.tracker is not None:
            session.tracker.close()

        if session.id not in self._sessions:
            return

        if session.is_terminal:
            if session.direction is Direction.SEND and session.ticket:
                session.progress = 100.0
            self._persist()
            self.scheduler.pump()
            return

        if code == 0 or (session.direction is Direction.SEND and session.ticket):
            if session.direction is Direction.RECEIVE:
                await self._relocate_download(session)
            session.progress = 100.0
            self._finish(session, SessionState.COMPLETED)
        elif mode is LaunchMode.TAIL:
            self._finish(
                session,
                SessionState.FAILED,
                f"Process exited code {code} without ticket",
            )
        else:
            self._finish(session, SessionState.FAILED, f"Exited with code {code}")

    def _finish(
        self,
        session: TransferSession,
        state: SessionState,
        error: str = "",
        keep_process: bool = False,
    ) -> bool:
        """Apply a terminal transition and its cleanup. No-op if already terminal."""
        if session.is_terminal:
            return False

        session.transition(state)
        if error:
            session.error = error

        if session.tracker is not None:
            session.tracker.reset()
        else:
            session.clear_activity()
        if not keep_process:
            self._release_process(session)

        log = logger.error if state is SessionState.FAILED else logger.info
        log(f"Session {session.id} -> {state.value}" + (f": {error}" if error else ""))

        self._persist()
        self.scheduler.pump()
        return True

    def _cancel_session(self, session: TransferSession) -> None:
        if not session.is_terminal:
            session.transition(SessionState.CANCELLED)
            session.error = CANCELLED_MESSAGE
            logger.info(f"Session {session.id} -> cancelled")
        self._release_process(session)
        self.scheduler.discard(session)

    def _release_process(self, session: TransferSession) -> None:
        """Kill the owned process (if any) and stop its timers."""
        handle, session.handle = session.handle, None
        if handle is not None:
            try:
                handle.kill()
            except OSError as e:
                logger.warning(f"Failed to kill process for {session.id}: {e}")
        if session.tracker is not None:
            session.tracker.close()
        else:
            session.clear_activity()

    # ─── Cleanup ─────────────────────────────────────────────────────

    async def _reclaim(self, session: TransferSession) -> None:
        suffix, path = session.staging_suffix, session.staged_path
        session.staging_suffix = None
        session.staged_path = None
        await self._reclaim_paths(suffix, path)

    async def _reclaim_paths(self, suffix: Optional[str], path: Optional[str]) -> None:
        if suffix:
            self.suffix_pool.release(suffix)
        if path:
            await asyncio.to_thread(remove_staged, path, self.settings.sender_dir)

    async def _relocate_download(self, session: TransferSession) -> None:
        """Move the first received entry into the session's output directory."""
        cwd = self._receive_cwd(session)
        target_dir = Path(session.output_dir or self._default_output_dir())

        def _move() -> Optional[Path]:
            if not cwd.exists():
                return None
            entries = sorted(cwd.iterdir())
            if not entries:
                return None
            src = entries[0]
            dst = target_dir / src.name
            target_dir.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, dst, dirs_exist_ok=True)
            else:
                shutil.copy2(src, dst)
            shutil.rmtree(cwd, ignore_errors=True)
            return dst

        try:
            dst = await asyncio.to_thread(_move)
        except OSError as e:
            logger.warning(f"Could not move download for {session.id}: {e}")
            return
        if dst is not None:
            session.filename = str(dst)
            session.payload = str(dst)
            logger.info(f"Received {dst.name} into {target_dir}")

    # ─── Helpers ─────────────────────────────────────────────────────

    def _add(self, session: TransferSession) -> None:
        self._sessions[session.id] = session
        logger.info(f"Created {session.direction.value} session {session.id}")

    def _receive_cwd(self, session: TransferSession) -> Path:
        return self.settings.receiver_dir / session.id

    def _default_output_dir(self) -> str:
        getter = getattr(self.store, "get_receive_folder", None)
        if getter is not None:
            try:
                return getter()
            except Exception as e:
                logger.warning(f"Failed to read receive folder: {e}")
        return str(self.settings.downloads_dir)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Transfer task failed: {exc}")

    def _persist(self) -> None:
        """Write the current session list through the store (single writer)."""
        if self.store is None:
            return
        shares = [
            ShareItem(
                id=s.id,
                files=s.sources,
                old_ticket=s.ticket,
                created_at=s.created_at.isoformat(),
                force_zip=s.force_zip,
                source_folder_path=s.source_folder_path,
                batch_suffix=s.staging_suffix,
                staged_path=s.staged_path,
            )
            for s in self._sessions.values()
            if s.direction is Direction.SEND and s.state is not SessionState.CANCELLED
        ]
        receives = [
            ReceiveItem(
                id=s.id,
                ticket=s.ticket,
                status=s.state.value,
                filename=s.filename or None,
                progress=round(s.progress, 2),
                created_at=s.created_at.isoformat(),
                output_dir=s.output_dir,
            )
            for s in self._sessions.values()
            if s.direction is Direction.RECEIVE and s.state is not SessionState.CANCELLED
        ]
        try:
            self.store.save_send_sessions(shares)
            self.store.save_receive_sessions(receives)
        except Exception as e:
            logger.error(f"Failed to persist transfer state: {e}")


def _parse_timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return datetime.now()
