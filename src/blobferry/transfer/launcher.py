"""
Process launcher for the transfer binary.

The binary needs a terminal to initialise, so it always runs under a
terminal-emulating wrapper (``script``). Two capture strategies exist:

- PIPE: stdout/stderr are read as streams. Used for archives.
- TAIL: the wrapper writes combined output to a log file that is polled.
  Folder and raw payloads stall the binary when its output is piped, so
  they never get a pipe.
"""

import asyncio
import os
import shlex
import sys
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Optional

from blobferry.logger import get_logger
from blobferry.transfer.errors import SpawnError

logger = get_logger(__name__)

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[int], Awaitable[None]]

READ_CHUNK_SIZE = 4096


class LaunchMode(str, Enum):
    PIPE = "pipe"
    TAIL = "tail"


def wrap_command(
    argv: list[str],
    wrapper: str = "script",
    log_path: Optional[str] = None,
    platform: str = sys.platform,
) -> list[str]:
    """
    Wrap ``argv`` in the terminal-emulating helper.

    BSD ``script`` (macOS) takes the command as trailing arguments and
    needs ``-F`` to flush the log file as it goes; util-linux ``script``
    takes a single ``-c`` command string and flushes with ``-f``.
    """
    if not wrapper:
        return list(argv)

    target = log_path or "/dev/null"
    if platform == "darwin" or "bsd" in platform:
        flags = ["-q", "-F"] if log_path else ["-q"]
        return [wrapper, *flags, target, *argv]

    flags = ["-q", "-f"] if log_path else ["-q"]
    return [wrapper, *flags, "-c", shlex.join(argv), target]


class LogTailer:
    """
    Reads only what was appended to a log file since the previous poll.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.offset = 0

    def read_new(self) -> str:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return ""
        if size < self.offset:
            self.offset = 0
        if size == self.offset:
            return ""
        with open(self.path, "rb") as f:
            f.seek(self.offset)
            data = f.read(size - self.offset)
        self.offset += len(data)
        return data.decode("utf-8", errors="replace")

    def read_all(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""


class ProcessHandle:
    """
    A running transfer process bound to exactly one session.

    The watcher task feeds output to ``on_output`` and calls ``on_exit``
    once with the exit code. ``kill`` is synchronous and safe on a process
    that already exited.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        mode: LaunchMode,
        log_path: Optional[Path] = None,
    ):
        self.process = process
        self.mode = mode
        self.log_path = log_path
        self._watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def kill(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
        watcher = self._watcher
        if watcher and not watcher.done() and watcher is not _current_task():
            watcher.cancel()
            if self.log_path is not None:
                _unlink_quietly(self.log_path)

    async def wait(self) -> Optional[int]:
        if self._watcher is not None:
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
        return self.process.returncode


class ProcessLauncher:
    """
    Starts the transfer binary for a session.

    Args:
        binary_path: Path or name of the transfer binary.
        wrapper: Terminal-emulating wrapper command ("" runs the binary bare).
        log_dir: Directory for TAIL mode log files.
        tail_interval: Seconds between log polls.
        log_cleanup_delay: Seconds to keep the log after exit.
    """

    def __init__(
        self,
        binary_path: str,
        wrapper: str = "script",
        log_dir: Optional[Path] = None,
        tail_interval: float = 0.5,
        log_cleanup_delay: float = 1.0,
    ):
        self.binary_path = binary_path
        self.wrapper = wrapper
        self.log_dir = Path(log_dir) if log_dir else Path.cwd()
        self.tail_interval = tail_interval
        self.log_cleanup_delay = log_cleanup_delay

    def log_path_for(self, session_id: str) -> Path:
        return self.log_dir / f"blobferry_{session_id}.log"

    def build_command(self, args: list[str], log_path: Optional[Path] = None) -> list[str]:
        argv = [self.binary_path, *args]
        return wrap_command(
            argv, self.wrapper, str(log_path) if log_path else None
        )

    async def launch(
        self,
        session_id: str,
        args: list[str],
        mode: LaunchMode,
        cwd: Path,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> ProcessHandle:
        """
        Spawn the binary and start watching it.

        Raises:
            SpawnError: The wrapper or binary could not be executed.
        """
        log_path = self.log_path_for(session_id) if mode is LaunchMode.TAIL else None
        if log_path is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_path.unlink(missing_ok=True)

        command = self.build_command(args, log_path)
        logger.info(f"Spawning ({mode.value}) for {session_id}: {shlex.join(command)}")

        if mode is LaunchMode.TAIL:
            env = {**os.environ, "HOME": str(Path.home()), "TERM": "xterm"}
            stdout = stderr = asyncio.subprocess.DEVNULL
        else:
            env = {**os.environ, "HOME": str(Path.home()), "TERM": "dumb"}
            stdout = stderr = asyncio.subprocess.PIPE

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                env=env,
            )
        except OSError as e:
            logger.error(f"Spawn failed for {session_id}: {e}")
            raise SpawnError(str(e)) from e

        logger.info(f"Spawned {session_id}, pid {process.pid}")
        handle = ProcessHandle(process, mode, log_path)
        if mode is LaunchMode.TAIL:
            watcher = self._watch_log(handle, on_output, on_exit)
        else:
            watcher = self._watch_pipes(handle, on_output, on_exit)
        handle._watcher = asyncio.create_task(watcher)
        handle._watcher.add_done_callback(partial(_watcher_done, session_id))
        return handle

    async def _watch_pipes(
        self, handle: ProcessHandle, on_output: OutputCallback, on_exit: ExitCallback
    ) -> None:
        process = handle.process

        async def pump(stream: Optional[asyncio.StreamReader]) -> None:
            if stream is None:
                return
            while True:
                data = await stream.read(READ_CHUNK_SIZE)
                if not data:
                    break
                on_output(data.decode("utf-8", errors="replace"))

        await asyncio.gather(pump(process.stdout), pump(process.stderr))
        code = await process.wait()
        await on_exit(code)

    async def _watch_log(
        self, handle: ProcessHandle, on_output: OutputCallback, on_exit: ExitCallback
    ) -> None:
        tailer = LogTailer(handle.log_path)
        exit_waiter = asyncio.ensure_future(handle.process.wait())
        try:
            while not exit_waiter.done():
                try:
                    text = tailer.read_new()
                except OSError as e:
                    logger.warning(f"Error reading log {tailer.path.name}: {e}")
                    text = ""
                if text.strip():
                    on_output(text)
                await asyncio.wait({exit_waiter}, timeout=self.tail_interval)
        finally:
            if not exit_waiter.done():
                exit_waiter.cancel()

        code = exit_waiter.result()
        # The ticket can land in the log right before exit.
        final_text = tailer.read_all()
        if final_text:
            on_output(final_text)
        await on_exit(code)

        loop = asyncio.get_running_loop()
        loop.call_later(
            self.log_cleanup_delay, _unlink_quietly, handle.log_path
        )


def _unlink_quietly(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.debug(f"Could not remove log {path}: {e}")


def _watcher_done(session_id: str, task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error(f"Process watcher for {session_id} failed: {exc}")


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
