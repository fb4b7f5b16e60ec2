"""
Tests for the process launcher: command wrapping, log tailing, and real
child processes run through /bin/sh.
"""

import asyncio
import sys

import pytest
from loguru import logger

from blobferry.transfer.errors import SpawnError
from blobferry.transfer.launcher import (
    LaunchMode,
    LogTailer,
    ProcessLauncher,
    wrap_command,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX only")


class TestWrapCommand:
    def test_linux_tail(self):
        cmd = wrap_command(
            ["/bin/xfer", "send", "/tmp/my file"], "script", "/tmp/x.log", "linux"
        )
        assert cmd == ["script", "-q", "-f", "-c", "/bin/xfer send '/tmp/my file'", "/tmp/x.log"]

    def test_linux_pipe(self):
        cmd = wrap_command(["/bin/xfer", "receive", "t"], "script", None, "linux")
        assert cmd == ["script", "-q", "-c", "/bin/xfer receive t", "/dev/null"]

    def test_darwin_tail(self):
        cmd = wrap_command(["/bin/xfer", "send", "a"], "script", "/tmp/x.log", "darwin")
        assert cmd == ["script", "-q", "-F", "/tmp/x.log", "/bin/xfer", "send", "a"]

    def test_darwin_pipe(self):
        cmd = wrap_command(["/bin/xfer", "send", "a"], "script", None, "darwin")
        assert cmd == ["script", "-q", "/dev/null", "/bin/xfer", "send", "a"]

    def test_no_wrapper(self):
        assert wrap_command(["/bin/xfer", "send"], "", "/tmp/x.log") == ["/bin/xfer", "send"]


class TestLogTailer:
    def test_reads_only_new_content(self, tmp_path):
        log = tmp_path / "out.log"
        tailer = LogTailer(log)
        assert tailer.read_new() == ""

        log.write_text("one\n")
        assert tailer.read_new() == "one\n"
        assert tailer.read_new() == ""

        with open(log, "a") as f:
            f.write("two\n")
        assert tailer.read_new() == "two\n"
        assert tailer.read_all() == "one\ntwo\n"

    def test_truncated_file_restarts(self, tmp_path):
        log = tmp_path / "out.log"
        log.write_text("a long first line\n")
        tailer = LogTailer(log)
        tailer.read_new()
        log.write_text("new\n")
        assert tailer.read_new() == "new\n"


class TestProcessLauncher:
    def setup_method(self):
        self.output = []
        self.exit_codes = []

    async def _on_exit(self, code):
        self.exit_codes.append(code)

    def _launcher(self, tmp_path):
        return ProcessLauncher(
            "/bin/sh",
            wrapper="",
            log_dir=tmp_path / "logs",
            tail_interval=0.02,
            log_cleanup_delay=0.02,
        )

    @pytest.mark.asyncio
    async def test_pipe_mode_streams_output(self, tmp_path):
        launcher = self._launcher(tmp_path)
        handle = await launcher.launch(
            "s1",
            ["-c", "echo hello; echo oops 1>&2; exit 3"],
            LaunchMode.PIPE,
            tmp_path,
            self.output.append,
            self._on_exit,
        )
        assert await handle.wait() == 3
        text = "".join(self.output)
        assert "hello" in text
        assert "oops" in text
        assert self.exit_codes == [3]
        assert not handle.running

    @pytest.mark.asyncio
    async def test_failing_exit_callback_is_logged(self, tmp_path):
        messages = []
        handler_id = logger.add(messages.append, level="ERROR")

        async def broken_on_exit(code):
            raise RuntimeError("boom")

        try:
            launcher = self._launcher(tmp_path)
            handle = await launcher.launch(
                "s4", ["-c", "exit 0"], LaunchMode.PIPE, tmp_path,
                self.output.append, broken_on_exit,
            )
            with pytest.raises(RuntimeError):
                await handle.wait()
            await asyncio.sleep(0)
            await asyncio.sleep(0)
        finally:
            logger.remove(handler_id)

        assert any("s4" in m and "boom" in m for m in messages)

    @pytest.mark.asyncio
    async def test_tail_mode_reads_log_and_cleans_up(self, tmp_path):
        launcher = self._launcher(tmp_path)
        log = launcher.log_path_for("s2")
        script = f"echo first >> '{log}'; sleep 0.1; echo second >> '{log}'"

        handle = await launcher.launch(
            "s2", ["-c", script], LaunchMode.TAIL, tmp_path,
            self.output.append, self._on_exit,
        )
        assert handle.log_path == log
        assert await handle.wait() == 0

        text = "".join(self.output)
        assert "first" in text
        assert "second" in text
        assert self.exit_codes == [0]

        await asyncio.sleep(0.1)
        assert not log.exists()

    @pytest.mark.asyncio
    async def test_stale_log_removed_before_spawn(self, tmp_path):
        launcher = self._launcher(tmp_path)
        log = launcher.log_path_for("s3")
        log.parent.mkdir(parents=True)
        log.write_text("stale output from last run\n")

        handle = await launcher.launch(
            "s3", ["-c", "exit 0"], LaunchMode.TAIL, tmp_path,
            self.output.append, self._on_exit,
        )
        await handle.wait()
        assert "stale" not in "".join(self.output)

    @pytest.mark.asyncio
    async def test_kill(self, tmp_path):
        launcher = self._launcher(tmp_path)
        handle = await launcher.launch(
            "s4", ["-c", "sleep 5"], LaunchMode.TAIL, tmp_path,
            self.output.append, self._on_exit,
        )
        assert handle.running
        handle.kill()
        await handle.wait()
        await handle.process.wait()
        assert not handle.running
        # Killing twice is harmless.
        handle.kill()
        assert self.exit_codes == []

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        launcher = ProcessLauncher(
            str(tmp_path / "does-not-exist"), wrapper="", log_dir=tmp_path
        )
        with pytest.raises(SpawnError):
            await launcher.launch(
                "s5", ["send", "x"], LaunchMode.PIPE, tmp_path,
                self.output.append, self._on_exit,
            )
