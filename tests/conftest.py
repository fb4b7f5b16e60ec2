"""Shared pytest fixtures and configuration."""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pytest

from blobferry.config import Settings
from blobferry.transfer.coordinator import TransferCoordinator
from blobferry.transfer.errors import SpawnError
from blobferry.transfer.launcher import LaunchMode
from blobferry.transfer.store import MemoryTransferStore

TICKET = "blob" + "a1b2c3d4e5" * 5


class FakeHandle:
    """Stands in for a running process."""

    def __init__(self):
        self.killed = False
        self.kill_calls = 0

    @property
    def running(self) -> bool:
        return not self.killed

    def kill(self):
        self.killed = True
        self.kill_calls += 1


@dataclass
class Launch:
    session_id: str
    args: list
    mode: LaunchMode
    cwd: Path
    on_output: object
    on_exit: object
    handle: FakeHandle = field(default_factory=FakeHandle)


class FakeLauncher:
    """Records launches instead of spawning anything."""

    binary_path = "blobferry-transfer"

    def __init__(self, fail_with: Optional[str] = None):
        self.fail_with = fail_with
        self.launches: list[Launch] = []

    async def launch(self, session_id, args, mode, cwd, on_output, on_exit):
        if self.fail_with:
            raise SpawnError(self.fail_with)
        launch = Launch(session_id, list(args), mode, Path(cwd), on_output, on_exit)
        self.launches.append(launch)
        return launch.handle

    def for_session(self, session_id: str) -> Launch:
        for launch in self.launches:
            if launch.session_id == session_id:
                return launch
        raise AssertionError(f"No launch for {session_id}")


async def drain(rounds: int = 10):
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        binary_path="blobferry-transfer",
        data_dir=tmp_path / "data",
        downloads_dir=tmp_path / "downloads",
        log_dir=tmp_path / "logs",
        transfer_idle_seconds=0.05,
        peer_idle_seconds=0.08,
        tail_interval_seconds=0.02,
        log_cleanup_delay_seconds=0.02,
    )


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def store():
    return MemoryTransferStore()


@pytest.fixture
def coordinator(settings, launcher, store):
    return TransferCoordinator(settings, launcher=launcher, store=store)


@pytest.fixture
def source_dir(tmp_path):
    """A few real files and a folder to share."""
    root = tmp_path / "sources"
    root.mkdir()
    (root / "a.txt").write_text("alpha")
    (root / "b.txt").write_text("bravo")
    (root / "bundle.zip").write_bytes(b"PK\x05\x06" + b"\x00" * 18)
    folder = root / "photos"
    (folder / "2024").mkdir(parents=True)
    (folder / "one.jpg").write_bytes(b"\xff\xd8one")
    (folder / "2024" / "two.jpg").write_bytes(b"\xff\xd8two")
    return root
