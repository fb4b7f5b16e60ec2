"""
Tests for payload staging: decisions, archive and batch layout, suffix pool.
"""

import os
import zipfile
from datetime import datetime
from pathlib import Path

import pytest

from blobferry.transfer.errors import StagingError
from blobferry.transfer.models import PayloadKind
from blobferry.transfer.staging import (
    StagingPlanner,
    SuffixPool,
    archive_base_name,
    choose_payload_kind,
    remove_staged,
    staging_timestamp,
    unique_archive_path,
)


class TestChoosePayloadKind:
    def test_single_file_sent_as_is(self):
        assert choose_payload_kind(["/a.txt"], None) is PayloadKind.RAW

    def test_multiple_files_archived_by_default(self):
        assert choose_payload_kind(["/a", "/b"], None) is PayloadKind.ARCHIVE

    def test_multiple_files_batch_when_zip_forbidden(self):
        assert choose_payload_kind(["/a", "/b"], False) is PayloadKind.BATCH

    def test_single_file_forced_zip(self):
        assert choose_payload_kind(["/a.txt"], True) is PayloadKind.ARCHIVE

    def test_existing_archive_not_repacked(self):
        assert choose_payload_kind(["/x/bundle.ZIP"], True) is PayloadKind.RAW


class TestNaming:
    def test_timestamp_format(self):
        assert staging_timestamp(datetime(2024, 5, 1, 13, 4, 9)) == "2024-05-01_13-04-09"

    def test_archive_base_name(self):
        assert archive_base_name(["/x/report.pdf"]) == "report.pdf"
        assert archive_base_name(["/x/a", "/y/b", "/z/c"]) == "a_and_2_others"

    def test_unique_archive_path_avoids_existing(self, tmp_path):
        first = unique_archive_path(tmp_path, "pack", "ts")
        first.write_bytes(b"")
        for _ in range(20):
            assert unique_archive_path(tmp_path, "pack", "ts") != first

    def test_unique_archive_path_falls_back_to_epoch(self, tmp_path, monkeypatch):
        monkeypatch.setattr("blobferry.transfer.staging.random.randrange", lambda n: 7)
        (tmp_path / "pack_ts_7.zip").write_bytes(b"")
        path = unique_archive_path(tmp_path, "pack", "ts", attempts=3)
        assert path.name.startswith("pack_ts_")
        assert path.name != "pack_ts_7.zip"
        assert len(path.stem.rsplit("_", 1)[1]) >= 13


class TestSuffixPool:
    def test_allocations_are_unique(self):
        pool = SuffixPool(50)
        suffixes = {pool.allocate() for _ in range(50)}
        assert len(suffixes) == 50
        assert all(len(s) == 2 for s in suffixes)

    def test_default_pool_is_three_digits(self):
        pool = SuffixPool()
        suffix = pool.allocate()
        assert len(suffix) == 3 and suffix.isdigit()
        assert suffix in pool

    def test_release(self):
        pool = SuffixPool(2)
        suffix = pool.allocate()
        assert pool.release(suffix)
        assert not pool.release(suffix)
        assert len(pool) == 0

    def test_exhausted_pool_falls_back_to_timestamp(self):
        pool = SuffixPool(2)
        pool.allocate()
        pool.allocate()
        fallback = pool.allocate()
        assert len(fallback) == 6 and fallback.isdigit()
        assert len(pool) == 2
        assert not pool.release(fallback)

    def test_reserve(self):
        pool = SuffixPool(3)
        pool.reserve("1")
        assert "1" in pool
        assert {pool.allocate(), pool.allocate()} == {"0", "2"}


class TestStagingPlanner:
    def setup_method(self):
        self.pool = SuffixPool()

    def _planner(self, tmp_path):
        return StagingPlanner(tmp_path / "sender", self.pool)

    @pytest.mark.asyncio
    async def test_raw_single_file(self, tmp_path, source_dir):
        staged = await self._planner(tmp_path).plan([str(source_dir / "a.txt")])
        assert staged.kind is PayloadKind.RAW
        assert staged.path == str(source_dir / "a.txt")
        assert staged.filename == "a.txt"
        assert not staged.staged

    @pytest.mark.asyncio
    async def test_archive(self, tmp_path, source_dir):
        sources = [str(source_dir / "a.txt"), str(source_dir / "photos")]
        staged = await self._planner(tmp_path).plan(sources)

        assert staged.kind is PayloadKind.ARCHIVE
        assert staged.filename.startswith("a.txt_and_1_others_")
        assert staged.filename.endswith(".zip")
        archive = Path(staged.path)
        assert archive.parent == tmp_path / "sender"

        stem = archive.stem
        with zipfile.ZipFile(archive) as zf:
            names = set(zf.namelist())
            assert f"{stem}/a.txt" in names
            assert f"{stem}/photos/2024/two.jpg" in names
            assert zf.read(f"{stem}/photos/one.jpg") == b"\xff\xd8one"

        # The temporary layout folder is gone, originals untouched.
        assert not (tmp_path / "sender" / stem).exists()
        assert (source_dir / "a.txt").read_text() == "alpha"

    @pytest.mark.asyncio
    async def test_batch_folder_uses_hard_links(self, tmp_path, source_dir):
        sources = [str(source_dir / "a.txt"), str(source_dir / "photos")]
        staged = await self._planner(tmp_path).plan(sources, force_zip=False)

        assert staged.kind is PayloadKind.BATCH
        assert staged.batch_suffix in self.pool
        assert staged.filename == Path(staged.path).name
        assert staged.filename.startswith("Batch_")
        assert staged.filename.endswith(f"_{staged.batch_suffix}")

        batch = Path(staged.path)
        assert (batch / "a.txt").read_text() == "alpha"
        assert (batch / "photos" / "2024" / "two.jpg").exists()
        assert os.stat(batch / "a.txt").st_ino == os.stat(source_dir / "a.txt").st_ino

    @pytest.mark.asyncio
    async def test_missing_sources_are_skipped(self, tmp_path, source_dir):
        sources = [str(source_dir / "gone.txt"), str(source_dir / "b.txt")]
        staged = await self._planner(tmp_path).plan(sources)
        assert staged.kind is PayloadKind.RAW
        assert staged.filename == "b.txt"

    @pytest.mark.asyncio
    async def test_nothing_exists(self, tmp_path):
        with pytest.raises(StagingError, match="Files no longer exist"):
            await self._planner(tmp_path).plan([str(tmp_path / "nope")])

    @pytest.mark.asyncio
    async def test_batch_failure_releases_suffix(self, tmp_path, source_dir, monkeypatch):
        def boom(sources, dest_dir):
            raise OSError("disk full")

        monkeypatch.setattr("blobferry.transfer.staging.link_tree", boom)
        planner = self._planner(tmp_path)
        with pytest.raises(StagingError, match="Layout failed: disk full"):
            await planner.plan([str(source_dir / "a.txt"), str(source_dir / "b.txt")], False)
        assert len(self.pool) == 0

    @pytest.mark.asyncio
    async def test_archive_failure_message(self, tmp_path, source_dir, monkeypatch):
        def boom(folder, archive_path):
            raise OSError("no space")

        monkeypatch.setattr("blobferry.transfer.staging.zip_directory", boom)
        with pytest.raises(StagingError, match="Packing failed: no space"):
            await self._planner(tmp_path).plan(
                [str(source_dir / "a.txt"), str(source_dir / "b.txt")]
            )
        assert list((tmp_path / "sender").iterdir()) == []


class TestRemoveStaged:
    def test_removes_inside_sender_dir(self, tmp_path):
        sender = tmp_path / "sender"
        batch = sender / "Batch_x_001"
        batch.mkdir(parents=True)
        (batch / "f").write_text("x")
        archive = sender / "a.zip"
        archive.write_bytes(b"")

        assert remove_staged(str(batch), sender)
        assert remove_staged(str(archive), sender)
        assert not batch.exists()
        assert not archive.exists()

    def test_refuses_outside_sender_dir(self, tmp_path, source_dir):
        assert not remove_staged(str(source_dir / "a.txt"), tmp_path / "sender")
        assert (source_dir / "a.txt").exists()

    def test_empty_path(self, tmp_path):
        assert not remove_staged(None, tmp_path)
