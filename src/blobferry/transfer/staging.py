"""
Staging of send payloads.

A send is either sent as-is, laid out as a batch folder of hard links, or
packed into a zip archive. Originals are never modified: staging only
hard-links (or copies, when linking fails) into the sender directory.
"""

import asyncio
import os
import random
import shutil
import time
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from blobferry.logger import get_logger
from blobferry.transfer.errors import StagingError
from blobferry.transfer.models import PayloadKind

logger = get_logger(__name__)

ARCHIVE_EXTENSION = ".zip"
DEFAULT_BUNDLE_NAME = "Transfer_Bundle"
BATCH_PREFIX = "Batch_"


def staging_timestamp(now: Optional[datetime] = None) -> str:
    """``2024-05-01_13-45-10`` style timestamp used in staged names."""
    return (now or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")


def is_archive(path: str) -> bool:
    return path.lower().endswith(ARCHIVE_EXTENSION)


class SuffixPool:
    """
    Process-wide pool of 3-digit batch suffixes.

    A suffix is unique among the currently reserved ones. When the pool
    is exhausted a timestamp-derived suffix is handed out instead; those
    are never tracked.
    """

    def __init__(self, size: int = 1000):
        self.size = size
        self._width = len(str(size - 1))
        self._used: set[str] = set()

    def __contains__(self, suffix: str) -> bool:
        return suffix in self._used

    def __len__(self) -> int:
        return len(self._used)

    def allocate(self) -> str:
        if len(self._used) >= self.size:
            fallback = str(int(time.time() * 1000))[-6:]
            logger.warning(
                f"All {self.size} batch suffixes in use, "
                f"falling back to timestamp suffix {fallback}"
            )
            return fallback

        free = [
            str(n).zfill(self._width)
            for n in range(self.size)
            if str(n).zfill(self._width) not in self._used
        ]
        suffix = random.choice(free)
        self._used.add(suffix)
        logger.debug(f"Allocated batch suffix {suffix} ({len(self._used)} in use)")
        return suffix

    def reserve(self, suffix: str) -> None:
        """Mark a suffix restored from persisted state as taken."""
        self._used.add(suffix)

    def release(self, suffix: Optional[str]) -> bool:
        if suffix and suffix in self._used:
            self._used.discard(suffix)
            logger.debug(f"Released batch suffix {suffix} ({len(self._used)} in use)")
            return True
        return False


@dataclass
class StagedPayload:
    """What the launcher should hand to the binary."""

    kind: PayloadKind
    path: str
    filename: str
    batch_suffix: Optional[str] = None

    @property
    def staged(self) -> bool:
        """True when the payload lives in the sender directory and must be cleaned up."""
        return self.kind is not PayloadKind.RAW


def choose_payload_kind(sources: list[str], force_zip: Optional[bool]) -> PayloadKind:
    """
    Decide how a set of existing sources is sent.

    ``force_zip`` is tri-state: True forces an archive, False forbids one,
    None archives only when there is more than one source.
    """
    should_zip = force_zip is True or (force_zip is None and len(sources) > 1)

    if should_zip and len(sources) == 1 and is_archive(sources[0]):
        logger.info(f"Source is already an archive, not re-packing: {sources[0]}")
        should_zip = False

    if should_zip:
        return PayloadKind.ARCHIVE
    if len(sources) > 1:
        return PayloadKind.BATCH
    return PayloadKind.RAW


def archive_base_name(sources: list[str]) -> str:
    if len(sources) == 1:
        return Path(sources[0]).name or DEFAULT_BUNDLE_NAME
    if sources:
        return f"{Path(sources[0]).name}_and_{len(sources) - 1}_others"
    return DEFAULT_BUNDLE_NAME


def unique_archive_path(
    base_dir: Path, name: str, timestamp: str, attempts: int = 100
) -> Path:
    """
    Probe ``<name>_<timestamp>_<n>.zip`` until neither the archive nor its
    staging folder exists. Falls back to an epoch-millisecond suffix.
    """
    suffix = random.randrange(1000)
    for _ in range(attempts):
        stem = f"{name}_{timestamp}_{suffix}"
        candidate = base_dir / f"{stem}{ARCHIVE_EXTENSION}"
        if not candidate.exists() and not (base_dir / stem).exists():
            return candidate
        suffix = random.randrange(10000)

    stem = f"{name}_{timestamp}_{int(time.time() * 1000)}"
    return base_dir / f"{stem}{ARCHIVE_EXTENSION}"


def link_or_copy(src: str, dst: str) -> str:
    """Hard-link ``src`` to ``dst``, copying when linking is not possible."""
    try:
        os.link(src, dst)
    except OSError as e:
        logger.debug(f"Hard link failed for {src} ({e}), copying instead")
        shutil.copy2(src, dst)
    return dst


def link_tree(sources: Iterable[str], dest_dir: Path) -> None:
    """Mirror each source under ``dest_dir`` using hard links."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    for source in sources:
        src = Path(source)
        target = dest_dir / src.name
        if src.is_dir() and not src.is_symlink():
            shutil.copytree(
                src,
                target,
                symlinks=True,
                copy_function=link_or_copy,
                dirs_exist_ok=True,
            )
        elif src.is_symlink():
            os.symlink(os.readlink(src), target)
        else:
            link_or_copy(str(src), str(target))


def zip_directory(folder: Path, archive_path: Path) -> None:
    """Write ``folder`` (as a single top-level entry) into ``archive_path``."""
    root = folder.parent
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(folder, folder.name)
        for dirpath, dirnames, filenames in os.walk(folder):
            dirnames.sort()
            for dirname in dirnames:
                full = Path(dirpath) / dirname
                zf.write(full, full.relative_to(root).as_posix())
            for filename in sorted(filenames):
                full = Path(dirpath) / filename
                zf.write(full, full.relative_to(root).as_posix())


def existing_sources(sources: Iterable[str]) -> list[str]:
    """Drop sources that are no longer on disk."""
    kept = []
    for source in sources:
        if os.path.lexists(source):
            kept.append(source)
        else:
            logger.info(f"Skipping non-existent source: {source}")
    return kept


class StagingPlanner:
    """
    Prepares send payloads inside ``sender_dir``.

    Args:
        sender_dir: Working directory for archives and batch folders.
        suffix_pool: Shared pool for batch folder suffixes.
        archive_attempts: Name attempts before the timestamp fallback.
    """

    def __init__(
        self,
        sender_dir: Path,
        suffix_pool: SuffixPool,
        archive_attempts: int = 100,
    ):
        self.sender_dir = Path(sender_dir)
        self.suffix_pool = suffix_pool
        self.archive_attempts = archive_attempts

    async def plan(
        self, sources: list[str], force_zip: Optional[bool] = None
    ) -> StagedPayload:
        """
        Stage ``sources`` without blocking the event loop.

        Raises:
            StagingError: No source exists any more, or linking/packing failed.
        """
        sources = existing_sources(sources)
        if not sources:
            raise StagingError("Files no longer exist")

        kind = choose_payload_kind(sources, force_zip)
        if kind is PayloadKind.RAW:
            path = sources[0]
            return StagedPayload(kind=kind, path=path, filename=Path(path).name)

        if kind is PayloadKind.ARCHIVE:
            return await asyncio.to_thread(self._build_archive, sources)

        suffix = self.suffix_pool.allocate()
        try:
            return await asyncio.to_thread(self._build_batch, sources, suffix)
        except BaseException:
            self.suffix_pool.release(suffix)
            raise

    def _build_archive(self, sources: list[str]) -> StagedPayload:
        self.sender_dir.mkdir(parents=True, exist_ok=True)
        archive_path = unique_archive_path(
            self.sender_dir,
            archive_base_name(sources),
            staging_timestamp(),
            self.archive_attempts,
        )
        staging_dir = archive_path.with_suffix("")

        try:
            link_tree(sources, staging_dir)
            zip_directory(staging_dir, archive_path)
        except OSError as e:
            logger.error(f"Packing failed for {archive_path.name}: {e}")
            archive_path.unlink(missing_ok=True)
            raise StagingError(f"Packing failed: {e}") from e
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        logger.info(f"Packed {len(sources)} item(s) into {archive_path.name}")
        return StagedPayload(
            kind=PayloadKind.ARCHIVE,
            path=str(archive_path),
            filename=archive_path.name,
        )

    def _build_batch(self, sources: list[str], suffix: str) -> StagedPayload:
        folder_name = f"{BATCH_PREFIX}{staging_timestamp()}_{suffix}"
        batch_dir = self.sender_dir / folder_name

        try:
            link_tree(sources, batch_dir)
        except OSError as e:
            logger.error(f"Batch layout failed for {folder_name}: {e}")
            shutil.rmtree(batch_dir, ignore_errors=True)
            raise StagingError(f"Layout failed: {e}") from e

        logger.info(f"Laid out {len(sources)} item(s) in {folder_name}")
        return StagedPayload(
            kind=PayloadKind.BATCH,
            path=str(batch_dir),
            filename=folder_name,
            batch_suffix=suffix,
        )


def remove_staged(path: Optional[str], sender_dir: Path) -> bool:
    """
    Delete a staged archive or batch folder.

    Only paths inside ``sender_dir`` are touched, so a raw source is never
    deleted by mistake.
    """
    if not path:
        return False
    target = Path(path)
    try:
        target.resolve().relative_to(Path(sender_dir).resolve())
    except ValueError:
        logger.warning(f"Refusing to delete path outside sender dir: {path}")
        return False

    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target, ignore_errors=True)
    else:
        target.unlink(missing_ok=True)
    logger.info(f"Removed staged payload {target.name}")
    return True
