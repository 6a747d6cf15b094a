"""Directory tree backend (``dir:`` targets)."""

import asyncio
import shutil
from pathlib import Path
from typing import Any, AsyncIterator, Iterator, List, Optional, Sequence, Tuple

from .._identity import (
    Entry,
    LogicalSnapshot,
    PartRef,
    ResourceKey,
    ResourceKind,
    file_for_part,
    part_for_file,
    snapshot_dir,
    sort_entries,
)
from .._transfer import ProgressCallback, TransferResult, transfer
from .._utils import logger
from ..base import BaseSnapshotStorage
from ..config import TransferConfig
from ..errors import ConfigurationError, PartNotFoundError, SnapshotExistsError


def _child_dirs(path: Path) -> List[Path]:
    """Visible subdirectories sorted by name; empty when ``path`` is absent."""
    try:
        children = list(path.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return []
    return sorted((c for c in children if c.is_dir() and not c.name.startswith(".")), key=lambda c: c.name)


class DirectorySnapshotStorage(BaseSnapshotStorage):
    """Stores each version as ``<kind>/<identity...>/<timestamp>/`` with plain files."""

    scheme = "dir"

    def __init__(self, root: str, transfer_config: Optional[TransferConfig] = None):
        """Initialize directory backend.

        Args:
            root: Absolute path of the target directory
            transfer_config: Streaming settings for part writes and reads
        """
        super().__init__(transfer_config)
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"DirectorySnapshotStorage({str(self.root)!r})"

    async def prepare(self) -> None:
        await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)

    # Enumeration -----------------------------------------------------------

    def _walk(self, kind: ResourceKind, key: Optional[ResourceKey] = None) -> Iterator[Tuple[ResourceKey, str, Path]]:
        if key is not None:
            base = self.root.joinpath(*key.segments())
            for ts_dir in _child_dirs(base):
                yield key, ts_dir.name, ts_dir
            return

        levels = [([], self.root / kind.directory)]
        for _ in kind.identity_fields:
            levels = [(values + [child.name], child) for values, path in levels for child in _child_dirs(path)]
        for values, path in levels:
            resource = ResourceKey.from_segments(kind, values)
            for ts_dir in _child_dirs(path):
                yield resource, ts_dir.name, ts_dir

    def _list_sync(self, kinds: Sequence[ResourceKind]) -> List[Entry]:
        entries = []
        for kind in kinds:
            for key, timestamp, path in self._walk(kind):
                entries.append(Entry(key, timestamp, str(path)))
        return sort_entries(entries)

    async def list(self, kinds: Optional[Sequence[ResourceKind]] = None) -> List[Entry]:
        return await asyncio.to_thread(self._list_sync, list(kinds or ResourceKind.from_filter("all")))

    def _snapshots_sync(self, kind: ResourceKind, key: Optional[ResourceKey]) -> List[LogicalSnapshot]:
        result = []
        for resource, timestamp, path in self._walk(kind, key):
            snapshot = LogicalSnapshot(key=resource, timestamp=timestamp, locator=str(path))
            for file in sorted(path.iterdir(), key=lambda f: f.name):
                if not file.is_file() or file.name.startswith("."):
                    continue
                # files without a fixed part are addressed by their own name
                part = part_for_file(kind, file.name) or file.name
                snapshot.parts[part] = PartRef(part=part, filename=file.name, locator=str(file))
            result.append(snapshot)
        return sorted(result, key=lambda s: s.sort_key())

    async def snapshots(self, kind: ResourceKind, key: Optional[ResourceKey] = None) -> List[LogicalSnapshot]:
        return await asyncio.to_thread(self._snapshots_sync, kind, key)

    # Writing ---------------------------------------------------------------

    def _snapshot_path(self, key: ResourceKey, timestamp: str) -> Path:
        return self.root.joinpath(*snapshot_dir(key, timestamp))

    def _begin_sync(self, key: ResourceKey, timestamp: str) -> Path:
        path = self._snapshot_path(key, timestamp)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.mkdir()
        except FileExistsError:
            raise SnapshotExistsError(f"{key.describe()} @ {timestamp} already exists at {path}") from None
        return path

    async def begin_snapshot(self, key: ResourceKey, timestamp: str) -> str:
        path = await asyncio.to_thread(self._begin_sync, key, timestamp)
        logger.debug(f"Created snapshot directory {path}")
        return str(path)

    async def write_part(
        self,
        key: ResourceKey,
        timestamp: str,
        part: str,
        source: Any,
        expected_size: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
        optimized: bool = False,
        quiesced: bool = False,
    ) -> TransferResult:
        filename = file_for_part(key.kind, part)
        path = self._snapshot_path(key, timestamp) / filename
        f = await asyncio.to_thread(open, path, "wb")
        try:
            result = await transfer(
                source, f,
                expected_size=expected_size,
                label=filename,
                progress=progress,
                config=self.transfer_config,
            )
        finally:
            await asyncio.to_thread(f.close)
        logger.debug(f"Wrote {path} ({result.size:,} bytes)")
        return result

    # Reading and deleting --------------------------------------------------

    async def open_part(self, ref: PartRef) -> AsyncIterator[bytes]:
        try:
            f = await asyncio.to_thread(open, ref.locator, "rb")
        except FileNotFoundError:
            raise PartNotFoundError(f"{ref.filename} not found at {ref.locator}") from None
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, self.transfer_config.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            f.close()

    def _check_inside_root(self, locator: str) -> Path:
        path = Path(locator).resolve()
        root = self.root.resolve()
        if path == root or root not in path.parents:
            raise ConfigurationError(f"refusing to delete {locator}: outside of {self.root}")
        return path

    async def delete_snapshot(self, snapshot: LogicalSnapshot, reclaim: bool = True) -> None:
        path = self._check_inside_root(snapshot.locator)
        await asyncio.to_thread(shutil.rmtree, path)
        logger.info(f"Deleted {snapshot.key.describe()} @ {snapshot.timestamp} ({path})")
