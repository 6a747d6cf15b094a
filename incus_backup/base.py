"""Storage backend interface shared by directory and repository targets."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from ._identity import (
    Entry,
    LogicalSnapshot,
    PART_CHECKSUMS,
    PART_MANIFEST,
    PartRef,
    ResourceKey,
    ResourceKind,
    file_for_part,
)
from ._transfer import ProgressCallback, TransferResult, hash_source, transfer
from ._utils import logger
from .backup.models import Manifest
from .backup.utils import render_checksums
from .config import TransferConfig
from .errors import CorruptSnapshotError, MissingPartError, SnapshotNotFoundError, SnapshotTypeError


@dataclass
class PartSource:
    """Payload for one part of a snapshot being written."""
    part: str
    source: Any
    expected_size: Optional[int] = None


@dataclass
class StoredSnapshot:
    """Result of writing a complete snapshot."""
    key: ResourceKey
    timestamp: str
    locator: str
    checksums: List[Tuple[str, str]] = field(default_factory=list)
    size: int = 0


class BaseSnapshotStorage(ABC):
    """Backend holding versioned, multi-part snapshots.

    Backends map ``LogicalSnapshot`` objects onto physical storage. Prune,
    verify and restore only go through this interface.
    """

    scheme: str = ""

    def __init__(self, transfer_config: Optional[TransferConfig] = None):
        self.transfer_config = transfer_config or TransferConfig()

    async def prepare(self) -> None:
        """Make the backend ready for writing (create or init the target)."""
        return None

    @abstractmethod
    async def list(self, kinds: Optional[Sequence[ResourceKind]] = None) -> List[Entry]:
        """List stored versions sorted by type, project, pool, name, fingerprint, timestamp."""
        ...

    @abstractmethod
    async def snapshots(self, kind: ResourceKind, key: Optional[ResourceKey] = None) -> List[LogicalSnapshot]:
        """Group stored parts into LogicalSnapshots, in list order."""
        ...

    @abstractmethod
    async def begin_snapshot(self, key: ResourceKey, timestamp: str) -> str:
        """Reserve a new version and return its locator.

        Raises:
            SnapshotExistsError: The version is already stored
        """
        ...

    @abstractmethod
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
        """Stream one part's payload into storage through the transfer pipeline."""
        ...

    @abstractmethod
    def open_part(self, ref: PartRef) -> AsyncIterator[bytes]:
        """Async iterator over a stored part's bytes.

        Raises:
            PartNotFoundError: The part's payload is gone
        """
        ...

    @abstractmethod
    async def delete_snapshot(self, snapshot: LogicalSnapshot, reclaim: bool = True) -> None:
        """Delete every part of ``snapshot`` in one backend operation."""
        ...

    # Shared behaviour ------------------------------------------------------

    async def find_snapshot(
        self,
        key: ResourceKey,
        timestamp: Optional[str] = None,
        require_part: Optional[str] = PART_MANIFEST,
    ) -> LogicalSnapshot:
        """Resolve a version of ``key``.

        Without ``timestamp`` the most recent version holding
        ``require_part`` is returned. A requested timestamp that does not
        exist is an error; there is no fallback to the latest version.

        Raises:
            SnapshotNotFoundError: No matching version
        """
        candidates = [s for s in await self.snapshots(key.kind, key) if s.key == key]
        if timestamp:
            for snapshot in candidates:
                if snapshot.timestamp == timestamp:
                    return snapshot
            raise SnapshotNotFoundError(key.describe(), timestamp)

        usable = [s for s in candidates if require_part is None or require_part in s.parts]
        if not usable:
            raise SnapshotNotFoundError(key.describe())
        return max(usable, key=lambda s: s.timestamp)

    async def read_part_bytes(self, ref: PartRef) -> bytes:
        chunks = []
        async for chunk in self.open_part(ref):
            chunks.append(chunk)
        return b"".join(chunks)

    async def read_required_part(self, snapshot: LogicalSnapshot, part: str) -> bytes:
        """Read a part that the current operation cannot do without.

        Raises:
            MissingPartError: The snapshot has no such part
        """
        ref = snapshot.parts.get(part)
        if ref is None:
            raise MissingPartError(part, snapshot.key.describe(), snapshot.timestamp)
        return await self.read_part_bytes(ref)

    async def read_manifest(self, snapshot: LogicalSnapshot, expected_type: Optional[str] = None) -> Manifest:
        """Load and type-check a snapshot's manifest.

        Raises:
            MissingPartError: No manifest stored
            CorruptSnapshotError: Manifest is not valid JSON or fails validation
            SnapshotTypeError: Manifest declares another resource type
        """
        data = await self.read_required_part(snapshot, PART_MANIFEST)
        try:
            manifest = Manifest.from_json(data)
        except ValidationError as e:
            raise CorruptSnapshotError(PART_MANIFEST, snapshot.key.describe(), snapshot.timestamp, e) from e
        expected = expected_type or snapshot.key.kind.value
        if manifest.type != expected:
            raise SnapshotTypeError(expected, manifest.type)
        return manifest

    async def stream_part(
        self,
        snapshot: LogicalSnapshot,
        part: str,
        sink: Any,
        progress: Optional[ProgressCallback] = None,
        label: str = "",
    ) -> TransferResult:
        """Stream a stored part into ``sink`` (restore direction)."""
        ref = snapshot.parts.get(part)
        if ref is None:
            raise MissingPartError(part, snapshot.key.describe(), snapshot.timestamp)
        return await transfer(
            self.open_part(ref),
            sink,
            label=label or ref.filename,
            progress=progress,
            config=self.transfer_config,
        )

    async def hash_part(self, ref: PartRef) -> str:
        result = await hash_source(self.open_part(ref), self.transfer_config.chunk_size)
        return result.sha256

    async def store_snapshot(
        self,
        key: ResourceKey,
        timestamp: str,
        manifest: Manifest,
        payloads: Sequence[PartSource],
        progress: Optional[ProgressCallback] = None,
        optimized: bool = False,
        quiesced: bool = False,
    ) -> StoredSnapshot:
        """Write payload parts, then the manifest, then the checksums.

        An interrupted backup has no checksums part.
        """
        locator = await self.begin_snapshot(key, timestamp)
        stored = StoredSnapshot(key=key, timestamp=timestamp, locator=locator)

        async def write(part: str, source: Any, expected_size: Optional[int] = None, report: bool = True) -> None:
            result = await self.write_part(
                key, timestamp, part, source,
                expected_size=expected_size,
                progress=progress if report else None,
                optimized=optimized,
                quiesced=quiesced,
            )
            stored.checksums.append((result.sha256, file_for_part(key.kind, part)))
            stored.size += result.size

        for payload in payloads:
            await write(payload.part, payload.source, payload.expected_size)
        manifest_bytes = manifest.to_json()
        await write(PART_MANIFEST, manifest_bytes, len(manifest_bytes), report=False)

        checksum_bytes = render_checksums(stored.checksums)
        await self.write_part(
            key, timestamp, PART_CHECKSUMS, checksum_bytes,
            expected_size=len(checksum_bytes),
            optimized=optimized,
            quiesced=quiesced,
        )
        logger.info(f"Stored {key.describe()} @ {timestamp} ({stored.size:,} bytes)")
        return stored
