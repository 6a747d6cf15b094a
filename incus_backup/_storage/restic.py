"""restic repository backend (``restic:`` targets).

Every part of a snapshot is its own restic entry created with
``backup --stdin``; tags carry the ResourceKey, timestamp and part name.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from .._identity import (
    PART_MANIFEST,
    REPOSITORY_KINDS,
    Entry,
    LogicalSnapshot,
    PartRef,
    ResourceKey,
    ResourceKind,
    decode_tags,
    encode_tags,
    file_for_part,
    identity_tags,
    repository_filename,
    sort_entries,
)
from .._transfer import ProgressCallback, TransferResult, transfer
from .._utils import logger
from ..base import BaseSnapshotStorage
from ..config import TransferConfig
from ..errors import PartNotFoundError, ResticNotFoundError, SnapshotExistsError
from ..restic.repo import ResticRepository, ResticSnapshot


@dataclass
class RepositoryIndex:
    """Grouping table ``(key, timestamp) -> {part -> PartRef}`` built from tags.

    Feed snapshots oldest first: the first entry seen for a part wins and
    later ones are recorded as duplicates of that logical snapshot.
    """
    groups: Dict[Tuple[ResourceKey, str], LogicalSnapshot] = field(default_factory=dict)
    seen_ids: set = field(default_factory=set)
    skipped: int = 0

    def add(self, snap: ResticSnapshot) -> None:
        if snap.id in self.seen_ids:
            return
        self.seen_ids.add(snap.id)

        decoded = decode_tags(snap.tags, snap.time)
        if decoded is None:
            self.skipped += 1
            return
        try:
            filename = file_for_part(decoded.key.kind, decoded.part)
        except ValueError:
            logger.debug(f"Skipping restic snapshot {snap.short_id or snap.id}: unknown part {decoded.part!r}")
            self.skipped += 1
            return

        group_key = (decoded.key, decoded.timestamp)
        group = self.groups.get(group_key)
        if group is None:
            group = LogicalSnapshot(key=decoded.key, timestamp=decoded.timestamp)
            self.groups[group_key] = group

        if decoded.part in group.parts:
            group.duplicates.append(snap.id)
            return
        member = snap.paths[0] if snap.paths else "/" + filename
        group.parts[decoded.part] = PartRef(part=decoded.part, filename=filename, locator=snap.id, member=member)
        if decoded.part == PART_MANIFEST or not group.locator:
            group.locator = snap.id

    def extend(self, snapshots: Sequence[ResticSnapshot]) -> "RepositoryIndex":
        for snap in snapshots:
            self.add(snap)
        return self

    def snapshots(self) -> List[LogicalSnapshot]:
        return sorted(self.groups.values(), key=lambda s: s.sort_key())


class ResticSnapshotStorage(BaseSnapshotStorage):
    """Stores each part as a tagged restic snapshot."""

    scheme = "restic"

    def __init__(self, repository: ResticRepository, transfer_config: Optional[TransferConfig] = None):
        super().__init__(transfer_config or repository.transfer_config)
        self.repository = repository

    def __repr__(self) -> str:
        return f"ResticSnapshotStorage({self.repository.repository!r})"

    async def prepare(self) -> None:
        await self.repository.ensure_repository()

    async def list(self, kinds: Optional[Sequence[ResourceKind]] = None) -> List[Entry]:
        entries: Dict[Tuple[ResourceKey, str], Entry] = {}
        for kind in kinds or ResourceKind.from_filter("all"):
            if kind not in REPOSITORY_KINDS:
                continue
            for snap in await self.repository.list_snapshots([f"type={kind.value}", f"part={PART_MANIFEST}"]):
                decoded = decode_tags(snap.tags, snap.time)
                if decoded is None or decoded.key.kind is not kind:
                    continue
                entries.setdefault((decoded.key, decoded.timestamp), Entry(decoded.key, decoded.timestamp, snap.id))
        return sort_entries(entries.values())

    async def snapshots(self, kind: ResourceKind, key: Optional[ResourceKey] = None) -> List[LogicalSnapshot]:
        if kind not in REPOSITORY_KINDS:
            return []
        tags = identity_tags(key) if key is not None else [f"type={kind.value}"]
        index = RepositoryIndex().extend(await self.repository.list_snapshots(tags))
        if index.skipped:
            logger.debug(f"Skipped {index.skipped} restic snapshot(s) with incomplete tags")
        return [s for s in index.snapshots() if s.key.kind is kind]

    async def begin_snapshot(self, key: ResourceKey, timestamp: str) -> str:
        existing = await self.repository.list_snapshots(identity_tags(key) + [f"timestamp={timestamp}"])
        if existing:
            raise SnapshotExistsError(f"{key.describe()} @ {timestamp} already exists in {self.repository.repository}")
        return self.repository.repository

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
        filename = repository_filename(key, timestamp, part)
        tags = encode_tags(key, timestamp, part, optimized=optimized, snapshot=quiesced)
        snapshot_ids: List[Optional[str]] = []

        async def sink(pipe) -> None:
            snapshot_ids.append(await self.repository.backup_stream(filename, tags, pipe))

        result = await transfer(
            source, sink,
            expected_size=expected_size,
            label=file_for_part(key.kind, part),
            progress=progress,
            config=self.transfer_config,
        )
        logger.debug(f"Stored {filename} as restic snapshot {snapshot_ids[0] if snapshot_ids else '?'}")
        return result

    async def open_part(self, ref: PartRef) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.repository.dump(ref.locator, ref.member or "/" + ref.filename):
                yield chunk
        except ResticNotFoundError as e:
            raise PartNotFoundError(f"{ref.filename} not found in restic snapshot {ref.locator}") from e

    async def delete_snapshot(self, snapshot: LogicalSnapshot, reclaim: bool = True) -> None:
        ids = snapshot.entry_ids
        await self.repository.forget(ids, prune=reclaim)
        logger.info(f"Forgot {snapshot.key.describe()} @ {snapshot.timestamp} ({len(ids)} restic snapshot(s))")
