"""Custom storage volume backup/restore exporter."""

from typing import Optional

from ..._identity import PART_DATA, ResourceKey, ResourceKind, new_timestamp
from ..._transfer import ProgressCallback
from ..._utils import logger
from ...base import BaseSnapshotStorage, PartSource, StoredSnapshot
from ...config import BackupConfig
from ...host.adapter import HostAdapter
from ..models import Manifest
from ._common import RESTORED, SKIPPED, RestoreOptions, RestorePlan, close_stream, require_part, should_replace


class VolumeExporter:
    """Stream custom volume exports into a backend and back into the host."""

    def __init__(self, host: HostAdapter, backend: BaseSnapshotStorage, config: Optional[BackupConfig] = None):
        self.host = host
        self.backend = backend
        self.config = config or BackupConfig()

    async def export(
        self,
        project: str,
        pool: str,
        name: str,
        optimized: bool = False,
        snapshot: bool = False,
        progress: Optional[ProgressCallback] = None,
        timestamp: Optional[str] = None,
    ) -> StoredSnapshot:
        """Back up one custom volume, optionally from a temporary snapshot."""
        key = ResourceKey.volume(project, pool, name)
        timestamp = timestamp or new_timestamp()
        logger.info(f"Starting backup: {key.describe()} @ {timestamp}")

        temp_snapshot = f"{self.config.snapshot_prefix}-{timestamp}" if snapshot else None
        if temp_snapshot:
            await self.host.create_volume_snapshot(project, pool, name, temp_snapshot)
        try:
            stream = await self.host.export_volume(project, pool, name, optimized, temp_snapshot)
            try:
                manifest = Manifest.for_volume(project, pool, name, snapshot=snapshot, optimized=optimized)
                return await self.backend.store_snapshot(
                    key, timestamp, manifest,
                    [PartSource(PART_DATA, stream)],
                    progress=progress,
                    optimized=optimized,
                    quiesced=snapshot,
                )
            finally:
                await close_stream(stream)
        finally:
            if temp_snapshot:
                try:
                    await self.host.delete_volume_snapshot(project, pool, name, temp_snapshot)
                except Exception as e:
                    logger.warning(f"Failed to delete temporary snapshot {project}/{pool}/{name}/{temp_snapshot}: {e}")

    async def plan_restore(
        self,
        project: str,
        pool: str,
        name: str,
        timestamp: Optional[str] = None,
        target_name: Optional[str] = None,
    ) -> RestorePlan:
        snapshot = await self.backend.find_snapshot(ResourceKey.volume(project, pool, name), timestamp)
        await self.backend.read_manifest(snapshot, ResourceKind.VOLUME.value)
        target = target_name or name
        exists = await self.host.volume_exists(project, pool, target)
        return RestorePlan(snapshot=snapshot, project=project, target_name=target, exists=exists, pool=pool)

    async def restore(
        self,
        plan: RestorePlan,
        options: Optional[RestoreOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Import a planned volume restore, replacing or skipping an existing one."""
        options = options or RestoreOptions()
        require_part(plan.snapshot, PART_DATA)
        project, pool, target = plan.project, plan.pool, plan.target_name
        if plan.exists:
            if not await should_replace(plan, options):
                return SKIPPED
            await self.host.delete_volume(project, pool, target)

        logger.info(f"Restoring volume {project}/{pool}/{target} from {plan.snapshot.timestamp}")
        await self.backend.stream_part(
            plan.snapshot, PART_DATA,
            self.host.import_volume_sink(project, pool, target),
            progress=progress,
            label=target,
        )
        return RESTORED
