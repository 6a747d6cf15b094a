"""Instance backup/restore exporter."""

from typing import Optional

from ..._identity import PART_DATA, ResourceKey, ResourceKind, new_timestamp
from ..._transfer import ProgressCallback
from ..._utils import logger
from ...base import BaseSnapshotStorage, PartSource, StoredSnapshot
from ...config import BackupConfig
from ...host.adapter import HostAdapter
from ..models import Manifest
from ._common import RESTORED, SKIPPED, RestoreOptions, RestorePlan, close_stream, require_part, should_replace


class InstanceExporter:
    """Stream instance exports into a backend and back into the host."""

    def __init__(self, host: HostAdapter, backend: BaseSnapshotStorage, config: Optional[BackupConfig] = None):
        """Initialize exporter.

        Args:
            host: Host adapter used for export, import and snapshots
            backend: Storage backend receiving the snapshots
            config: Backup options (temporary snapshot prefix)
        """
        self.host = host
        self.backend = backend
        self.config = config or BackupConfig()

    async def export(
        self,
        project: str,
        name: str,
        optimized: bool = False,
        snapshot: bool = False,
        progress: Optional[ProgressCallback] = None,
        timestamp: Optional[str] = None,
    ) -> StoredSnapshot:
        """Back up one instance.

        With ``snapshot`` a temporary instance snapshot is taken first and
        exported instead of the live instance; it is removed afterwards even
        when the backup fails.

        Args:
            project: Instance project
            name: Instance name
            optimized: Use the storage driver's optimized export format
            snapshot: Export from a temporary snapshot
            progress: Byte progress callback for the data part
            timestamp: Version id to write (defaults to now)

        Returns:
            Locator, checksums and size of the stored snapshot
        """
        key = ResourceKey.instance(project, name)
        timestamp = timestamp or new_timestamp()
        logger.info(f"Starting backup: {key.describe()} @ {timestamp}")

        temp_snapshot = f"{self.config.snapshot_prefix}-{timestamp}" if snapshot else None
        if temp_snapshot:
            await self.host.create_instance_snapshot(project, name, temp_snapshot)
        try:
            stream = await self.host.export_instance(project, name, optimized, temp_snapshot)
            try:
                manifest = Manifest.for_instance(project, name, snapshot=snapshot, optimized=optimized)
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
                    await self.host.delete_instance_snapshot(project, name, temp_snapshot)
                except Exception as e:
                    logger.warning(f"Failed to delete temporary snapshot {project}/{name}/{temp_snapshot}: {e}")

    async def plan_restore(
        self,
        project: str,
        name: str,
        timestamp: Optional[str] = None,
        target_name: Optional[str] = None,
    ) -> RestorePlan:
        """Resolve the stored version and check the restore target.

        The manifest is read and type-checked before anything else.

        Raises:
            SnapshotNotFoundError: No (matching) version stored
            SnapshotTypeError: Manifest is not an instance manifest
        """
        snapshot = await self.backend.find_snapshot(ResourceKey.instance(project, name), timestamp)
        await self.backend.read_manifest(snapshot, ResourceKind.INSTANCE.value)
        target = target_name or name
        exists = await self.host.instance_exists(project, target)
        return RestorePlan(snapshot=snapshot, project=project, target_name=target, exists=exists)

    async def restore(
        self,
        plan: RestorePlan,
        options: Optional[RestoreOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Import a planned instance restore.

        Returns:
            ``restored`` or ``skipped``
        """
        options = options or RestoreOptions()
        require_part(plan.snapshot, PART_DATA)
        project, target = plan.project, plan.target_name
        if plan.exists:
            if not await should_replace(plan, options):
                return SKIPPED
            try:
                await self.host.stop_instance(project, target, force=True)
            except Exception as e:
                logger.warning(f"Stopping instance {project}/{target} failed: {e}")
            await self.host.delete_instance(project, target)

        logger.info(f"Restoring instance {project}/{target} from {plan.snapshot.timestamp}")
        await self.backend.stream_part(
            plan.snapshot, PART_DATA,
            self.host.import_instance_sink(project, target),
            progress=progress,
            label=target,
        )
        return RESTORED
