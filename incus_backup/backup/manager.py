"""Backup and restore orchestration across host resources and a storage backend."""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .._identity import Entry, ResourceKind
from .._prune import PrunePlan, apply_prune, plan_prune
from .._transfer import ProgressCallback
from .._utils import logger
from .._verify import verify_backend
from ..base import BaseSnapshotStorage, StoredSnapshot
from ..config import BackupConfig
from ..errors import ConfigurationError
from ..host.adapter import HostAdapter
from .exporters import (
    ConfigExporter,
    ConfigRestoreResult,
    InstanceExporter,
    RestoreOptions,
    RestorePlan,
    VolumeExporter,
)
from .models import VerifyResult


@dataclass
class RestoreAllPlan:
    """Everything ``restore all`` would touch, resolved up front."""
    config: ConfigRestoreResult
    volumes: List[RestorePlan] = field(default_factory=list)
    instances: List[RestorePlan] = field(default_factory=list)


class BackupManager:
    """Orchestrate backup, restore, prune and verify for one backend.

    Batch operations handle one resource at a time in listing order and stop
    at the first failure.
    """

    def __init__(self, host, backend: BaseSnapshotStorage, config: Optional[BackupConfig] = None):
        """Initialize backup manager.

        Args:
            host: Host client (sync or async) or a HostAdapter wrapping one
            backend: Storage backend created from the target
            config: Backup defaults (project, prefix, keep, ...)
        """
        self.host = host if isinstance(host, HostAdapter) else HostAdapter(host)
        self.backend = backend
        self.config = config or BackupConfig()
        self.config_exporter = ConfigExporter(self.host, backend)
        self.instance_exporter = InstanceExporter(self.host, backend, self.config)
        self.volume_exporter = VolumeExporter(self.host, backend, self.config)

    # Listing ---------------------------------------------------------------

    async def list(self, kinds: Optional[Sequence[ResourceKind]] = None) -> List[Entry]:
        return await self.backend.list(kinds)

    # Backup ----------------------------------------------------------------

    async def backup_config(self) -> StoredSnapshot:
        await self.backend.prepare()
        return await self.config_exporter.export()

    async def backup_instances(
        self,
        project: Optional[str] = None,
        names: Optional[Sequence[str]] = None,
        optimized: Optional[bool] = None,
        snapshot: Optional[bool] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> List[StoredSnapshot]:
        """Back up the named instances, or every instance of the project.

        Returns:
            One StoredSnapshot per instance, in processing order
        """
        project = project or self.config.default_project
        if not names:
            names = [i.name for i in await self.host.list_instances(project)]
        await self.backend.prepare()

        logger.info(f"Backing up {len(names)} instance(s) in project {project}")
        stored = []
        for name in names:
            stored.append(await self.instance_exporter.export(
                project, name,
                optimized=self.config.optimized if optimized is None else optimized,
                snapshot=self.config.snapshot if snapshot is None else snapshot,
                progress=progress,
            ))
        return stored

    async def backup_volumes(
        self,
        project: Optional[str] = None,
        names: Optional[Sequence[str]] = None,
        pool: Optional[str] = None,
        optimized: Optional[bool] = None,
        snapshot: Optional[bool] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> List[StoredSnapshot]:
        """Back up custom volumes of a project, optionally restricted by name or pool."""
        project = project or self.config.default_project
        volumes = await self.host.list_custom_volumes(project)
        selected: List[Tuple[str, str]] = [
            (v.pool, v.name)
            for v in volumes
            if (not names or v.name in names) and (not pool or v.pool == pool)
        ]
        if names:
            found = {name for _, name in selected}
            for name in names:
                if name not in found:
                    if not pool:
                        raise ConfigurationError(f"volume {name!r} not found in project {project}; pass --pool")
                    selected.append((pool, name))
        await self.backend.prepare()

        logger.info(f"Backing up {len(selected)} volume(s) in project {project}")
        stored = []
        for volume_pool, name in selected:
            stored.append(await self.volume_exporter.export(
                project, volume_pool, name,
                optimized=self.config.optimized if optimized is None else optimized,
                snapshot=self.config.snapshot if snapshot is None else snapshot,
                progress=progress,
            ))
        return stored

    async def backup_all(
        self,
        project: Optional[str] = None,
        optimized: Optional[bool] = None,
        snapshot: Optional[bool] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> List[StoredSnapshot]:
        """Back up config, then every volume, then every instance of the project."""
        stored = [await self.backup_config()]
        stored.extend(await self.backup_volumes(project, optimized=optimized, snapshot=snapshot, progress=progress))
        stored.extend(await self.backup_instances(project, optimized=optimized, snapshot=snapshot, progress=progress))
        logger.info(f"Backup complete: {len(stored)} snapshot(s)")
        return stored

    # Restore ---------------------------------------------------------------

    async def restore_config(self, timestamp: Optional[str] = None, apply: bool = False, force: bool = False) -> ConfigRestoreResult:
        return await self.config_exporter.restore(timestamp, apply=apply, force=force)

    async def _stored_names(self, kind: ResourceKind, project: str, pool: Optional[str] = None) -> List[Tuple[str, str]]:
        """Distinct (pool, name) pairs with stored versions, in list order."""
        seen: List[Tuple[str, str]] = []
        for entry in await self.backend.list([kind]):
            if entry.key.project != project or (pool and entry.key.pool != pool):
                continue
            item = (entry.key.pool, entry.key.name)
            if item not in seen:
                seen.append(item)
        return seen

    async def plan_instance_restores(
        self,
        project: Optional[str] = None,
        names: Optional[Sequence[str]] = None,
        timestamp: Optional[str] = None,
        target_name: Optional[str] = None,
    ) -> List[RestorePlan]:
        """Resolve restores for the named instances, or all stored ones of the project."""
        project = project or self.config.default_project
        if not names:
            names = [name for _, name in await self._stored_names(ResourceKind.INSTANCE, project)]
        if target_name and len(names) != 1:
            raise ConfigurationError("target name requires exactly one instance")
        return [
            await self.instance_exporter.plan_restore(project, name, timestamp, target_name)
            for name in names
        ]

    async def plan_volume_restores(
        self,
        project: Optional[str] = None,
        pool: Optional[str] = None,
        names: Optional[Sequence[str]] = None,
        timestamp: Optional[str] = None,
        target_name: Optional[str] = None,
    ) -> List[RestorePlan]:
        """Resolve restores for volumes; without a pool every stored pool is considered."""
        project = project or self.config.default_project
        if names:
            if not pool:
                raise ConfigurationError("restoring volumes by name requires a pool")
            items = [(pool, name) for name in names]
        else:
            items = await self._stored_names(ResourceKind.VOLUME, project, pool)
        if target_name and len(items) != 1:
            raise ConfigurationError("target name requires exactly one volume")
        return [
            await self.volume_exporter.plan_restore(project, volume_pool, name, timestamp, target_name)
            for volume_pool, name in items
        ]

    async def restore_instances(
        self,
        plans: Sequence[RestorePlan],
        options: Optional[RestoreOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> List[str]:
        return [await self.instance_exporter.restore(plan, options, progress) for plan in plans]

    async def restore_volumes(
        self,
        plans: Sequence[RestorePlan],
        options: Optional[RestoreOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> List[str]:
        return [await self.volume_exporter.restore(plan, options, progress) for plan in plans]

    async def plan_restore_all(self, project: Optional[str] = None, timestamp: Optional[str] = None) -> RestoreAllPlan:
        """Config plan plus every stored volume and instance of the project.

        Without ``timestamp`` each resource uses its latest version. With it,
        config and every stored resource must have a version at exactly that
        timestamp, otherwise SnapshotNotFoundError is raised before anything
        is restored.
        """
        return RestoreAllPlan(
            config=await self.config_exporter.restore(timestamp, apply=False),
            volumes=await self.plan_volume_restores(project, timestamp=timestamp),
            instances=await self.plan_instance_restores(project, timestamp=timestamp),
        )

    async def restore_all(
        self,
        plan: RestoreAllPlan,
        options: Optional[RestoreOptions] = None,
        apply_config: bool = False,
        force: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> RestoreAllPlan:
        """Optionally apply config, then restore volumes, then instances."""
        if apply_config:
            plan.config = await self.config_exporter.restore(plan.config.snapshot.timestamp, apply=True, force=force)
        await self.restore_volumes(plan.volumes, options, progress)
        await self.restore_instances(plan.instances, options, progress)
        logger.info(f"Restore complete: {len(plan.volumes)} volume(s), {len(plan.instances)} instance(s)")
        return plan

    # Prune and verify ------------------------------------------------------

    async def plan_prune(
        self,
        kinds: Sequence[ResourceKind],
        keep: Optional[int] = None,
        timestamp: Optional[str] = None,
    ) -> PrunePlan:
        keep = self.config.keep if keep is None else keep
        if keep <= 0:
            raise ConfigurationError(f"keep must be positive, got {keep}")
        snapshots = []
        for kind in kinds:
            snapshots.extend(await self.backend.snapshots(kind))
        return plan_prune(snapshots, keep, timestamp)

    async def prune(self, plan: PrunePlan, reclaim: Optional[bool] = None) -> int:
        reclaim = self.config.reclaim_space if reclaim is None else reclaim
        return await apply_prune(self.backend, plan, reclaim=reclaim)

    async def verify(self, kinds: Sequence[ResourceKind]) -> List[VerifyResult]:
        return await verify_backend(self.backend, kinds)
