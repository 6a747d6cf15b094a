"""Declarative host configuration backup/restore exporter."""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..._identity import CONFIG_PARTS, LogicalSnapshot, ResourceKey, ResourceKind, new_timestamp
from ..._reconcile import ApplySummary, ConfigPlan, apply_config_plan, build_config_plan
from ..._utils import logger
from ...base import BaseSnapshotStorage, PartSource, StoredSnapshot
from ...errors import CorruptSnapshotError
from ...host.adapter import HostAdapter
from ...host.models import Network, Profile, Project, StoragePool
from ..models import Manifest
from ..utils import dump_resources, load_json

_PART_MODELS = {
    "projects": Project,
    "profiles": Profile,
    "networks": Network,
    "storage_pools": StoragePool,
}


@dataclass
class CapturedConfig:
    """Resources loaded from one config snapshot."""
    projects: List[Project] = field(default_factory=list)
    profiles: List[Profile] = field(default_factory=list)
    networks: List[Network] = field(default_factory=list)
    storage_pools: List[StoragePool] = field(default_factory=list)


@dataclass
class ConfigRestoreResult:
    snapshot: LogicalSnapshot
    plan: ConfigPlan
    summary: Optional[ApplySummary] = None

    @property
    def applied(self) -> bool:
        return self.summary is not None


class ConfigExporter:
    """Capture projects, profiles, networks and storage pools; reconcile on restore."""

    def __init__(self, host: HostAdapter, backend: BaseSnapshotStorage):
        self.host = host
        self.backend = backend

    async def export(self, timestamp: Optional[str] = None) -> StoredSnapshot:
        """Write one JSON part per resource type, then manifest and checksums.

        Returns:
            Locator, checksums and size of the stored snapshot
        """
        timestamp = timestamp or new_timestamp()
        logger.info(f"Starting backup: config @ {timestamp}")
        resources = {
            "projects": await self.host.list_projects(),
            "profiles": await self.host.list_profiles(),
            "networks": await self.host.list_networks(),
            "storage_pools": await self.host.list_storage_pools(),
        }
        payloads = []
        for part in CONFIG_PARTS:
            data = dump_resources(resources[part])
            payloads.append(PartSource(part, data, len(data)))
            logger.debug(f"Captured {len(resources[part])} {part}")
        manifest = Manifest.for_config(list(CONFIG_PARTS))
        return await self.backend.store_snapshot(ResourceKey.config(), timestamp, manifest, payloads)

    async def load(self, timestamp: Optional[str] = None) -> Tuple[LogicalSnapshot, CapturedConfig]:
        """Load the captured resources of a config snapshot.

        The latest snapshot is used without ``timestamp``. Every part the
        manifest declares must be present.

        Returns:
            The snapshot used and its captured resources

        Raises:
            SnapshotNotFoundError: No (matching) config snapshot
            SnapshotTypeError: Manifest is not a config manifest
            MissingPartError: A declared part is absent
            CorruptSnapshotError: A part is not valid JSON or fails validation
        """
        snapshot = await self.backend.find_snapshot(ResourceKey.config(), timestamp)
        manifest = await self.backend.read_manifest(snapshot, ResourceKind.CONFIG.value)
        captured = CapturedConfig()
        for part in manifest.includes or list(CONFIG_PARTS):
            model = _PART_MODELS.get(part)
            if model is None:
                logger.warning(f"Ignoring unknown config part {part!r} in {snapshot.timestamp}")
                continue
            data = await self.backend.read_required_part(snapshot, part)
            try:
                raw = load_json(data, f"{part}.json") or []
                if not isinstance(raw, list):
                    raise ValueError(f"expected a JSON array, got {type(raw).__name__}")
                setattr(captured, part, [model.model_validate(item) for item in raw])
            except ValueError as e:
                raise CorruptSnapshotError(part, snapshot.key.describe(), snapshot.timestamp, e) from e
        return snapshot, captured

    async def plan(self, captured: CapturedConfig) -> ConfigPlan:
        """Diff captured resources against the host's current state."""
        return build_config_plan(
            await self.host.list_projects(), captured.projects,
            await self.host.list_networks(), captured.networks,
            await self.host.list_storage_pools(), captured.storage_pools,
        )

    async def restore(self, timestamp: Optional[str] = None, apply: bool = False, force: bool = False) -> ConfigRestoreResult:
        """Preview, or with ``apply`` reconcile, the host against a config snapshot.

        Args:
            timestamp: Config version (defaults to latest)
            apply: Apply the plan instead of only returning it
            force: Allow deleting storage pools and networks

        Returns:
            The snapshot used, the plan and, when applied, the apply summary
        """
        snapshot, captured = await self.load(timestamp)
        plan = await self.plan(captured)
        result = ConfigRestoreResult(snapshot=snapshot, plan=plan)
        if apply:
            logger.info(f"Applying config from {snapshot.timestamp}")
            result.summary = await apply_config_plan(self.host, plan, force=force)
        return result
