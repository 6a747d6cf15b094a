"""Retention: keep the newest N versions of every resource."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ._identity import LogicalSnapshot, ResourceKey
from ._utils import logger
from .errors import ConfigurationError

PRUNE_COLUMNS = ("TYPE", "PROJECT", "POOL", "NAME", "FINGERPRINT", "TIMESTAMP", "ACTION")


@dataclass
class PrunePlan:
    keep: int
    candidates: List[LogicalSnapshot] = field(default_factory=list)
    retained: List[LogicalSnapshot] = field(default_factory=list)

    @property
    def incomplete(self) -> List[LogicalSnapshot]:
        return [c for c in self.candidates if not c.complete]

    def rows(self) -> List[List[str]]:
        """Preview rows; incomplete candidates are marked as such."""
        rows = []
        for snap in self.candidates:
            action = "delete" if snap.complete else "delete (incomplete)"
            key = snap.key
            rows.append([snap.type, key.project, key.pool, key.name, key.fingerprint, snap.timestamp, action])
        return rows


def plan_prune(
    snapshots: Sequence[LogicalSnapshot],
    keep: int,
    timestamp: Optional[str] = None,
) -> PrunePlan:
    """Select versions to delete so that ``keep`` newest remain per resource.

    Args:
        snapshots: Grouped snapshots from one backend
        keep: Versions retained per ResourceKey
        timestamp: Restrict deletion to candidates with this timestamp;
            the newest ``keep`` stay protected

    Returns:
        Plan sorted by type, project, pool, name, fingerprint, timestamp

    Raises:
        ConfigurationError: If ``keep`` is not positive
    """
    if keep <= 0:
        raise ConfigurationError(f"keep must be positive, got {keep}")

    groups: Dict[ResourceKey, List[LogicalSnapshot]] = {}
    for snap in snapshots:
        groups.setdefault(snap.key, []).append(snap)

    plan = PrunePlan(keep=keep)
    for versions in groups.values():
        versions.sort(key=lambda s: s.timestamp)
        cut = max(len(versions) - keep, 0)
        for snap in versions[:cut]:
            if timestamp and snap.timestamp != timestamp:
                plan.retained.append(snap)
            else:
                plan.candidates.append(snap)
        plan.retained.extend(versions[cut:])

    plan.candidates.sort(key=lambda s: s.sort_key())
    plan.retained.sort(key=lambda s: s.sort_key())
    for snap in plan.incomplete:
        logger.warning(
            f"Prune candidate {snap.key.describe()} @ {snap.timestamp} is incomplete "
            f"(missing {', '.join(snap.missing_parts)})"
        )
    return plan


async def apply_prune(backend, plan: PrunePlan, reclaim: bool = True) -> int:
    """Delete plan candidates one at a time; the first failure aborts.

    Returns:
        Number of deleted snapshots
    """
    deleted = 0
    for snap in plan.candidates:
        logger.info(f"Pruning {snap.key.describe()} @ {snap.timestamp}")
        await backend.delete_snapshot(snap, reclaim=reclaim)
        deleted += 1
    logger.info(f"Pruned {deleted} snapshot(s), kept {len(plan.retained)}")
    return deleted
