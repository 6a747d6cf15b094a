"""Config reconciliation: diff captured config against the host and apply."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from ._utils import logger
from .errors import ApplyError
from .host.models import Network, Project, StoragePool

T = TypeVar("T")


@dataclass
class Plan(Generic[T]):
    """Create/update/delete diff for one resource type, sorted by name."""
    to_create: List[T] = field(default_factory=list)
    to_update: List[Tuple[str, T, T]] = field(default_factory=list)  # (name, current, desired)
    to_delete: List[T] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "create": [item.name for item in self.to_create],
            "update": [name for name, _, _ in self.to_update],
            "delete": [item.name for item in self.to_delete],
            "warnings": list(self.warnings),
        }


def config_equal(a: Optional[Dict[str, str]], b: Optional[Dict[str, str]]) -> bool:
    """Compare config maps treating None and {} alike.

    A missing key and a key set to "" are still different.
    """
    return (a or {}) == (b or {})


def _diff(
    current: Sequence[T],
    desired: Sequence[T],
    changed: Callable[[T, T], bool],
) -> Plan[T]:
    current_by_name = {item.name: item for item in current}
    desired_by_name = {item.name: item for item in desired}
    plan: Plan[T] = Plan()
    for name in sorted(desired_by_name):
        want = desired_by_name[name]
        have = current_by_name.get(name)
        if have is None:
            plan.to_create.append(want)
        elif changed(have, want):
            plan.to_update.append((name, have, want))
    for name in sorted(current_by_name):
        if name not in desired_by_name:
            plan.to_delete.append(current_by_name[name])
    return plan


def build_projects_plan(current: Sequence[Project], desired: Sequence[Project]) -> Plan[Project]:
    return _diff(current, desired, lambda have, want: not config_equal(have.config, want.config))


def build_networks_plan(current: Sequence[Network], desired: Sequence[Network]) -> Plan[Network]:
    """Diff networks on config and description.

    A type change cannot be applied in place; it is kept as an update and
    flagged in ``warnings``.
    """
    def changed(have: Network, want: Network) -> bool:
        return (
            not config_equal(have.config, want.config)
            or have.description != want.description
            or have.type != want.type
        )

    plan = _diff(current, desired, changed)
    for name, have, want in plan.to_update:
        if have.type != want.type:
            message = f"network {name!r} type changes from {have.type!r} to {want.type!r}; update may require recreation"
            plan.warnings.append(message)
            logger.warning(message)
    return plan


def build_storage_pools_plan(current: Sequence[StoragePool], desired: Sequence[StoragePool]) -> Plan[StoragePool]:
    def changed(have: StoragePool, want: StoragePool) -> bool:
        return (
            not config_equal(have.config, want.config)
            or have.description != want.description
            or have.driver != want.driver
        )

    plan = _diff(current, desired, changed)
    for name, have, want in plan.to_update:
        if have.driver != want.driver:
            message = f"storage pool {name!r} driver changes from {have.driver!r} to {want.driver!r}; update may require recreation"
            plan.warnings.append(message)
            logger.warning(message)
    return plan


@dataclass
class ConfigPlan:
    projects: Plan[Project] = field(default_factory=Plan)
    networks: Plan[Network] = field(default_factory=Plan)
    storage_pools: Plan[StoragePool] = field(default_factory=Plan)

    @property
    def warnings(self) -> List[str]:
        return self.storage_pools.warnings + self.networks.warnings + self.projects.warnings

    @property
    def empty(self) -> bool:
        return self.projects.empty and self.networks.empty and self.storage_pools.empty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storage_pools": self.storage_pools.to_dict(),
            "networks": self.networks.to_dict(),
            "projects": self.projects.to_dict(),
        }


def build_config_plan(
    current_projects: Sequence[Project],
    desired_projects: Sequence[Project],
    current_networks: Sequence[Network],
    desired_networks: Sequence[Network],
    current_pools: Sequence[StoragePool],
    desired_pools: Sequence[StoragePool],
) -> ConfigPlan:
    # unmanaged networks are host-owned and never reconciled
    return ConfigPlan(
        projects=build_projects_plan(current_projects, desired_projects),
        networks=build_networks_plan(
            [n for n in current_networks if n.managed],
            [n for n in desired_networks if n.managed],
        ),
        storage_pools=build_storage_pools_plan(current_pools, desired_pools),
    )


def render_plan(plan: ConfigPlan) -> List[str]:
    """Human readable preview lines, in apply order."""
    lines = []
    for label, section in (("storage", plan.storage_pools), ("network", plan.networks), ("project", plan.projects)):
        for item in section.to_create:
            lines.append(f"[{label}] create {item.name}")
        for name, _, _ in section.to_update:
            lines.append(f"[{label}] update {name}")
        for item in section.to_delete:
            lines.append(f"[{label}] delete {item.name}")
    for warning in plan.warnings:
        lines.append(f"warning: {warning}")
    if not lines:
        lines.append("no changes")
    return lines


@dataclass
class ApplySummary:
    created: Dict[str, int] = field(default_factory=dict)
    updated: Dict[str, int] = field(default_factory=dict)
    deleted: Dict[str, int] = field(default_factory=dict)
    skipped_deletes: List[str] = field(default_factory=list)

    def count(self, bucket: Dict[str, int], resource: str) -> None:
        bucket[resource] = bucket.get(resource, 0) + 1


async def _apply_one(resource: str, operation: str, name: str, call) -> None:
    logger.info(f"[{resource}] {operation} {name}")
    try:
        await call
    except Exception as e:
        raise ApplyError(resource, operation, name, e) from e


async def apply_config_plan(host, plan: ConfigPlan, force: bool = False) -> ApplySummary:
    """Apply a config plan: storage pools, then networks, then projects.

    Pool and network deletions only happen with ``force``; project deletions
    are not gated. Not transactional: the first failure stops the run and
    earlier operations stay applied.

    Args:
        host: HostAdapter used for every mutation
        plan: Plan built against the host's current state
        force: Allow deleting storage pools and networks

    Returns:
        Per-resource counts and the list of skipped deletions

    Raises:
        ApplyError: First failing operation, chained to its cause
    """
    summary = ApplySummary()
    sections = (
        ("storage", plan.storage_pools, host.create_storage_pool, host.update_storage_pool, host.delete_storage_pool, True),
        ("network", plan.networks, host.create_network, host.update_network, host.delete_network, True),
        ("project", plan.projects, host.create_project, host.update_project, host.delete_project, False),
    )
    for resource, section, create, update, delete, gated in sections:
        for item in section.to_create:
            await _apply_one(resource, "create", item.name, create(item))
            summary.count(summary.created, resource)
        for name, _, desired in section.to_update:
            await _apply_one(resource, "update", name, update(desired))
            summary.count(summary.updated, resource)
        for item in section.to_delete:
            if gated and not force:
                logger.info(f"[{resource}] skip delete {item.name} (use --force)")
                summary.skipped_deletes.append(f"{resource}/{item.name}")
                continue
            await _apply_one(resource, "delete", item.name, delete(item.name))
            summary.count(summary.deleted, resource)
    return summary
