"""In-memory host client for tests and dry runs."""

import io
from typing import BinaryIO, Dict, List, Optional, Set, Tuple

from ..errors import HostConflictError, HostError, HostNotFoundError
from .models import CustomVolume, Instance, Network, Profile, Project, StoragePool


class FakeHostClient:
    """Host client backed by dictionaries.

    Instance and volume payloads are plain bytes; export returns a BytesIO
    over them and import reads the stream to the end. ``fail`` maps method
    names to exceptions raised on the next call, for failure-path tests.
    """

    def __init__(self):
        self.projects: Dict[str, Project] = {}
        self.profiles: Dict[str, Profile] = {}
        self.networks: Dict[str, Network] = {}
        self.storage_pools: Dict[str, StoragePool] = {}
        self.instances: Dict[Tuple[str, str], bytes] = {}
        self.volumes: Dict[Tuple[str, str, str], bytes] = {}
        self.instance_snapshots: Set[Tuple[str, str, str]] = set()
        self.volume_snapshots: Set[Tuple[str, str, str, str]] = set()
        self.stopped: Set[Tuple[str, str]] = set()
        self.calls: List[Tuple] = []
        self.fail: Dict[str, BaseException] = {}

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        error = self.fail.pop(method, None)
        if error is not None:
            raise error

    # Projects --------------------------------------------------------------

    def list_projects(self) -> List[Project]:
        self._record("list_projects")
        return sorted((p.model_copy(deep=True) for p in self.projects.values()), key=lambda p: p.name)

    def create_project(self, project: Project) -> None:
        self._record("create_project", project.name)
        if project.name in self.projects:
            raise HostConflictError(f"project {project.name!r} already exists")
        self.projects[project.name] = project.model_copy(deep=True)

    def update_project(self, project: Project) -> None:
        self._record("update_project", project.name)
        if project.name not in self.projects:
            raise HostNotFoundError(f"project {project.name!r} not found")
        self.projects[project.name] = project.model_copy(deep=True)

    def delete_project(self, name: str) -> None:
        self._record("delete_project", name)
        if self.projects.pop(name, None) is None:
            raise HostNotFoundError(f"project {name!r} not found")

    def list_profiles(self) -> List[Profile]:
        self._record("list_profiles")
        return sorted((p.model_copy(deep=True) for p in self.profiles.values()), key=lambda p: p.name)

    # Networks --------------------------------------------------------------

    def list_networks(self) -> List[Network]:
        self._record("list_networks")
        return sorted((n.model_copy(deep=True) for n in self.networks.values()), key=lambda n: n.name)

    def create_network(self, network: Network) -> None:
        self._record("create_network", network.name)
        if network.name in self.networks:
            raise HostConflictError(f"network {network.name!r} already exists")
        self.networks[network.name] = network.model_copy(deep=True)

    def update_network(self, network: Network) -> None:
        self._record("update_network", network.name)
        if network.name not in self.networks:
            raise HostNotFoundError(f"network {network.name!r} not found")
        self.networks[network.name] = network.model_copy(deep=True)

    def delete_network(self, name: str) -> None:
        self._record("delete_network", name)
        if self.networks.pop(name, None) is None:
            raise HostNotFoundError(f"network {name!r} not found")

    # Storage pools ---------------------------------------------------------

    def list_storage_pools(self) -> List[StoragePool]:
        self._record("list_storage_pools")
        return sorted((p.model_copy(deep=True) for p in self.storage_pools.values()), key=lambda p: p.name)

    def create_storage_pool(self, pool: StoragePool) -> None:
        self._record("create_storage_pool", pool.name)
        if pool.name in self.storage_pools:
            raise HostConflictError(f"storage pool {pool.name!r} already exists")
        self.storage_pools[pool.name] = pool.model_copy(deep=True)

    def update_storage_pool(self, pool: StoragePool) -> None:
        self._record("update_storage_pool", pool.name)
        if pool.name not in self.storage_pools:
            raise HostNotFoundError(f"storage pool {pool.name!r} not found")
        self.storage_pools[pool.name] = pool.model_copy(deep=True)

    def delete_storage_pool(self, name: str) -> None:
        self._record("delete_storage_pool", name)
        if self.storage_pools.pop(name, None) is None:
            raise HostNotFoundError(f"storage pool {name!r} not found")

    # Instances -------------------------------------------------------------

    def list_instances(self, project: str) -> List[Instance]:
        self._record("list_instances", project)
        return [
            Instance(name=name, project=proj, status="Stopped" if (proj, name) in self.stopped else "Running")
            for proj, name in sorted(self.instances)
            if proj == project
        ]

    def instance_exists(self, project: str, name: str) -> bool:
        self._record("instance_exists", project, name)
        return (project, name) in self.instances

    def export_instance(self, project: str, name: str, optimized: bool, snapshot: Optional[str] = None) -> BinaryIO:
        self._record("export_instance", project, name, optimized, snapshot)
        if (project, name) not in self.instances:
            raise HostNotFoundError(f"instance {project}/{name} not found")
        if snapshot and (project, name, snapshot) not in self.instance_snapshots:
            raise HostNotFoundError(f"snapshot {snapshot!r} of {project}/{name} not found")
        return io.BytesIO(self.instances[(project, name)])

    def import_instance(self, project: str, target_name: str, stream: BinaryIO) -> None:
        self._record("import_instance", project, target_name)
        if (project, target_name) in self.instances:
            raise HostConflictError(f"instance {project}/{target_name} already exists")
        data = stream.read()
        if not data:
            raise HostError("empty instance backup stream")
        self.instances[(project, target_name)] = data

    def create_instance_snapshot(self, project: str, name: str, snapshot: str) -> None:
        self._record("create_instance_snapshot", project, name, snapshot)
        if (project, name) not in self.instances:
            raise HostNotFoundError(f"instance {project}/{name} not found")
        self.instance_snapshots.add((project, name, snapshot))

    def delete_instance_snapshot(self, project: str, name: str, snapshot: str) -> None:
        self._record("delete_instance_snapshot", project, name, snapshot)
        try:
            self.instance_snapshots.remove((project, name, snapshot))
        except KeyError:
            raise HostNotFoundError(f"snapshot {snapshot!r} of {project}/{name} not found") from None

    def stop_instance(self, project: str, name: str, force: bool) -> None:
        self._record("stop_instance", project, name, force)
        if (project, name) not in self.instances:
            raise HostNotFoundError(f"instance {project}/{name} not found")
        self.stopped.add((project, name))

    def delete_instance(self, project: str, name: str) -> None:
        self._record("delete_instance", project, name)
        if self.instances.pop((project, name), None) is None:
            raise HostNotFoundError(f"instance {project}/{name} not found")
        self.stopped.discard((project, name))
        self.instance_snapshots = {s for s in self.instance_snapshots if s[:2] != (project, name)}

    # Custom volumes --------------------------------------------------------

    def list_custom_volumes(self, project: str) -> List[CustomVolume]:
        self._record("list_custom_volumes", project)
        return [
            CustomVolume(name=name, project=proj, pool=pool)
            for proj, pool, name in sorted(self.volumes)
            if proj == project
        ]

    def volume_exists(self, project: str, pool: str, name: str) -> bool:
        self._record("volume_exists", project, pool, name)
        return (project, pool, name) in self.volumes

    def export_volume(self, project: str, pool: str, name: str, optimized: bool, snapshot: Optional[str] = None) -> BinaryIO:
        self._record("export_volume", project, pool, name, optimized, snapshot)
        if (project, pool, name) not in self.volumes:
            raise HostNotFoundError(f"volume {project}/{pool}/{name} not found")
        if snapshot and (project, pool, name, snapshot) not in self.volume_snapshots:
            raise HostNotFoundError(f"snapshot {snapshot!r} of {project}/{pool}/{name} not found")
        return io.BytesIO(self.volumes[(project, pool, name)])

    def import_volume(self, project: str, pool: str, target_name: str, stream: BinaryIO) -> None:
        self._record("import_volume", project, pool, target_name)
        if (project, pool, target_name) in self.volumes:
            raise HostConflictError(f"volume {project}/{pool}/{target_name} already exists")
        data = stream.read()
        if not data:
            raise HostError("empty volume backup stream")
        self.volumes[(project, pool, target_name)] = data

    def create_volume_snapshot(self, project: str, pool: str, name: str, snapshot: str) -> None:
        self._record("create_volume_snapshot", project, pool, name, snapshot)
        if (project, pool, name) not in self.volumes:
            raise HostNotFoundError(f"volume {project}/{pool}/{name} not found")
        self.volume_snapshots.add((project, pool, name, snapshot))

    def delete_volume_snapshot(self, project: str, pool: str, name: str, snapshot: str) -> None:
        self._record("delete_volume_snapshot", project, pool, name, snapshot)
        try:
            self.volume_snapshots.remove((project, pool, name, snapshot))
        except KeyError:
            raise HostNotFoundError(f"snapshot {snapshot!r} of {project}/{pool}/{name} not found") from None

    def delete_volume(self, project: str, pool: str, name: str) -> None:
        self._record("delete_volume", project, pool, name)
        if self.volumes.pop((project, pool, name), None) is None:
            raise HostNotFoundError(f"volume {project}/{pool}/{name} not found")
        self.volume_snapshots = {s for s in self.volume_snapshots if s[:3] != (project, pool, name)}
