"""Host control API used by backup and restore."""

from typing import BinaryIO, List, Optional, Protocol, runtime_checkable

from .models import CustomVolume, Instance, Network, Profile, Project, StoragePool


@runtime_checkable
class HostClient(Protocol):
    """Blocking client for the virtualization host.

    Implementations raise ``HostNotFoundError``/``HostConflictError`` for
    missing or duplicate resources and ``HostError`` for anything else.
    """

    # Projects, profiles, networks, pools
    def list_projects(self) -> List[Project]: ...
    def create_project(self, project: Project) -> None: ...
    def update_project(self, project: Project) -> None: ...
    def delete_project(self, name: str) -> None: ...

    def list_profiles(self) -> List[Profile]: ...

    def list_networks(self) -> List[Network]: ...
    def create_network(self, network: Network) -> None: ...
    def update_network(self, network: Network) -> None: ...
    def delete_network(self, name: str) -> None: ...

    def list_storage_pools(self) -> List[StoragePool]: ...
    def create_storage_pool(self, pool: StoragePool) -> None: ...
    def update_storage_pool(self, pool: StoragePool) -> None: ...
    def delete_storage_pool(self, name: str) -> None: ...

    # Instances
    def list_instances(self, project: str) -> List[Instance]: ...
    def instance_exists(self, project: str, name: str) -> bool: ...
    def export_instance(self, project: str, name: str, optimized: bool, snapshot: Optional[str] = None) -> BinaryIO: ...
    def import_instance(self, project: str, target_name: str, stream: BinaryIO) -> None: ...
    def create_instance_snapshot(self, project: str, name: str, snapshot: str) -> None: ...
    def delete_instance_snapshot(self, project: str, name: str, snapshot: str) -> None: ...
    def stop_instance(self, project: str, name: str, force: bool) -> None: ...
    def delete_instance(self, project: str, name: str) -> None: ...

    # Custom volumes
    def list_custom_volumes(self, project: str) -> List[CustomVolume]: ...
    def volume_exists(self, project: str, pool: str, name: str) -> bool: ...
    def export_volume(self, project: str, pool: str, name: str, optimized: bool, snapshot: Optional[str] = None) -> BinaryIO: ...
    def import_volume(self, project: str, pool: str, target_name: str, stream: BinaryIO) -> None: ...
    def create_volume_snapshot(self, project: str, pool: str, name: str, snapshot: str) -> None: ...
    def delete_volume_snapshot(self, project: str, pool: str, name: str, snapshot: str) -> None: ...
    def delete_volume(self, project: str, pool: str, name: str) -> None: ...
