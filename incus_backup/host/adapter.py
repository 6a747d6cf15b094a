"""Adapter for calling sync or async host clients from the event loop."""

import asyncio
from typing import Any, Callable, List, Optional

from .._transfer import Pipe, blocking_consumer
from .._utils import call_maybe_async
from .models import CustomVolume, Instance, Network, Profile, Project, StoragePool


class HostAdapter:
    """Adapter to handle both synchronous and asynchronous host clients."""

    def __init__(self, client):
        """Initialize with a host client."""
        self.client = client

    async def list_projects(self) -> List[Project]:
        return await call_maybe_async(self.client.list_projects)

    async def list_profiles(self) -> List[Profile]:
        return await call_maybe_async(self.client.list_profiles)

    async def list_networks(self) -> List[Network]:
        return await call_maybe_async(self.client.list_networks)

    async def list_storage_pools(self) -> List[StoragePool]:
        return await call_maybe_async(self.client.list_storage_pools)

    async def list_instances(self, project: str) -> List[Instance]:
        return await call_maybe_async(self.client.list_instances, project)

    async def list_custom_volumes(self, project: str) -> List[CustomVolume]:
        return await call_maybe_async(self.client.list_custom_volumes, project)

    async def create_project(self, project: Project) -> None:
        await call_maybe_async(self.client.create_project, project)

    async def update_project(self, project: Project) -> None:
        await call_maybe_async(self.client.update_project, project)

    async def delete_project(self, name: str) -> None:
        await call_maybe_async(self.client.delete_project, name)

    async def create_network(self, network: Network) -> None:
        await call_maybe_async(self.client.create_network, network)

    async def update_network(self, network: Network) -> None:
        await call_maybe_async(self.client.update_network, network)

    async def delete_network(self, name: str) -> None:
        await call_maybe_async(self.client.delete_network, name)

    async def create_storage_pool(self, pool: StoragePool) -> None:
        await call_maybe_async(self.client.create_storage_pool, pool)

    async def update_storage_pool(self, pool: StoragePool) -> None:
        await call_maybe_async(self.client.update_storage_pool, pool)

    async def delete_storage_pool(self, name: str) -> None:
        await call_maybe_async(self.client.delete_storage_pool, name)

    async def instance_exists(self, project: str, name: str) -> bool:
        return await call_maybe_async(self.client.instance_exists, project, name)

    async def volume_exists(self, project: str, pool: str, name: str) -> bool:
        return await call_maybe_async(self.client.volume_exists, project, pool, name)

    async def export_instance(self, project: str, name: str, optimized: bool, snapshot: Optional[str] = None) -> Any:
        """Open an export stream; blocking clients return a file-like read in threads."""
        return await call_maybe_async(self.client.export_instance, project, name, optimized, snapshot)

    async def export_volume(self, project: str, pool: str, name: str, optimized: bool, snapshot: Optional[str] = None) -> Any:
        return await call_maybe_async(self.client.export_volume, project, pool, name, optimized, snapshot)

    def import_instance_sink(self, project: str, target_name: str) -> Callable[[Pipe], Any]:
        """Transfer sink that imports the streamed backup as ``target_name``."""
        return self._import_sink(self.client.import_instance, project, target_name)

    def import_volume_sink(self, project: str, pool: str, target_name: str) -> Callable[[Pipe], Any]:
        return self._import_sink(self.client.import_volume, project, pool, target_name)

    @staticmethod
    def _import_sink(func: Callable[..., Any], *args) -> Callable[[Pipe], Any]:
        if asyncio.iscoroutinefunction(func):
            async def sink(pipe: Pipe) -> Any:
                return await func(*args, pipe)
            return sink
        return blocking_consumer(lambda reader: func(*args, reader))

    async def create_instance_snapshot(self, project: str, name: str, snapshot: str) -> None:
        await call_maybe_async(self.client.create_instance_snapshot, project, name, snapshot)

    async def delete_instance_snapshot(self, project: str, name: str, snapshot: str) -> None:
        await call_maybe_async(self.client.delete_instance_snapshot, project, name, snapshot)

    async def create_volume_snapshot(self, project: str, pool: str, name: str, snapshot: str) -> None:
        await call_maybe_async(self.client.create_volume_snapshot, project, pool, name, snapshot)

    async def delete_volume_snapshot(self, project: str, pool: str, name: str, snapshot: str) -> None:
        await call_maybe_async(self.client.delete_volume_snapshot, project, pool, name, snapshot)

    async def stop_instance(self, project: str, name: str, force: bool = True) -> None:
        await call_maybe_async(self.client.stop_instance, project, name, force)

    async def delete_instance(self, project: str, name: str) -> None:
        await call_maybe_async(self.client.delete_instance, project, name)

    async def delete_volume(self, project: str, pool: str, name: str) -> None:
        await call_maybe_async(self.client.delete_volume, project, pool, name)
