from .adapter import HostAdapter
from .client import HostClient
from .fake import FakeHostClient
from .models import CustomVolume, Instance, Network, Profile, Project, StoragePool

__all__ = [
    "HostAdapter",
    "HostClient",
    "FakeHostClient",
    "CustomVolume",
    "Instance",
    "Network",
    "Profile",
    "Project",
    "StoragePool",
]
