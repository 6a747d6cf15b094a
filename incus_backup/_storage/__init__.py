"""Storage backends with lazy loading support."""

from typing import TYPE_CHECKING

from .factory import BackendFactory, create_backend, _register_backends

if TYPE_CHECKING:
    from .directory import DirectorySnapshotStorage
    from .restic import RepositoryIndex, ResticSnapshotStorage


def __getattr__(name):
    """Lazy import backends."""
    if name == "DirectorySnapshotStorage":
        from .directory import DirectorySnapshotStorage
        return DirectorySnapshotStorage
    elif name == "ResticSnapshotStorage":
        from .restic import ResticSnapshotStorage
        return ResticSnapshotStorage
    elif name == "RepositoryIndex":
        from .restic import RepositoryIndex
        return RepositoryIndex
    else:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "BackendFactory",
    "create_backend",
    "_register_backends",
    "DirectorySnapshotStorage",
    "ResticSnapshotStorage",
    "RepositoryIndex",
]
