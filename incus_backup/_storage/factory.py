"""Backend factory: one backend per parsed target."""

from typing import Callable, Dict, Optional, Type, Union

from ..base import BaseSnapshotStorage
from ..config import IncusBackupConfig
from ..errors import ConfigurationError
from ..target import Target, parse_target


class BackendFactory:
    """Factory for creating snapshot storage backends from targets."""

    _backends: Dict[str, Callable[[], Type[BaseSnapshotStorage]]] = {}

    ALLOWED = {"dir", "restic"}

    @classmethod
    def register(cls, scheme: str, backend_loader: Callable[[], Type[BaseSnapshotStorage]]) -> None:
        """Register a backend for a target scheme.

        Args:
            scheme: Target scheme (must be in ALLOWED)
            backend_loader: Function that returns the backend class

        Raises:
            ConfigurationError: If scheme not in allowed list
        """
        if scheme not in cls.ALLOWED:
            raise ConfigurationError(f"Backend {scheme} not in allowed backends: {sorted(cls.ALLOWED)}")
        cls._backends[scheme] = backend_loader

    @classmethod
    def create(
        cls,
        target: Union[str, Target],
        config: Optional[IncusBackupConfig] = None,
        repository=None,
    ) -> BaseSnapshotStorage:
        """Create the backend serving ``target``.

        Args:
            target: Target string or parsed Target
            config: Global configuration
            repository: ResticRepository to use instead of building one

        Returns:
            Backend instance (not yet prepared)

        Raises:
            ConfigurationError: If the target is invalid or its scheme unknown
        """
        if isinstance(target, str):
            target = parse_target(target)
        config = config or IncusBackupConfig()

        if target.scheme not in cls._backends:
            _register_backends()
            if target.scheme not in cls._backends:
                raise ConfigurationError(f"Unknown backend: {target.scheme}. Available: {sorted(cls._backends)}")

        backend_class = cls._backends[target.scheme]()
        if target.scheme == "restic":
            if repository is None:
                from ..restic.repo import ResticRepository
                repository = ResticRepository(target.value, config=config.restic, transfer_config=config.transfer)
            return backend_class(repository, transfer_config=config.transfer)
        return backend_class(target.path, transfer_config=config.transfer)


def create_backend(
    target: Union[str, Target],
    config: Optional[IncusBackupConfig] = None,
    repository=None,
) -> BaseSnapshotStorage:
    return BackendFactory.create(target, config=config, repository=repository)


def _get_directory_storage():
    """Lazy loader for directory storage."""
    from .directory import DirectorySnapshotStorage
    return DirectorySnapshotStorage


def _get_restic_storage():
    """Lazy loader for restic storage."""
    from .restic import ResticSnapshotStorage
    return ResticSnapshotStorage


def _register_backends():
    """Register built-in backends with lazy loaders. Called when factory is first used."""
    if not BackendFactory._backends:
        BackendFactory.register("dir", _get_directory_storage)
        BackendFactory.register("restic", _get_restic_storage)
