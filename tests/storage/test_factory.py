"""Tests for the backend factory."""

import pytest
from unittest.mock import MagicMock, Mock

from incus_backup._storage import DirectorySnapshotStorage, ResticSnapshotStorage
from incus_backup._storage.factory import BackendFactory, _register_backends, create_backend
from incus_backup.config import IncusBackupConfig, TransferConfig
from incus_backup.errors import ConfigurationError


class TestBackendFactory:
    """Test suite for BackendFactory."""

    def setup_method(self):
        """Reset factory state before each test."""
        BackendFactory._backends = {}

    def test_register_backend(self):
        """Verify backend registration works."""
        loader = Mock()
        BackendFactory.register("dir", loader)
        assert BackendFactory._backends["dir"] is loader

    def test_register_backend_not_allowed(self):
        """Verify registration fails for unknown schemes."""
        with pytest.raises(ConfigurationError, match="Backend s3 not in allowed backends"):
            BackendFactory.register("s3", Mock())

    def test_register_backends_idempotent(self):
        """Built-in loaders are registered once."""
        _register_backends()
        first = dict(BackendFactory._backends)
        _register_backends()
        assert BackendFactory._backends == first
        assert set(first) == {"dir", "restic"}

    def test_create_uses_registered_loader(self):
        """Verify factory instantiates the class returned by the loader."""
        backend_class = MagicMock()
        BackendFactory.register("dir", Mock(return_value=backend_class))
        config = IncusBackupConfig(transfer=TransferConfig(chunk_size=8192))

        backend = BackendFactory.create("dir:/srv/backups", config)

        assert backend is backend_class.return_value
        backend_class.assert_called_once_with("/srv/backups", transfer_config=config.transfer)

    def test_create_directory_backend(self):
        """Lazy registration serves dir targets."""
        backend = create_backend("dir:/srv/backups/")
        assert isinstance(backend, DirectorySnapshotStorage)
        assert str(backend.root) == "/srv/backups"

    def test_create_restic_backend(self):
        """restic targets get a repository built from config."""
        backend = create_backend("restic:/srv/restic")
        assert isinstance(backend, ResticSnapshotStorage)
        assert backend.repository.repository == "/srv/restic"
        assert backend.repository.binary == "restic"

    def test_create_restic_with_injected_repository(self, fake_restic):
        backend = create_backend("restic:/ignored", repository=fake_restic)
        assert backend.repository is fake_restic

    def test_invalid_target(self):
        with pytest.raises(ConfigurationError, match="unsupported target scheme"):
            create_backend("s3:bucket")
