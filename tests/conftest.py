"""Global pytest configuration and fixtures."""

import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from incus_backup.config import TransferConfig
from incus_backup.errors import ResticNotFoundError
from incus_backup.host.fake import FakeHostClient
from incus_backup.host.models import Network, Profile, Project, StoragePool
from incus_backup.restic.repo import ResticSnapshot


@pytest.fixture
def temp_dir():
    """Create temporary target directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def small_transfer():
    """Tiny chunks so multi-chunk paths are exercised with small payloads."""
    return TransferConfig(chunk_size=4, queue_depth=2, progress_interval=0.0)


@pytest.fixture
def fake_host():
    """Host with one instance, one volume and a little configuration."""
    host = FakeHostClient()
    host.projects["default"] = Project(name="default", config={"features.images": "true"})
    host.profiles["default"] = Profile(name="default", devices={"root": {"path": "/", "pool": "local", "type": "disk"}})
    host.networks["incusbr0"] = Network(name="incusbr0", type="bridge", config={"ipv4.address": "10.0.0.1/24"})
    host.storage_pools["local"] = StoragePool(name="local", driver="dir")
    host.instances[("default", "web")] = b"web-instance-export-payload"
    host.volumes[("default", "local", "data")] = b"data-volume-export-payload"
    return host


class FakeResticRepository:
    """In-memory stand-in for ResticRepository.

    Each backup becomes one entry with an id, creation time, tags and the
    stdin filename as its only path. Tag filters are AND-ed like the real
    ``--tag a,b`` filter.
    """

    def __init__(self, repository="/srv/restic", transfer_config=None):
        self.repository = repository
        self.transfer_config = transfer_config or TransferConfig()
        self.entries = {}
        self.forgotten = []
        self.prepared = False
        self._counter = 0
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    async def ensure_repository(self):
        self.prepared = True

    def add_entry(self, tags, data=b"", path="/payload", snapshot_id=None):
        self._counter += 1
        snapshot_id = snapshot_id or f"{self._counter:08x}"
        self._clock += timedelta(seconds=1)
        self.entries[snapshot_id] = {
            "snapshot": ResticSnapshot(id=snapshot_id, short_id=snapshot_id[:8], time=self._clock,
                                       tags=list(tags), paths=[path]),
            "data": data,
        }
        return snapshot_id

    async def backup_stream(self, filename, tags, chunks):
        data = b"".join([chunk async for chunk in chunks])
        return self.add_entry(tags, data, path="/" + filename)

    async def list_snapshots(self, tags=None):
        wanted = set(tags or [])
        result = [e["snapshot"] for e in self.entries.values() if wanted <= set(e["snapshot"].tags)]
        return sorted(result, key=lambda s: s.time)

    async def dump(self, snapshot_id, path):
        entry = self.entries.get(snapshot_id)
        if entry is None or path not in entry["snapshot"].paths:
            raise ResticNotFoundError(f"no matching ID found for prefix {snapshot_id!r}")
        data = entry["data"]
        size = self.transfer_config.chunk_size
        for offset in range(0, len(data), size):
            yield data[offset:offset + size]

    async def dump_bytes(self, snapshot_id, path):
        return b"".join([chunk async for chunk in self.dump(snapshot_id, path)])

    async def forget(self, snapshot_ids, prune=True):
        self.forgotten.append((list(snapshot_ids), prune))
        for snapshot_id in snapshot_ids:
            self.entries.pop(snapshot_id, None)


@pytest.fixture
def fake_restic(small_transfer):
    """Empty in-memory restic repository."""
    return FakeResticRepository(transfer_config=small_transfer)
