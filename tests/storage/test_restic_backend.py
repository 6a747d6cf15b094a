"""Tests for the restic tag-indexed backend with an in-memory repository."""

from datetime import datetime, timezone

import pytest

from incus_backup._identity import ResourceKey, ResourceKind, encode_tags
from incus_backup._storage.restic import RepositoryIndex, ResticSnapshotStorage
from incus_backup.backup.models import Manifest
from incus_backup.backup.utils import parse_checksums
from incus_backup.base import PartSource
from incus_backup.errors import PartNotFoundError, SnapshotExistsError
from incus_backup.restic.repo import ResticSnapshot

WEB = ResourceKey.instance("default", "web")
TS = "20240101T000000Z"


@pytest.fixture
def backend(fake_restic):
    return ResticSnapshotStorage(fake_restic)


async def _store(backend, key=WEB, timestamp=TS, payload=b"instance bytes", quiesced=False):
    manifest = Manifest.for_instance(key.project, key.name, quiesced, False)
    return await backend.store_snapshot(
        key, timestamp, manifest, [PartSource("data", payload, len(payload))], quiesced=quiesced,
    )


def _snap(snapshot_id, tags, paths=None, second=0):
    return ResticSnapshot(
        id=snapshot_id,
        time=datetime(2024, 1, 1, 0, 0, second, tzinfo=timezone.utc),
        tags=tags,
        paths=paths or [],
    )


class TestRepositoryIndex:
    """Test grouping of repository entries into logical snapshots."""

    def test_groups_parts_by_key_and_timestamp(self):
        index = RepositoryIndex().extend([
            _snap("a", encode_tags(WEB, TS, "data"), ["/instances/default/web/x/export.tar.xz"]),
            _snap("b", encode_tags(WEB, TS, "manifest")),
            _snap("c", encode_tags(WEB, TS, "checksums")),
            _snap("d", encode_tags(WEB, "20240102T000000Z", "data")),
        ])
        snapshots = index.snapshots()
        assert [s.timestamp for s in snapshots] == [TS, "20240102T000000Z"]

        first = snapshots[0]
        assert first.complete
        assert first.locator == "b"
        assert first.parts["data"].member == "/instances/default/web/x/export.tar.xz"
        assert first.parts["manifest"].member == "/manifest.json"
        assert snapshots[1].locator == "d"

    def test_duplicate_parts_first_wins(self):
        index = RepositoryIndex().extend([
            _snap("a", encode_tags(WEB, TS, "data"), second=1),
            _snap("b", encode_tags(WEB, TS, "data"), second=2),
        ])
        snapshot = index.snapshots()[0]
        assert snapshot.parts["data"].locator == "a"
        assert snapshot.duplicates == ["b"]
        assert snapshot.entry_ids == ["a", "b"]

    def test_same_entry_counted_once(self):
        entry = _snap("a", encode_tags(WEB, TS, "data"))
        index = RepositoryIndex().extend([entry, entry])
        assert index.snapshots()[0].duplicates == []

    def test_unattributable_entries_skipped(self):
        index = RepositoryIndex().extend([
            _snap("a", ["host=foo"]),
            _snap("b", ["type=instance", "project=p", "timestamp=x", "part=data"]),
            _snap("c", ["type=instance", "project=p", "name=n", "timestamp=x", "part=profiles"]),
        ])
        assert index.snapshots() == []
        assert index.skipped == 3

    def test_missing_timestamp_uses_entry_time(self):
        index = RepositoryIndex().extend([_snap("a", ["type=config", "part=projects"], second=9)])
        assert index.snapshots()[0].timestamp == "20240101T000009Z"


class TestResticBackend:
    """Test the backend against the in-memory repository."""

    @pytest.mark.asyncio
    async def test_prepare(self, backend, fake_restic):
        await backend.prepare()
        assert fake_restic.prepared

    @pytest.mark.asyncio
    async def test_store_creates_one_entry_per_part(self, backend, fake_restic):
        stored = await _store(backend, quiesced=True)

        assert stored.locator == fake_restic.repository
        assert len(fake_restic.entries) == 3
        parts = sorted(
            (e["snapshot"].tag_map()["part"], e["snapshot"].paths[0]) for e in fake_restic.entries.values()
        )
        assert parts == [
            ("checksums", f"/instances/default/web/{TS}/checksums.txt"),
            ("data", f"/instances/default/web/{TS}/export.tar.xz"),
            ("manifest", f"/instances/default/web/{TS}/manifest.json"),
        ]
        for entry in fake_restic.entries.values():
            assert "snapshot=true" in entry["snapshot"].tags
            assert "schema=v1" in entry["snapshot"].tags

    @pytest.mark.asyncio
    async def test_list_and_read_back(self, backend):
        await _store(backend, payload=b"first")
        await _store(backend, timestamp="20240102T000000Z", payload=b"second")

        entries = await backend.list()
        assert [(e.type, e.timestamp) for e in entries] == [("instance", TS), ("instance", "20240102T000000Z")]

        latest = await backend.find_snapshot(WEB)
        assert latest.complete
        assert await backend.read_required_part(latest, "data") == b"second"
        manifest = await backend.read_manifest(latest)
        assert manifest.name == "web"

        checksums = parse_checksums(await backend.read_required_part(latest, "checksums"))
        assert [c.name for c in checksums] == ["export.tar.xz", "manifest.json"]
        assert checksums[0].hash == await backend.hash_part(latest.parts["data"])

    @pytest.mark.asyncio
    async def test_list_is_stable(self, backend):
        await _store(backend, key=ResourceKey.instance("default", "web"), timestamp="20240102T000000Z")
        await _store(backend, key=ResourceKey.instance("default", "db"))
        await _store(backend)

        first = [e.to_dict() for e in await backend.list()]
        second = [e.to_dict() for e in await backend.list()]
        assert first == second
        assert [(d["name"], d["timestamp"]) for d in first] == [
            ("db", TS),
            ("web", TS),
            ("web", "20240102T000000Z"),
        ]

    @pytest.mark.asyncio
    async def test_list_needs_manifest(self, backend, fake_restic):
        fake_restic.add_entry(encode_tags(WEB, TS, "data"), b"orphan")
        assert await backend.list() == []
        snapshots = await backend.snapshots(ResourceKind.INSTANCE)
        assert snapshots[0].missing_parts == ["manifest", "checksums"]

    @pytest.mark.asyncio
    async def test_list_ignores_images(self, backend):
        assert await backend.list([ResourceKind.IMAGE]) == []
        assert await backend.snapshots(ResourceKind.IMAGE) == []

    @pytest.mark.asyncio
    async def test_existing_version_rejected(self, backend):
        await _store(backend)
        with pytest.raises(SnapshotExistsError):
            await _store(backend)

    @pytest.mark.asyncio
    async def test_delete_forgets_every_entry_at_once(self, backend, fake_restic):
        await _store(backend)
        fake_restic.add_entry(encode_tags(WEB, TS, "data"), b"duplicate")
        snapshot = await backend.find_snapshot(WEB)
        assert len(snapshot.entry_ids) == 4

        await backend.delete_snapshot(snapshot, reclaim=False)

        assert fake_restic.forgotten == [(snapshot.entry_ids, False)]
        assert fake_restic.entries == {}

    @pytest.mark.asyncio
    async def test_open_forgotten_part(self, backend, fake_restic):
        await _store(backend)
        snapshot = await backend.find_snapshot(WEB)
        fake_restic.entries.pop(snapshot.parts["data"].locator)
        with pytest.raises(PartNotFoundError):
            await backend.read_part_bytes(snapshot.parts["data"])
