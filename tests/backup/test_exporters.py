"""Tests for instance, volume and config exporters."""

import json

import pytest

from incus_backup._identity import LogicalSnapshot, ResourceKey, ResourceKind
from incus_backup._storage.directory import DirectorySnapshotStorage
from incus_backup.backup.exporters import (
    ConfigExporter,
    InstanceExporter,
    RestoreOptions,
    RestorePlan,
    VolumeExporter,
    should_replace,
)
from incus_backup.errors import (
    CorruptSnapshotError,
    HostConflictError,
    HostError,
    MissingPartError,
    SnapshotNotFoundError,
    SnapshotTypeError,
    TransferError,
)
from incus_backup.host import HostAdapter
from incus_backup.host.models import Project, StoragePool

TS1 = "20240101T000000Z"
TS2 = "20240102T000000Z"


@pytest.fixture
def backend(temp_dir, small_transfer):
    return DirectorySnapshotStorage(str(temp_dir), small_transfer)


@pytest.fixture
def instances(fake_host, backend):
    return InstanceExporter(HostAdapter(fake_host), backend)


@pytest.fixture
def volumes(fake_host, backend):
    return VolumeExporter(HostAdapter(fake_host), backend)


class TestRestoreOptions:
    """Test replace/skip policy."""

    def test_mutually_exclusive(self):
        with pytest.raises(ValueError):
            RestoreOptions(replace=True, skip_existing=True)

    @pytest.mark.asyncio
    async def test_policy(self):
        plan = RestorePlan(snapshot=_snapshot(), project="default", target_name="web", exists=True)
        assert await should_replace(plan, RestoreOptions(replace=True)) is True
        assert await should_replace(plan, RestoreOptions(skip_existing=True)) is False
        with pytest.raises(HostConflictError, match="--replace or --skip-existing"):
            await should_replace(plan, RestoreOptions())

    @pytest.mark.asyncio
    async def test_confirm_callback(self):
        plan = RestorePlan(snapshot=_snapshot(), project="default", target_name="web", exists=True)
        questions = []

        def confirm(question):
            questions.append(question)
            return False

        assert await should_replace(plan, RestoreOptions(confirm=confirm)) is False
        assert questions == ["Instance web already exists in project default. Replace it?"]

        async def yes(question):
            return True

        assert await should_replace(plan, RestoreOptions(confirm=yes)) is True

    def test_describe(self):
        plan = RestorePlan(snapshot=_snapshot(), project="default", target_name="web", exists=True)
        assert plan.describe(RestoreOptions(skip_existing=True)) == (
            f"Would restore instance web in default from {TS1}: skip"
        )
        assert plan.action(RestoreOptions()) == "error (exists)"
        plan.exists = False
        assert plan.action(RestoreOptions()) == "create"


def _snapshot():
    return LogicalSnapshot(key=ResourceKey.instance("default", "web"), timestamp=TS1)


class TestInstanceExporter:
    """Test instance backup and restore."""

    @pytest.mark.asyncio
    async def test_export_and_restore_as_new_name(self, instances, fake_host):
        await instances.export("default", "web", timestamp=TS1)

        plan = await instances.plan_restore("default", "web", target_name="web-copy")
        assert plan.exists is False
        assert await instances.restore(plan) == "restored"
        assert fake_host.instances[("default", "web-copy")] == b"web-instance-export-payload"

    @pytest.mark.asyncio
    async def test_export_through_temporary_snapshot(self, instances, fake_host):
        await instances.export("default", "web", snapshot=True, timestamp=TS1)

        assert ("create_instance_snapshot", "default", "web", f"tmp-incus-backup-{TS1}") in fake_host.calls
        assert ("export_instance", "default", "web", False, f"tmp-incus-backup-{TS1}") in fake_host.calls
        assert fake_host.instance_snapshots == set()

        manifest = await instances.backend.read_manifest(
            await instances.backend.find_snapshot(ResourceKey.instance("default", "web"))
        )
        assert manifest.options == {"snapshot": "true", "optimized": "false"}

    @pytest.mark.asyncio
    async def test_temporary_snapshot_removed_on_failure(self, instances, fake_host):
        fake_host.fail["export_instance"] = HostError("export failed")
        with pytest.raises(HostError):
            await instances.export("default", "web", snapshot=True, timestamp=TS1)
        assert fake_host.instance_snapshots == set()
        assert fake_host.calls[-1][0] == "delete_instance_snapshot"

    @pytest.mark.asyncio
    async def test_restore_latest_and_exact(self, instances, fake_host):
        await instances.export("default", "web", timestamp=TS1)
        fake_host.instances[("default", "web")] = b"second version"
        await instances.export("default", "web", timestamp=TS2)

        latest = await instances.plan_restore("default", "web", target_name="latest")
        assert latest.snapshot.timestamp == TS2
        await instances.restore(latest)
        assert fake_host.instances[("default", "latest")] == b"second version"

        old = await instances.plan_restore("default", "web", timestamp=TS1, target_name="old")
        await instances.restore(old)
        assert fake_host.instances[("default", "old")] == b"web-instance-export-payload"

    @pytest.mark.asyncio
    async def test_restore_missing_version(self, instances):
        await instances.export("default", "web", timestamp=TS1)
        with pytest.raises(SnapshotNotFoundError):
            await instances.plan_restore("default", "web", timestamp=TS2)

    @pytest.mark.asyncio
    async def test_restore_existing_requires_policy(self, instances, fake_host):
        await instances.export("default", "web", timestamp=TS1)
        plan = await instances.plan_restore("default", "web")
        assert plan.exists is True

        with pytest.raises(HostConflictError):
            await instances.restore(plan)
        assert await instances.restore(plan, RestoreOptions(skip_existing=True)) == "skipped"
        assert not any(c[0] == "delete_instance" for c in fake_host.calls)

    @pytest.mark.asyncio
    async def test_restore_replace_stops_and_deletes(self, instances, fake_host):
        await instances.export("default", "web", timestamp=TS1)
        fake_host.instances[("default", "web")] = b"changed since backup"

        plan = await instances.plan_restore("default", "web")
        assert await instances.restore(plan, RestoreOptions(replace=True)) == "restored"

        names = [c[0] for c in fake_host.calls]
        assert names.index("stop_instance") < names.index("delete_instance") < names.index("import_instance")
        assert fake_host.instances[("default", "web")] == b"web-instance-export-payload"

    @pytest.mark.asyncio
    async def test_restore_rejects_wrong_manifest_type(self, instances, backend, temp_dir):
        await instances.export("default", "web", timestamp=TS1)
        manifest = temp_dir / "instances" / "default" / "web" / TS1 / "manifest.json"
        data = json.loads(manifest.read_text())
        data["type"] = "volume"
        manifest.write_text(json.dumps(data))

        with pytest.raises(SnapshotTypeError):
            await instances.plan_restore("default", "web")

    @pytest.mark.asyncio
    async def test_restore_without_data_part(self, instances, fake_host, temp_dir):
        await instances.export("default", "web", timestamp=TS1)
        (temp_dir / "instances" / "default" / "web" / TS1 / "export.tar.xz").unlink()

        plan = await instances.plan_restore("default", "web", target_name="copy")
        with pytest.raises(MissingPartError):
            await instances.restore(plan)
        assert ("default", "copy") not in fake_host.instances

    @pytest.mark.asyncio
    async def test_replace_keeps_instance_when_data_missing(self, instances, fake_host, temp_dir):
        await instances.export("default", "web", timestamp=TS1)
        (temp_dir / "instances" / "default" / "web" / TS1 / "export.tar.xz").unlink()

        plan = await instances.plan_restore("default", "web")
        with pytest.raises(MissingPartError):
            await instances.restore(plan, RestoreOptions(replace=True))
        assert fake_host.instances[("default", "web")] == b"web-instance-export-payload"
        assert not any(c[0] == "delete_instance" for c in fake_host.calls)

    @pytest.mark.asyncio
    async def test_import_failure_surfaces(self, instances, fake_host):
        await instances.export("default", "web", timestamp=TS1)
        fake_host.fail["import_instance"] = HostError("import rejected")
        plan = await instances.plan_restore("default", "web", target_name="copy")
        with pytest.raises(TransferError, match="import rejected"):
            await instances.restore(plan)


class TestVolumeExporter:
    """Test volume backup and restore."""

    @pytest.mark.asyncio
    async def test_roundtrip(self, volumes, fake_host):
        await volumes.export("default", "local", "data", snapshot=True, timestamp=TS1)
        assert fake_host.volume_snapshots == set()

        plan = await volumes.plan_restore("default", "local", "data")
        assert plan.exists is True
        assert plan.pool == "local"

        fake_host.volumes[("default", "local", "data")] = b"modified"
        assert await volumes.restore(plan, RestoreOptions(replace=True)) == "restored"
        assert fake_host.volumes[("default", "local", "data")] == b"data-volume-export-payload"
        assert ("delete_volume", "default", "local", "data") in fake_host.calls

    @pytest.mark.asyncio
    async def test_restore_unknown_volume(self, volumes, instances):
        await instances.export("default", "web", timestamp=TS1)
        with pytest.raises(SnapshotNotFoundError):
            await volumes.plan_restore("default", "local", "web")


class TestConfigExporter:
    """Test config capture and reconciliation."""

    @pytest.mark.asyncio
    async def test_export_writes_all_parts(self, fake_host, backend, temp_dir):
        exporter = ConfigExporter(HostAdapter(fake_host), backend)
        await exporter.export(timestamp=TS1)

        files = sorted(p.name for p in (temp_dir / "config" / TS1).iterdir())
        assert files == [
            "checksums.txt", "manifest.json", "networks.json",
            "profiles.json", "projects.json", "storage_pools.json",
        ]
        projects = json.loads((temp_dir / "config" / TS1 / "projects.json").read_text())
        assert projects[0]["name"] == "default"

    @pytest.mark.asyncio
    async def test_load_roundtrip(self, fake_host, backend):
        exporter = ConfigExporter(HostAdapter(fake_host), backend)
        await exporter.export(timestamp=TS1)

        snapshot, captured = await exporter.load()
        assert snapshot.timestamp == TS1
        assert [p.name for p in captured.profiles] == ["default"]
        assert captured.networks[0].config == {"ipv4.address": "10.0.0.1/24"}

    @pytest.mark.asyncio
    async def test_restore_preview_then_apply(self, fake_host, backend):
        exporter = ConfigExporter(HostAdapter(fake_host), backend)
        await exporter.export(timestamp=TS1)

        fake_host.projects["default"] = Project(name="default", config={"features.images": "false"})
        fake_host.projects["scratch"] = Project(name="scratch")
        fake_host.storage_pools["extra"] = StoragePool(name="extra", driver="btrfs")

        preview = await exporter.restore()
        assert not preview.applied
        assert [name for name, _, _ in preview.plan.projects.to_update] == ["default"]
        assert [p.name for p in preview.plan.projects.to_delete] == ["scratch"]
        assert fake_host.projects["default"].config == {"features.images": "false"}

        result = await exporter.restore(apply=True)
        assert result.applied
        assert fake_host.projects["default"].config == {"features.images": "true"}
        assert "scratch" not in fake_host.projects
        assert "extra" in fake_host.storage_pools
        assert result.summary.skipped_deletes == ["storage/extra"]

    @pytest.mark.asyncio
    async def test_missing_declared_part(self, fake_host, backend, temp_dir):
        exporter = ConfigExporter(HostAdapter(fake_host), backend)
        await exporter.export(timestamp=TS1)
        (temp_dir / "config" / TS1 / "networks.json").unlink()

        with pytest.raises(MissingPartError, match="networks"):
            await exporter.load(TS1)

    @pytest.mark.asyncio
    async def test_no_config_snapshot(self, fake_host, backend):
        exporter = ConfigExporter(HostAdapter(fake_host), backend)
        with pytest.raises(SnapshotNotFoundError):
            await exporter.restore()

    @pytest.mark.asyncio
    async def test_config_kind_is_listed(self, fake_host, backend):
        await ConfigExporter(HostAdapter(fake_host), backend).export(timestamp=TS1)
        entries = await backend.list([ResourceKind.CONFIG])
        assert [(e.type, e.timestamp) for e in entries] == [("config", TS1)]

    @pytest.mark.asyncio
    async def test_invalid_part_is_corrupt(self, fake_host, backend, temp_dir):
        exporter = ConfigExporter(HostAdapter(fake_host), backend)
        await exporter.export(timestamp=TS1)
        (temp_dir / "config" / TS1 / "projects.json").write_text('[{"name": ""}]')

        with pytest.raises(CorruptSnapshotError, match="corrupt part 'projects' for config at " + TS1):
            await exporter.load(TS1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [b"{not json", b'{"name": "default"}', b"\xff\xfe"])
    async def test_undecodable_part_is_corrupt(self, fake_host, backend, temp_dir, content):
        exporter = ConfigExporter(HostAdapter(fake_host), backend)
        await exporter.export(timestamp=TS1)
        (temp_dir / "config" / TS1 / "networks.json").write_bytes(content)

        with pytest.raises(CorruptSnapshotError) as exc_info:
            await exporter.restore(TS1)
        assert exc_info.value.part == "networks"
        assert exc_info.value.timestamp == TS1
