"""Tests for the command line interface."""

import io
import json
import os

import pytest
from unittest.mock import AsyncMock, patch

from incus_backup.cli import Safety, build_parser, confirm, main, render_table
from incus_backup.errors import ResticNotInstalledError
from incus_backup.host.models import Project
from incus_backup.restic.detect import BinaryInfo


class Runner:
    """Invoke main() with captured streams and the fake host."""

    def __init__(self, host):
        self.host = host

    def __call__(self, *argv, stdin=""):
        stdout, stderr = io.StringIO(), io.StringIO()
        code = main(
            list(argv),
            host_factory=lambda: self.host,
            stdin=io.StringIO(stdin),
            stdout=stdout,
            stderr=stderr,
        )
        return code, stdout.getvalue(), stderr.getvalue()


@pytest.fixture
def run(fake_host):
    return Runner(fake_host)


@pytest.fixture
def target(temp_dir):
    return f"dir:{temp_dir}"


class TestHelpers:
    """Test prompt and table helpers."""

    def test_confirm(self):
        out = io.StringIO()
        assert confirm(Safety(), "Go?", io.StringIO("yes\n"), out)
        assert out.getvalue() == "Go? [y/N]: "
        assert not confirm(Safety(), "Go?", io.StringIO("\n"), io.StringIO())
        assert confirm(Safety(yes=True), "Go?", io.StringIO(""), io.StringIO())
        assert not confirm(Safety(dry_run=True, yes=True), "Go?", io.StringIO("y\n"), io.StringIO())

    def test_render_table(self):
        table = render_table(("TYPE", "NAME"), [["instance", "web"], ["config", ""]])
        assert table == "TYPE      NAME\ninstance  web\nconfig\n"

    def test_parser_requires_target(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["list"])
        assert exc_info.value.code == 2

    def test_replace_and_skip_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["restore", "instance", "web", "--target", "dir:/x", "--replace", "--skip-existing"])

    def test_global_flags_after_subcommand(self):
        args = build_parser().parse_args(["restore", "config", "--target", "dir:/x", "--apply", "--yes", "--force"])
        assert args.yes and args.force
        assert not args.dry_run and not args.verbose

        args = build_parser().parse_args(["--yes", "prune", "--target", "dir:/x", "--dry-run"])
        assert args.yes and args.dry_run

        args = build_parser().parse_args(["restore", "instance", "web", "--target", "dir:/x", "-y", "-v"])
        assert args.yes and args.verbose

    def test_single_volume_needs_pool(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["restore", "volume", "data", "--target", "dir:/x"])


class TestCommands:
    """End-to-end command runs against a directory target."""

    def test_version_without_restic(self, run):
        with patch("incus_backup.cli.detect", AsyncMock(side_effect=ResticNotInstalledError("missing"))):
            code, out, _ = run("version")
        assert code == 0
        assert out.startswith("incus-backup ")
        assert "restic: not available" in out

    def test_version_with_restic(self, run):
        with patch("incus_backup.cli.detect", AsyncMock(return_value=BinaryInfo("/usr/bin/restic", "0.17.3"))):
            code, out, _ = run("version")
        assert code == 0
        assert "restic 0.17.3 (/usr/bin/restic, unsupported)" in out

    def test_backup_list_verify(self, run, target, temp_dir):
        code, out, err = run("backup", "all", "--target", target)
        assert code == 0, err
        assert "instance default/web @" in out

        code, out, _ = run("list", "--target", target)
        lines = out.splitlines()
        assert lines[0].split() == ["TYPE", "PROJECT", "POOL", "NAME", "FINGERPRINT", "TIMESTAMP"]
        assert [line.split()[0] for line in lines[1:]] == ["config", "instance", "volume"]

        code, out, _ = run("list", "volumes", "--target", target, "-o", "json")
        data = json.loads(out)
        assert [(d["type"], d["pool"], d["name"]) for d in data] == [("volume", "local", "data")]

        code, out, _ = run("verify", "--target", target)
        assert code == 0
        assert out.count(" ok") == 3

    def test_verify_reports_corruption(self, run, target, temp_dir):
        run("backup", "instances", "web", "--target", target)
        version_dir = next((temp_dir / "instances" / "default" / "web").iterdir())
        (version_dir / "export.tar.xz").write_bytes(b"bitrot")

        code, out, _ = run("verify", "instances", "--target", target, "-o", "json")

        assert code == 1
        result = json.loads(out)[0]
        assert result["status"] == "mismatch"
        assert result["files"][0]["name"] == "export.tar.xz"

    def test_dry_run_backup_writes_nothing(self, run, target, temp_dir):
        code, out, _ = run("--dry-run", "backup", "instances", "--target", target)
        assert code == 0
        assert "Would back up instances" in out
        assert os.listdir(temp_dir) == []

    def test_restore_existing_prompt_declined(self, run, target, fake_host):
        run("backup", "instances", "web", "--target", target)
        fake_host.instances[("default", "web")] = b"live data"

        code, out, _ = run("restore", "instance", "web", "--target", target, stdin="n\n")

        assert code == 0
        assert "Replace it? [y/N]" in out
        assert "instance web: skipped" in out
        assert fake_host.instances[("default", "web")] == b"live data"

    def test_restore_replace(self, run, target, fake_host):
        run("backup", "instances", "web", "--target", target)
        fake_host.instances[("default", "web")] = b"live data"

        code, out, _ = run("restore", "instance", "web", "--target", target, "--replace")

        assert code == 0
        assert "instance web: restored" in out
        assert fake_host.instances[("default", "web")] == b"web-instance-export-payload"

    def test_restore_dry_run(self, run, target, fake_host):
        run("backup", "instances", "web", "--target", target)
        code, out, _ = run("--dry-run", "restore", "instance", "web", "--target", target, "--target-name", "copy")
        assert code == 0
        assert "Would restore instance copy in default" in out
        assert ("default", "copy") not in fake_host.instances

    def test_restore_unknown_version(self, run, target):
        run("backup", "instances", "web", "--target", target)
        code, _, err = run("restore", "instance", "web", "--target", target, "--version", "20000101T000000Z")
        assert code == 1
        assert "no snapshot found for instance default/web at 20000101T000000Z" in err

    def test_restore_invalid_version(self, run, target):
        code, _, err = run("restore", "instance", "web", "--target", target, "--version", "yesterday")
        assert code == 1
        assert "invalid timestamp" in err

    def test_restore_config_preview_and_apply(self, run, target, fake_host):
        run("backup", "config", "--target", target)
        code, out, _ = run("restore", "config", "--target", target)
        assert code == 0
        assert "no changes" in out

        fake_host.projects["scratch"] = Project(name="scratch")
        code, out, _ = run("restore", "config", "--target", target, "--apply", "--yes")
        assert code == 0
        assert "[project] delete scratch" in out
        assert "project: created=0 updated=0 deleted=1" in out
        assert "scratch" not in fake_host.projects

    def test_restore_all_version(self, run, target, fake_host):
        for stamp in ("20240101T000000Z", "20240102T000000Z"):
            with patch("incus_backup.backup.exporters.config_exporter.new_timestamp", return_value=stamp), \
                    patch("incus_backup.backup.exporters.volume_exporter.new_timestamp", return_value=stamp), \
                    patch("incus_backup.backup.exporters.instance_exporter.new_timestamp", return_value=stamp):
                assert run("backup", "all", "--target", target)[0] == 0
            fake_host.instances[("default", "web")] = b"changed after " + stamp.encode()

        code, out, _ = run("restore", "all", "--target", target, "--version", "20240101T000000Z", "--replace", "--yes")

        assert code == 0
        assert "Config preview (20240101T000000Z)" in out
        assert "20240102T000000Z" not in out
        assert fake_host.instances[("default", "web")] == b"web-instance-export-payload"

        code, _, err = run("restore", "all", "--target", target, "--version", "20240105T000000Z", "--dry-run")
        assert code == 1
        assert "no snapshot found for config at 20240105T000000Z" in err

    def test_restore_corrupt_manifest(self, run, target, temp_dir, fake_host):
        run("backup", "instances", "web", "--target", target)
        version_dir = next((temp_dir / "instances" / "default" / "web").iterdir())
        (version_dir / "manifest.json").write_text("{not json")

        code, _, err = run("restore", "instance", "web", "--target", target, "--target-name", "copy")

        assert code == 1
        assert err.startswith("Error: corrupt part 'manifest' for instance default/web")
        assert ("default", "copy") not in fake_host.instances

    def test_restore_config_invalid_part(self, run, target, temp_dir, fake_host):
        run("backup", "config", "--target", target)
        version_dir = next((temp_dir / "config").iterdir())
        (version_dir / "projects.json").write_text('[{"name": ""}]')
        fake_host.projects["scratch"] = Project(name="scratch")

        code, _, err = run("restore", "config", "--target", target, "--apply", "--yes")

        assert code == 1
        assert err.startswith("Error: corrupt part 'projects' for config")
        assert "scratch" in fake_host.projects

    def test_prune(self, run, target, temp_dir):
        stamps = ["20240101T000000Z", "20240102T000000Z", "20240103T000000Z"]
        with patch("incus_backup.backup.exporters.instance_exporter.new_timestamp", side_effect=stamps):
            for _ in stamps:
                assert run("backup", "instances", "web", "--target", target)[0] == 0

        code, out, _ = run("prune", "--target", target, "--keep", "1", stdin="n\n")
        assert code == 0
        assert "20240101T000000Z  delete" in out
        assert len(os.listdir(temp_dir / "instances" / "default" / "web")) == 3

        code, out, _ = run("--yes", "prune", "--target", target, "--keep", "1")
        assert code == 0
        assert "Deleted 2 snapshots" in out
        assert os.listdir(temp_dir / "instances" / "default" / "web") == ["20240103T000000Z"]

    def test_prune_invalid_keep(self, run, target):
        code, _, err = run("prune", "--target", target, "--keep", "0")
        assert code == 1
        assert "--keep must be > 0" in err

    @pytest.mark.parametrize("raw", ["relative/path", "s3:bucket", "dir:"])
    def test_invalid_target(self, run, raw):
        code, _, err = run("list", "--target", raw)
        assert code == 1
        assert err.startswith("Error: ")

    def test_unknown_kind(self, run, target):
        code, _, err = run("list", "containers", "--target", target)
        assert code == 1
        assert "unknown kind" in err

    def test_restic_lookup_only_for_restic_targets(self, run, target):
        with patch("incus_backup.config.shutil.which", return_value=None) as which:
            assert run("list", "--target", target)[0] == 0
        which.assert_not_called()

        missing = AsyncMock(side_effect=ResticNotInstalledError("restic binary not found"))
        with patch("incus_backup.config.shutil.which", return_value=None) as which, \
                patch("incus_backup.cli.detect", missing):
            code, _, err = run("list", "--target", "restic:/srv/restic")
        assert code == 1
        assert "restic binary not found" in err
        assert which.called

    def test_old_restic_declined(self, run):
        info = BinaryInfo("/usr/bin/restic", "0.16.0")
        with patch("incus_backup.cli.detect", AsyncMock(return_value=info)):
            code, _, err = run("list", "--target", "restic:/srv/restic", stdin="n\n")
        assert code == 1
        assert "unsupported restic version" in err

    def test_invalid_environment(self, run):
        with patch.dict(os.environ, {"PRUNE_KEEP": "0"}):
            code, _, err = run("version")
        assert code == 1
        assert "invalid configuration" in err
