"""Tests for host clients and the async adapter."""

import io
import json
import os
import subprocess

import pytest
from unittest.mock import MagicMock, patch

from incus_backup._transfer import transfer
from incus_backup.errors import HostConflictError, HostError, HostNotFoundError
from incus_backup.host import HostAdapter
from incus_backup.host.incus_cli import IncusCLIClient
from incus_backup.host.models import Network, Project
from incus_backup.progress import ProgressPrinter, format_progress


class _Stdin(io.BytesIO):
    """Captures bytes written to a child process and counts close calls."""

    close_calls = 0

    def close(self):
        self.close_calls += 1


def _completed(stdout=b"", stderr=b"", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestIncusCLIClient:
    """Test the incus command-line client with a mocked subprocess."""

    def test_list_projects_sorted(self):
        payload = json.dumps([
            {"name": "zeta", "description": "", "config": {}},
            {"name": "default", "description": "Default", "config": {"features.images": "true"}, "used_by": []},
        ]).encode()
        with patch("incus_backup.host.incus_cli.subprocess.run", return_value=_completed(payload)) as run:
            projects = IncusCLIClient().list_projects()

        assert [p.name for p in projects] == ["default", "zeta"]
        assert projects[0].config == {"features.images": "true"}
        assert run.call_args.args[0] == ["incus", "query", "-X", "GET", "/1.0/projects?recursion=1"]

    def test_update_network_sends_put(self):
        with patch("incus_backup.host.incus_cli.subprocess.run", return_value=_completed()) as run:
            IncusCLIClient().update_network(Network(name="br0", config={"ipv4.nat": "true"}))

        args = run.call_args.args[0]
        assert args[:5] == ["incus", "query", "-X", "PUT", "/1.0/networks/br0"]
        assert json.loads(args[-1]) == {"description": "", "config": {"ipv4.nat": "true"}}

    @pytest.mark.parametrize("stderr, error", [
        (b"Error: Instance not found", HostNotFoundError),
        (b"Error: Project already exists", HostConflictError),
        (b"Error: permission denied", HostError),
    ])
    def test_error_classification(self, stderr, error):
        with patch("incus_backup.host.incus_cli.subprocess.run", return_value=_completed(stderr=stderr, returncode=1)):
            with pytest.raises(error):
                IncusCLIClient().create_project(Project(name="p"))

    def test_instance_exists(self):
        client = IncusCLIClient()
        with patch("incus_backup.host.incus_cli.subprocess.run", return_value=_completed(b"{}")):
            assert client.instance_exists("default", "web") is True
        with patch("incus_backup.host.incus_cli.subprocess.run",
                   return_value=_completed(stderr=b"Error: not found", returncode=1)):
            assert client.instance_exists("default", "web") is False

    def test_missing_binary(self):
        with patch("incus_backup.host.incus_cli.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(HostError, match="incus binary not found"):
                IncusCLIClient(binary="/nope/incus").list_profiles()

    def test_export_reads_and_removes_temp_file(self, temp_dir):
        def fake_run(cmd, **kwargs):
            with open(cmd[3], "wb") as f:
                f.write(b"tarball")
            return _completed()

        with patch("incus_backup.host.incus_cli.subprocess.run", side_effect=fake_run) as run:
            stream = IncusCLIClient(workdir=str(temp_dir)).export_instance("default", "web", optimized=True)

        cmd = run.call_args.args[0]
        assert cmd[:3] == ["incus", "export", "web"]
        assert cmd[-1] == "--optimized-storage"
        assert stream.read() == b"tarball"
        stream.close()
        assert os.listdir(temp_dir) == []

    def test_failed_export_leaves_no_temp_file(self, temp_dir):
        def fake_run(cmd, **kwargs):
            with open(next(a for a in cmd if a.endswith(".tar.xz")), "wb") as f:
                f.write(b"partial")
            return _completed(stderr=b"Error: disk full", returncode=1)

        with patch("incus_backup.host.incus_cli.subprocess.run", side_effect=fake_run):
            with pytest.raises(HostError, match="disk full"):
                IncusCLIClient(workdir=str(temp_dir)).export_volume("default", "local", "data", optimized=False)
        assert os.listdir(temp_dir) == []

    def test_import_streams_stdin(self):
        proc = MagicMock()
        proc.stdin = _Stdin()
        proc.communicate.return_value = (b"", b"")
        proc.returncode = 0

        with patch("incus_backup.host.incus_cli.subprocess.Popen", return_value=proc) as popen:
            IncusCLIClient().import_instance("default", "restored", io.BytesIO(b"backup bytes"))

        assert popen.call_args.args[0] == ["incus", "import", "/dev/stdin", "restored", "--project", "default"]
        assert proc.stdin.getvalue() == b"backup bytes"
        assert proc.stdin.close_calls == 1

    def test_stop_already_stopped(self):
        with patch("incus_backup.host.incus_cli.subprocess.run",
                   return_value=_completed(stderr=b"Error: The instance is already stopped", returncode=1)):
            IncusCLIClient().stop_instance("default", "web", force=True)


class TestHostAdapter:
    """Test the adapter over sync and async clients."""

    @pytest.mark.asyncio
    async def test_sync_client(self, fake_host):
        adapter = HostAdapter(fake_host)
        assert [p.name for p in await adapter.list_projects()] == ["default"]
        assert await adapter.instance_exists("default", "web") is True
        assert await adapter.volume_exists("default", "local", "missing") is False

    @pytest.mark.asyncio
    async def test_async_client(self):
        class AsyncClient:
            def __init__(self):
                self.imported = b""

            async def list_networks(self):
                return [Network(name="br0")]

            async def import_instance(self, project, target_name, pipe):
                async for chunk in pipe:
                    self.imported += chunk

        client = AsyncClient()
        adapter = HostAdapter(client)
        assert [n.name for n in await adapter.list_networks()] == ["br0"]

        await transfer(b"streamed import", adapter.import_instance_sink("default", "web"))
        assert client.imported == b"streamed import"

    @pytest.mark.asyncio
    async def test_blocking_import_sink(self, fake_host, small_transfer):
        adapter = HostAdapter(fake_host)
        await transfer(b"restored payload", adapter.import_instance_sink("default", "copy"), config=small_transfer)
        assert fake_host.instances[("default", "copy")] == b"restored payload"


class TestProgress:
    """Test progress formatting."""

    def test_format_progress(self):
        assert format_progress(512, 2048, "export") == "[export] 25% (512/2,048 bytes)"
        assert format_progress(4096, 2048, "export") == "[export] 100% (4,096/2,048 bytes)"
        assert format_progress(1500000, None, "dump") == "[dump] 1,500,000 bytes"

    def test_printer_rewrites_line(self):
        stream = io.StringIO()
        printer = ProgressPrinter(stream)
        printer(1, 4, "a")
        printer(4, 4, "a")
        printer(10, None, "b")
        printer.finish()
        printer.finish()

        assert stream.getvalue() == (
            "\r[a] 25% (1/4 bytes)\r[a] 100% (4/4 bytes)\n\r[b] 10 bytes\n"
        )
