"""Host client that drives the ``incus`` command-line tool."""

import json
import os
import shutil
import subprocess
import tempfile
from typing import Any, BinaryIO, Dict, List, Optional, Sequence
from urllib.parse import quote, urlencode

from .._utils import logger
from ..errors import HostConflictError, HostError, HostNotFoundError
from .models import CustomVolume, Instance, Network, Profile, Project, StoragePool

COPY_CHUNK = 1024 * 1024


class _TempExport:
    """Readable over a finished export file; the file is removed on close."""

    def __init__(self, path: str):
        self.path = path
        self._file = open(path, "rb")

    def read(self, size: int = -1) -> bytes:
        return self._file.read(size)

    def close(self) -> None:
        try:
            self._file.close()
        finally:
            if os.path.exists(self.path):
                os.remove(self.path)


class IncusCLIClient:
    """HostClient implementation built on ``incus query`` and export/import.

    Exports are written to a temporary file first, since the server builds
    the backup tarball before it can be downloaded. Imports stream into the
    CLI's stdin.
    """

    def __init__(self, binary: str = "incus", workdir: Optional[str] = None):
        self.binary = binary
        self.workdir = workdir

    def _run(self, args: Sequence[str], stdin: Optional[BinaryIO] = None) -> str:
        cmd = [self.binary, *args]
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            if stdin is None:
                proc = subprocess.run(cmd, capture_output=True, check=False)
                stdout, stderr, code = proc.stdout, proc.stderr, proc.returncode
            else:
                proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
                try:
                    shutil.copyfileobj(stdin, proc.stdin, COPY_CHUNK)
                    proc.stdin.close()
                except BrokenPipeError:
                    pass
                except BaseException:
                    proc.kill()
                    proc.wait()
                    raise
                stdout, stderr = proc.communicate()
                code = proc.returncode
        except FileNotFoundError as e:
            raise HostError(f"incus binary not found: {self.binary}") from e

        if code != 0:
            message = stderr.decode("utf-8", "replace").strip()
            lowered = message.lower()
            if "not found" in lowered:
                raise HostNotFoundError(message)
            if "already exists" in lowered:
                raise HostConflictError(message)
            raise HostError(f"incus {args[0]} failed (exit {code}): {message}")
        return stdout.decode("utf-8", "replace")

    def _query(self, path: str, method: str = "GET", data: Optional[Dict[str, Any]] = None, project: Optional[str] = None) -> Any:
        params = {"recursion": "1"} if method == "GET" else {}
        if project:
            params["project"] = project
        url = path + (f"?{urlencode(params)}" if params else "")
        args = ["query", "-X", method, url]
        if data is not None:
            args.extend(["--data", json.dumps(data)])
        out = self._run(args)
        return json.loads(out) if out.strip() else None

    # Projects, profiles, networks, pools -----------------------------------

    def list_projects(self) -> List[Project]:
        return sorted((Project(**_pick(p, "name", "description", "config")) for p in self._query("/1.0/projects")),
                      key=lambda p: p.name)

    def create_project(self, project: Project) -> None:
        self._query("/1.0/projects", "POST", project.model_dump())

    def update_project(self, project: Project) -> None:
        self._query(f"/1.0/projects/{quote(project.name)}", "PUT",
                    {"description": project.description, "config": project.config})

    def delete_project(self, name: str) -> None:
        self._query(f"/1.0/projects/{quote(name)}", "DELETE")

    def list_profiles(self) -> List[Profile]:
        return sorted((Profile(**_pick(p, "name", "description", "config", "devices")) for p in self._query("/1.0/profiles")),
                      key=lambda p: p.name)

    def list_networks(self) -> List[Network]:
        return sorted((Network(**_pick(n, "name", "description", "managed", "type", "config")) for n in self._query("/1.0/networks")),
                      key=lambda n: n.name)

    def create_network(self, network: Network) -> None:
        self._query("/1.0/networks", "POST", network.model_dump(exclude={"managed"}))

    def update_network(self, network: Network) -> None:
        self._query(f"/1.0/networks/{quote(network.name)}", "PUT",
                    {"description": network.description, "config": network.config})

    def delete_network(self, name: str) -> None:
        self._query(f"/1.0/networks/{quote(name)}", "DELETE")

    def list_storage_pools(self) -> List[StoragePool]:
        return sorted((StoragePool(**_pick(p, "name", "driver", "description", "config")) for p in self._query("/1.0/storage-pools")),
                      key=lambda p: p.name)

    def create_storage_pool(self, pool: StoragePool) -> None:
        self._query("/1.0/storage-pools", "POST", pool.model_dump())

    def update_storage_pool(self, pool: StoragePool) -> None:
        self._query(f"/1.0/storage-pools/{quote(pool.name)}", "PUT",
                    {"description": pool.description, "config": pool.config})

    def delete_storage_pool(self, name: str) -> None:
        self._query(f"/1.0/storage-pools/{quote(name)}", "DELETE")

    # Instances -------------------------------------------------------------

    def list_instances(self, project: str) -> List[Instance]:
        return [
            Instance(name=i["name"], project=project, type=i.get("type", ""), status=i.get("status", ""))
            for i in self._query("/1.0/instances", project=project) or []
        ]

    def instance_exists(self, project: str, name: str) -> bool:
        try:
            self._query(f"/1.0/instances/{quote(name)}", project=project)
        except HostNotFoundError:
            return False
        return True

    def _export(self, args: List[str], optimized: bool) -> _TempExport:
        fd, path = tempfile.mkstemp(prefix="incus-export-", suffix=".tar.xz", dir=self.workdir)
        os.close(fd)
        os.remove(path)
        if optimized:
            args.append("--optimized-storage")
        try:
            self._run(_with_target(args, path))
        except BaseException:
            if os.path.exists(path):
                os.remove(path)
            raise
        return _TempExport(path)

    def export_instance(self, project: str, name: str, optimized: bool, snapshot: Optional[str] = None) -> BinaryIO:
        return self._export(["export", name, "{target}", "--project", project], optimized)

    def import_instance(self, project: str, target_name: str, stream: BinaryIO) -> None:
        self._run(["import", "/dev/stdin", target_name, "--project", project], stdin=stream)

    def create_instance_snapshot(self, project: str, name: str, snapshot: str) -> None:
        self._run(["snapshot", "create", name, snapshot, "--project", project])

    def delete_instance_snapshot(self, project: str, name: str, snapshot: str) -> None:
        self._run(["snapshot", "delete", name, snapshot, "--project", project])

    def stop_instance(self, project: str, name: str, force: bool) -> None:
        args = ["stop", name, "--project", project]
        if force:
            args.append("--force")
        try:
            self._run(args)
        except HostError as e:
            if "already stopped" not in str(e).lower():
                raise

    def delete_instance(self, project: str, name: str) -> None:
        self._run(["delete", name, "--project", project])

    # Custom volumes --------------------------------------------------------

    def list_custom_volumes(self, project: str) -> List[CustomVolume]:
        volumes = []
        for pool in self.list_storage_pools():
            for v in self._query(f"/1.0/storage-pools/{quote(pool.name)}/volumes/custom", project=project) or []:
                if "/" in v["name"]:
                    continue  # snapshot
                volumes.append(CustomVolume(name=v["name"], project=project, pool=pool.name,
                                            content_type=v.get("content_type", "filesystem")))
        return volumes

    def volume_exists(self, project: str, pool: str, name: str) -> bool:
        try:
            self._query(f"/1.0/storage-pools/{quote(pool)}/volumes/custom/{quote(name)}", project=project)
        except HostNotFoundError:
            return False
        return True

    def export_volume(self, project: str, pool: str, name: str, optimized: bool, snapshot: Optional[str] = None) -> BinaryIO:
        return self._export(["storage", "volume", "export", pool, name, "{target}", "--project", project], optimized)

    def import_volume(self, project: str, pool: str, target_name: str, stream: BinaryIO) -> None:
        self._run(["storage", "volume", "import", pool, "/dev/stdin", target_name, "--project", project], stdin=stream)

    def create_volume_snapshot(self, project: str, pool: str, name: str, snapshot: str) -> None:
        self._run(["storage", "volume", "snapshot", "create", pool, name, snapshot, "--project", project])

    def delete_volume_snapshot(self, project: str, pool: str, name: str, snapshot: str) -> None:
        self._run(["storage", "volume", "snapshot", "delete", pool, name, snapshot, "--project", project])

    def delete_volume(self, project: str, pool: str, name: str) -> None:
        self._run(["storage", "volume", "delete", pool, name, "--project", project])


def _pick(data: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    return {k: data[k] for k in keys if data.get(k) is not None}


def _with_target(args: List[str], path: str) -> List[str]:
    return [path if a == "{target}" else a for a in args]
