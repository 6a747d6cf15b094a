"""Async wrapper around the restic command-line tool."""

import asyncio
import json
import os
import re
from datetime import datetime, timezone
from typing import AsyncIterable, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, field_validator
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .._identity import tag_map
from .._utils import logger
from ..config import ResticConfig, TransferConfig
from ..errors import (
    ResticError,
    ResticLockedError,
    ResticNotFoundError,
    ResticNotInstalledError,
)

_FRACTION = re.compile(r"\.(\d+)")


def parse_restic_time(value) -> datetime:
    """Parse restic's RFC3339 timestamps, which carry nanosecond precision."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class ResticSnapshot(BaseModel):
    """A repository entry as reported by ``restic snapshots --json``."""

    id: str = Field(..., description="Full snapshot id")
    short_id: str = Field("", description="Abbreviated snapshot id")
    time: datetime = Field(..., description="Snapshot creation time")
    tags: List[str] = Field(default_factory=list)
    paths: List[str] = Field(default_factory=list)

    @field_validator("time", mode="before")
    @classmethod
    def _parse_time(cls, value):
        return parse_restic_time(value)

    @field_validator("tags", "paths", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or []

    def tag_map(self) -> Dict[str, str]:
        return tag_map(self.tags)


def classify_error(args: Sequence[str], returncode: Optional[int], stderr: str) -> ResticError:
    """Map restic stderr output onto the error hierarchy."""
    text = stderr.strip()
    lowered = text.lower()
    message = f"restic {args[0] if args else ''} failed (exit {returncode}): {text}"
    if "repository is already locked" in lowered or "unable to create lock" in lowered:
        return ResticLockedError(message, returncode, text)
    if "not found" in lowered or "no matching id" in lowered or "cannot dump" in lowered:
        return ResticNotFoundError(message, returncode, text)
    return ResticError(message, returncode, text)


def is_not_repository(stderr: str) -> bool:
    lowered = stderr.lower()
    return "is not a repository" in lowered or "does not look like a restic repository" in lowered


class ResticRepository:
    """One restic repository, addressed through RESTIC_REPOSITORY.

    Credentials (RESTIC_PASSWORD, RESTIC_PASSWORD_FILE, ...) are taken from
    the inherited environment.
    """

    def __init__(
        self,
        repository: str,
        config: Optional[ResticConfig] = None,
        transfer_config: Optional[TransferConfig] = None,
        binary: Optional[str] = None,
    ):
        """Initialize repository wrapper.

        Args:
            repository: Repository location passed as RESTIC_REPOSITORY
            config: restic configuration (binary, retry policy)
            transfer_config: Chunk size used when streaming dumps
            binary: Resolved binary path overriding ``config.binary``
        """
        if not repository:
            raise ValueError("repository must not be empty")
        self.repository = repository
        self.config = config or ResticConfig()
        self.transfer_config = transfer_config or TransferConfig()
        self.binary = binary or self.config.binary
        self._retry_decorator = self._get_retry_decorator()

    def _get_retry_decorator(self):
        """Get retry decorator for repository lock contention."""
        return retry(
            stop=stop_after_attempt(self.config.lock_retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=self.config.lock_retry_max_wait),
            retry=retry_if_exception_type(ResticLockedError),
            reraise=True,
        )

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["RESTIC_REPOSITORY"] = self.repository
        return env

    async def _spawn(self, args: Sequence[str], stdin: Optional[int] = None) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdin=stdin if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except FileNotFoundError as e:
            raise ResticNotInstalledError(f"restic binary not found: {self.binary}") from e

    async def _run(self, args: Sequence[str]) -> Tuple[str, str, int]:
        """Run restic to completion and return stdout, stderr and exit code."""
        logger.debug(f"Running restic {' '.join(args)}")
        proc = await self._spawn(args)
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            await _terminate(proc)
            raise
        return stdout.decode("utf-8", "replace"), stderr.decode("utf-8", "replace"), proc.returncode

    async def _check(self, args: Sequence[str]) -> str:
        stdout, stderr, code = await self._run(args)
        if code != 0:
            raise classify_error(args, code, stderr)
        return stdout

    async def ensure_repository(self) -> None:
        """Probe the repository and initialize it when it does not exist yet."""
        await self._retry_decorator(self._ensure_repository)()

    async def _ensure_repository(self) -> None:
        args = ["snapshots", "--json", "--latest", "1"]
        _, stderr, code = await self._run(args)
        if code == 0:
            return
        if is_not_repository(stderr):
            logger.info(f"Initializing restic repository {self.repository}")
            await self._check(["init"])
            return
        raise classify_error(args, code, stderr)

    async def backup_stream(self, filename: str, tags: Iterable[str], chunks: AsyncIterable[bytes]) -> Optional[str]:
        """Store a stream as ``filename`` via ``restic backup --stdin``.

        Args:
            filename: Path recorded for the stdin payload
            tags: Tags attached to the new snapshot
            chunks: Async iterable of payload chunks

        Returns:
            Id of the created snapshot, when restic reports it
        """
        args = ["backup", "--stdin", "--stdin-filename", filename, "--json"]
        for tag in tags:
            args.extend(["--tag", tag])
        logger.debug(f"Running restic backup for {filename}")

        proc = await self._spawn(args, stdin=asyncio.subprocess.PIPE)
        stdout_task = asyncio.ensure_future(proc.stdout.read())
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            try:
                async for chunk in chunks:
                    proc.stdin.write(chunk)
                    await proc.stdin.drain()
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                # restic exited early; its exit status explains why
                pass
            await proc.wait()
        except BaseException:
            await _terminate(proc)
            stdout_task.cancel()
            stderr_task.cancel()
            raise

        stdout = (await stdout_task).decode("utf-8", "replace")
        stderr = (await stderr_task).decode("utf-8", "replace")
        if proc.returncode != 0:
            raise classify_error(args, proc.returncode, stderr)
        return _summary_snapshot_id(stdout)

    async def backup_bytes(self, filename: str, tags: Iterable[str], data: bytes) -> Optional[str]:
        """Store a small in-memory payload such as a manifest."""
        async def chunks():
            yield data
        return await self.backup_stream(filename, tags, chunks())

    async def dump(self, snapshot_id: str, path: str) -> AsyncIterator[bytes]:
        """Stream one file out of a snapshot via ``restic dump``.

        The subprocess is killed if the consumer stops early.

        Raises:
            ResticNotFoundError: Snapshot or path does not exist
        """
        args = ["dump", snapshot_id, path]
        logger.debug(f"Running restic dump {snapshot_id} {path}")
        proc = await self._spawn(args)
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            while True:
                chunk = await proc.stdout.read(self.transfer_config.chunk_size)
                if not chunk:
                    break
                yield chunk
            await proc.wait()
            stderr = (await stderr_task).decode("utf-8", "replace")
            if proc.returncode != 0:
                raise classify_error(args, proc.returncode, stderr)
        finally:
            if proc.returncode is None:
                await _terminate(proc)
            if not stderr_task.done():
                stderr_task.cancel()

    async def dump_bytes(self, snapshot_id: str, path: str) -> bytes:
        parts = []
        async for chunk in self.dump(snapshot_id, path):
            parts.append(chunk)
        return b"".join(parts)

    async def list_snapshots(self, tags: Optional[Sequence[str]] = None) -> List[ResticSnapshot]:
        """List snapshots carrying all of ``tags``, oldest first."""
        return await self._retry_decorator(self._list_snapshots)(list(tags or []))

    async def _list_snapshots(self, tags: List[str]) -> List[ResticSnapshot]:
        args = ["snapshots", "--json"]
        if tags:
            args.extend(["--tag", ",".join(tags)])
        stdout = await self._check(args)
        try:
            raw = json.loads(stdout or "[]")
        except json.JSONDecodeError as e:
            raise ResticError(f"restic snapshots returned invalid JSON: {e}") from e
        snapshots = [ResticSnapshot.model_validate(item) for item in raw or []]
        snapshots.sort(key=lambda s: s.time)
        return snapshots

    async def forget(self, snapshot_ids: Sequence[str], prune: bool = True) -> None:
        """Forget snapshots in one call, optionally pruning unreferenced data."""
        if not snapshot_ids:
            return
        args = ["forget"]
        if prune:
            args.append("--prune")
        args.extend(snapshot_ids)
        await self._retry_decorator(self._check)(args)
        logger.debug(f"Forgot {len(snapshot_ids)} restic snapshot(s)")


def _summary_snapshot_id(stdout: str) -> Optional[str]:
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            continue
        if message.get("message_type") == "summary":
            return message.get("snapshot_id")
    return None


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
