"""Locate the restic binary and check its version."""

import asyncio
import re
import shutil
from dataclasses import dataclass
from typing import Optional, Tuple

from .._utils import logger
from ..config import ResticConfig
from ..errors import ResticError, ResticNotInstalledError

REQUIRED_VERSION = "0.18.0"

_VERSION_RE = re.compile(r"restic\s+([0-9]+\.[0-9]+\.[0-9]+(?:-[A-Za-z0-9.]+)?)")


@dataclass(frozen=True)
class BinaryInfo:
    """Detected restic binary."""
    path: str
    version: str


def extract_version(output: str) -> Optional[str]:
    """Return the first ``restic X.Y.Z[-pre]`` version found in ``output``."""
    for line in output.splitlines():
        match = _VERSION_RE.search(line)
        if match:
            return match.group(1)
    return None


def _parse_semver(value: str) -> Optional[Tuple[int, int, int, str]]:
    core, _, pre = value.strip().partition("-")
    numbers = core.split(".")
    if len(numbers) != 3:
        return None
    try:
        major, minor, patch = (int(n) for n in numbers)
    except ValueError:
        return None
    return major, minor, patch, pre


def compare_versions(left: str, right: str) -> int:
    """Compare two semantic versions; a pre-release sorts before its release.

    Raises:
        ValueError: If either version cannot be parsed
    """
    a, b = _parse_semver(left), _parse_semver(right)
    if a is None or b is None:
        raise ValueError(f"cannot compare versions {left!r} and {right!r}")
    if a[:3] != b[:3]:
        return 1 if a[:3] > b[:3] else -1
    if a[3] == b[3]:
        return 0
    if not a[3]:
        return 1
    if not b[3]:
        return -1
    return 1 if a[3] > b[3] else -1


def is_compatible(version: str, required: str = REQUIRED_VERSION) -> bool:
    try:
        return compare_versions(version, required) >= 0
    except ValueError:
        return False


async def query_version(binary: str, timeout: Optional[float] = None) -> str:
    """Run ``restic version`` and parse its output.

    Args:
        binary: Path to the restic executable
        timeout: Seconds to wait; defaults to ResticConfig.version_timeout

    Raises:
        ResticError: Command failed, timed out, or printed no version
    """
    timeout = timeout if timeout is not None else ResticConfig().version_timeout
    try:
        proc = await asyncio.create_subprocess_exec(
            binary, "version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ResticNotInstalledError(f"restic binary not found: {binary}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ResticError(f"restic version timed out after {timeout}s")

    version = extract_version(stdout.decode("utf-8", "replace"))
    if version is None:
        version = extract_version(stderr.decode("utf-8", "replace"))
    if version is None:
        raise ResticError("could not parse restic version output", proc.returncode)
    if proc.returncode != 0:
        raise ResticError(f"restic version exited with {proc.returncode}", proc.returncode)
    return version


async def detect(config: Optional[ResticConfig] = None, timeout: Optional[float] = None) -> BinaryInfo:
    """Locate restic on PATH and query its version.

    Raises:
        ResticNotInstalledError: Binary not on PATH
    """
    config = config or ResticConfig()
    path = shutil.which(config.binary)
    if path is None:
        raise ResticNotInstalledError(f"restic binary not found on PATH: {config.binary}")
    version = await query_version(path, timeout if timeout is not None else config.version_timeout)
    logger.debug(f"Detected restic {version} at {path}")
    return BinaryInfo(path=path, version=version)
