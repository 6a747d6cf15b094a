"""Utility functions for backup/restore operations."""

import hashlib
import json
import string
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .._utils import logger

INVALID_ENTRY = "invalid checksum entry"
SHA256_HEX_LENGTH = 64


def checksum_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class ChecksumEntry:
    """One line of checksums.txt.

    Malformed lines keep the raw text in ``name`` and set ``error``.
    """
    hash: str
    name: str
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None


def render_checksums(entries: Iterable[Tuple[str, str]]) -> bytes:
    """Render ``(hex, filename)`` pairs in ``<hex>  <name>`` line format."""
    lines = []
    for digest, name in entries:
        if not digest or not name or "\n" in name:
            raise ValueError(f"invalid checksum entry for {name!r}")
        lines.append(f"{digest}  {name}\n")
    return "".join(lines).encode("utf-8")


def parse_checksums(data: bytes) -> List[ChecksumEntry]:
    """Parse checksums.txt content.

    Blank lines are skipped. A line that does not split into a hash and a
    file name on two spaces becomes an entry with ``error`` set, and
    parsing continues with the next line.
    """
    entries = []
    for raw in data.decode("utf-8", "replace").splitlines():
        line = raw.strip()
        if not line:
            continue
        digest, sep, name = line.partition("  ")
        digest, name = digest.strip(), name.strip()
        if not sep or not digest or not name or not _is_hex(digest):
            entries.append(ChecksumEntry(hash="", name=line, error=INVALID_ENTRY))
            continue
        entries.append(ChecksumEntry(hash=digest.lower(), name=name))
    return entries


def _is_hex(value: str) -> bool:
    """True for a full sha256 digest: exactly 64 hex digits."""
    return len(value) == SHA256_HEX_LENGTH and all(c in string.hexdigits for c in value)


def dump_json(value: Any) -> bytes:
    """Indented JSON with a trailing newline, as written for config parts."""
    return (json.dumps(value, indent=2) + "\n").encode("utf-8")


def dump_resources(items: Sequence[Any]) -> bytes:
    """Serialize pydantic host resources as a JSON array sorted by name."""
    ordered = sorted(items, key=lambda item: item.name)
    return dump_json([item.model_dump() for item in ordered])


def load_json(data: bytes, what: str = "document") -> Any:
    try:
        value = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"invalid JSON in {what}: {e}") from e
    logger.debug(f"Loaded {what} ({len(data):,} bytes)")
    return value
