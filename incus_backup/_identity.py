"""Snapshot identity model shared by every backend.

A stored artifact is addressed by ``ResourceKey + timestamp + part``. This
module owns the two physical encodings of that address:

* directory layout: ``instances/<project>/<name>/<ts>/export.tar.xz`` etc.
* repository tags: ``type=instance schema=v1 project=... timestamp=... part=data``

and the grouping of parts into ``LogicalSnapshot`` objects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from ._utils import logger, utc_now
from .errors import ConfigurationError

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"
SCHEMA_VERSION = "v1"

PART_DATA = "data"
PART_MANIFEST = "manifest"
PART_CHECKSUMS = "checksums"
CONFIG_PARTS = ("projects", "profiles", "networks", "storage_pools")

MANIFEST_FILE = "manifest.json"
CHECKSUMS_FILE = "checksums.txt"


class ResourceKind(str, Enum):
    """Resource kinds understood by the backup tool."""
    INSTANCE = "instance"
    VOLUME = "volume"
    IMAGE = "image"
    CONFIG = "config"

    @property
    def directory(self) -> str:
        """Top-level directory of the kind in a ``dir:`` target."""
        if self is ResourceKind.CONFIG:
            return "config"
        return f"{self.value}s"

    @property
    def identity_fields(self) -> Tuple[str, ...]:
        """ResourceKey fields encoded as path segments before the timestamp."""
        return _IDENTITY_FIELDS[self]

    @property
    def required_parts(self) -> Tuple[str, ...]:
        return _REQUIRED_PARTS[self]

    @classmethod
    def from_filter(cls, value: Optional[str]) -> List["ResourceKind"]:
        """Resolve a user-supplied kind filter.

        Accepts singular or plural kind names, or ``all`` (the default).

        Raises:
            ConfigurationError: If the filter names no known kind
        """
        normalized = (value or "all").strip().lower()
        if normalized == "all":
            return [cls.INSTANCE, cls.VOLUME, cls.IMAGE, cls.CONFIG]
        for kind in cls:
            if normalized in (kind.value, kind.directory):
                return [kind]
        raise ConfigurationError(
            f"unknown kind {value!r}; expected one of all, instances, volumes, images, config"
        )


_IDENTITY_FIELDS = {
    ResourceKind.INSTANCE: ("project", "name"),
    ResourceKind.VOLUME: ("project", "pool", "name"),
    ResourceKind.IMAGE: ("fingerprint",),
    ResourceKind.CONFIG: (),
}

_REQUIRED_PARTS = {
    ResourceKind.INSTANCE: (PART_DATA, PART_MANIFEST, PART_CHECKSUMS),
    ResourceKind.VOLUME: (PART_DATA, PART_MANIFEST, PART_CHECKSUMS),
    ResourceKind.IMAGE: (),
    ResourceKind.CONFIG: CONFIG_PARTS + (PART_MANIFEST, PART_CHECKSUMS),
}

_DATA_FILES = {
    ResourceKind.INSTANCE: "export.tar.xz",
    ResourceKind.VOLUME: "volume.tar.xz",
}

# Kinds that may be stored in a tag-indexed repository
REPOSITORY_KINDS = (ResourceKind.INSTANCE, ResourceKind.VOLUME, ResourceKind.CONFIG)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as ``YYYYMMDDThhmmssZ`` in UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a ``YYYYMMDDThhmmssZ`` timestamp.

    Raises:
        ConfigurationError: If the value is not a valid timestamp
    """
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"invalid timestamp {value!r}; expected format YYYYMMDDThhmmssZ"
        ) from None


def new_timestamp() -> str:
    return format_timestamp(utc_now())


def file_for_part(kind: ResourceKind, part: str) -> str:
    """Return the fixed file name of ``part`` inside a timestamp directory."""
    if part == PART_MANIFEST:
        return MANIFEST_FILE
    if part == PART_CHECKSUMS:
        return CHECKSUMS_FILE
    if part == PART_DATA and kind in _DATA_FILES:
        return _DATA_FILES[kind]
    if kind is ResourceKind.CONFIG and part in CONFIG_PARTS:
        return f"{part}.json"
    raise ConfigurationError(f"{kind.value} snapshots have no part {part!r}")


def part_for_file(kind: ResourceKind, filename: str) -> Optional[str]:
    """Inverse of ``file_for_part``; None for files that belong to no part."""
    if filename == MANIFEST_FILE:
        return PART_MANIFEST
    if filename == CHECKSUMS_FILE:
        return PART_CHECKSUMS
    if _DATA_FILES.get(kind) == filename:
        return PART_DATA
    if kind is ResourceKind.CONFIG and filename.endswith(".json"):
        stem = filename[: -len(".json")]
        if stem in CONFIG_PARTS:
            return stem
    return None


@dataclass(frozen=True)
class ResourceKey:
    """Identity of one versioned resource, independent of backend."""
    kind: ResourceKind
    project: str = ""
    pool: str = ""
    name: str = ""
    fingerprint: str = ""

    def __post_init__(self):
        """Normalize kind and treat None as absent."""
        object.__setattr__(self, "kind", ResourceKind(self.kind))
        for attr in ("project", "pool", "name", "fingerprint"):
            if getattr(self, attr) is None:
                object.__setattr__(self, attr, "")

    @classmethod
    def instance(cls, project: str, name: str) -> "ResourceKey":
        return cls(ResourceKind.INSTANCE, project=project, name=name)

    @classmethod
    def volume(cls, project: str, pool: str, name: str) -> "ResourceKey":
        return cls(ResourceKind.VOLUME, project=project, pool=pool, name=name)

    @classmethod
    def image(cls, fingerprint: str) -> "ResourceKey":
        return cls(ResourceKind.IMAGE, fingerprint=fingerprint)

    @classmethod
    def config(cls) -> "ResourceKey":
        return cls(ResourceKind.CONFIG)

    def sort_key(self) -> Tuple[str, str, str, str, str]:
        return (self.kind.value, self.project, self.pool, self.name, self.fingerprint)

    def segments(self) -> Tuple[str, ...]:
        """Directory path segments, kind root first, timestamp excluded."""
        values = tuple(getattr(self, attr) for attr in self.kind.identity_fields)
        if any(not v for v in values):
            raise ConfigurationError(f"{self.kind.value} key is missing a path field: {self}")
        for v in values:
            if "/" in v or v in (".", ".."):
                raise ConfigurationError(f"invalid path segment {v!r} in {self.kind.value} key")
        return (self.kind.directory,) + values

    @classmethod
    def from_segments(cls, kind: ResourceKind, values: Iterable[str]) -> "ResourceKey":
        return cls(kind, **dict(zip(kind.identity_fields, values)))

    def describe(self) -> str:
        """Human readable identity, e.g. ``instance default/web``."""
        if self.kind is ResourceKind.CONFIG:
            return "config"
        values = [getattr(self, attr) for attr in self.kind.identity_fields]
        return f"{self.kind.value} {'/'.join(values)}"

    def __str__(self) -> str:
        return self.describe()


@dataclass(frozen=True)
class Entry:
    """One discovered version of a ResourceKey."""
    key: ResourceKey
    timestamp: str
    locator: str = ""  # snapshot directory or repository snapshot id

    @property
    def type(self) -> str:
        return self.key.kind.value

    def sort_key(self) -> Tuple[str, ...]:
        return self.key.sort_key() + (self.timestamp,)

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type,
            "project": self.key.project,
            "pool": self.key.pool,
            "name": self.key.name,
            "fingerprint": self.key.fingerprint,
            "timestamp": self.timestamp,
            "path": self.locator,
        }


def sort_entries(entries: Iterable[Entry]) -> List[Entry]:
    """Sort by (type, project, pool, name, fingerprint, timestamp)."""
    return sorted(entries, key=lambda e: e.sort_key())


@dataclass(frozen=True)
class PartRef:
    """Physical location of one part's payload.

    ``locator`` is the file path for directory targets and the repository
    snapshot id for restic targets; ``member`` is the path inside that
    repository snapshot.
    """
    part: str
    filename: str
    locator: str
    member: str = ""


@dataclass
class LogicalSnapshot:
    """A ResourceKey and timestamp bound to its stored parts."""
    key: ResourceKey
    timestamp: str
    parts: Dict[str, PartRef] = field(default_factory=dict)
    locator: str = ""
    duplicates: List[str] = field(default_factory=list)  # repository entries shadowed by an earlier part

    @property
    def type(self) -> str:
        return self.key.kind.value

    @property
    def missing_parts(self) -> List[str]:
        return [p for p in self.key.kind.required_parts if p not in self.parts]

    @property
    def complete(self) -> bool:
        return not self.missing_parts

    @property
    def entry_ids(self) -> List[str]:
        """Distinct physical entry locators, duplicates included."""
        seen: List[str] = []
        for locator in [ref.locator for ref in self.parts.values()] + self.duplicates:
            if locator not in seen:
                seen.append(locator)
        return seen

    def part_for_file(self, filename: str) -> Optional[PartRef]:
        part = part_for_file(self.key.kind, filename)
        if part is None:
            for ref in self.parts.values():
                if ref.filename == filename:
                    return ref
            return None
        return self.parts.get(part)

    def sort_key(self) -> Tuple[str, ...]:
        return self.key.sort_key() + (self.timestamp,)

    def to_entry(self) -> Entry:
        return Entry(self.key, self.timestamp, self.locator)


def snapshot_dir(key: ResourceKey, timestamp: str) -> Tuple[str, ...]:
    """Directory path segments of one version, relative to the target root."""
    if not timestamp or "/" in timestamp or timestamp.startswith("."):
        raise ConfigurationError(f"invalid timestamp directory {timestamp!r}")
    return key.segments() + (timestamp,)


def repository_filename(key: ResourceKey, timestamp: str, part: str) -> str:
    """Name under which a part is stored in the repository.

    Mirrors the directory layout so both targets share one relative path.
    """
    return "/".join(snapshot_dir(key, timestamp) + (file_for_part(key.kind, part),))


# Tag encoding ---------------------------------------------------------------

def encode_tags(
    key: ResourceKey,
    timestamp: str,
    part: str,
    optimized: bool = False,
    snapshot: bool = False,
) -> List[str]:
    """Encode key, timestamp and part as repository ``key=value`` tags.

    Raises:
        ConfigurationError: For kinds that cannot be stored in a repository
    """
    if key.kind not in REPOSITORY_KINDS:
        raise ConfigurationError(f"{key.kind.value} snapshots cannot be stored in a repository")
    file_for_part(key.kind, part)

    tags = [f"type={key.kind.value}", f"schema={SCHEMA_VERSION}"]
    for attr in key.kind.identity_fields:
        value = getattr(key, attr)
        if not value:
            raise ConfigurationError(f"{key.kind.value} key is missing {attr}")
        tags.append(f"{attr}={value}")
    tags.append(f"timestamp={timestamp}")
    tags.append(f"part={part}")
    if optimized:
        tags.append("optimized=true")
    if snapshot:
        tags.append("snapshot=true")
    return tags


def identity_tags(key: ResourceKey) -> List[str]:
    """Tag filter selecting every entry of one resource."""
    tags = [f"type={key.kind.value}"]
    for attr in key.kind.identity_fields:
        value = getattr(key, attr)
        if value:
            tags.append(f"{attr}={value}")
    return tags


def tag_map(tags: Iterable[str]) -> Dict[str, str]:
    """Split ``key=value`` tags; the first occurrence of a key wins."""
    result: Dict[str, str] = {}
    for tag in tags or ():
        k, sep, v = tag.partition("=")
        if sep and k not in result:
            result[k] = v
    return result


@dataclass(frozen=True)
class DecodedTags:
    key: ResourceKey
    timestamp: str
    part: str
    optimized: bool = False
    snapshot: bool = False


def decode_tags(tags: Iterable[str], created: Optional[datetime] = None) -> Optional[DecodedTags]:
    """Reconstruct key, timestamp and part from repository tags.

    Returns None when the tags cannot be attributed to a resource. A missing
    ``timestamp`` tag falls back to ``created``, formatted identically.
    """
    values = tag_map(tags)
    try:
        kind = ResourceKind(values.get("type", ""))
    except ValueError:
        logger.debug(f"Skipping entry with unknown type tag: {sorted(values.items())}")
        return None
    if kind not in REPOSITORY_KINDS:
        return None

    schema = values.get("schema")
    if schema and schema != SCHEMA_VERSION:
        logger.debug(f"Skipping entry with unsupported schema {schema!r}")
        return None

    missing = [attr for attr in kind.identity_fields if not values.get(attr)]
    part = values.get("part", "")
    if not part:
        missing.append("part")
    if missing:
        logger.debug(f"Skipping {kind.value} entry missing tags {missing}")
        return None

    timestamp = values.get("timestamp", "")
    if not timestamp:
        if created is None:
            logger.debug(f"Skipping {kind.value} entry without timestamp")
            return None
        timestamp = format_timestamp(created)

    key = ResourceKey.from_segments(kind, (values[attr] for attr in kind.identity_fields))
    return DecodedTags(
        key=key,
        timestamp=timestamp,
        part=part,
        optimized=values.get("optimized") == "true",
        snapshot=values.get("snapshot") == "true",
    )
