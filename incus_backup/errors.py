"""Error hierarchy for backup, restore, prune and verify operations."""

from typing import Optional


class BackupError(Exception):
    """Base exception for incus-backup operations."""
    pass


class ConfigurationError(BackupError, ValueError):
    """Invalid target, keep count, kind filter or timestamp."""
    pass


class SnapshotNotFoundError(BackupError):
    """No stored version matches the requested identity and timestamp."""

    def __init__(self, identity: str, timestamp: Optional[str] = None):
        if timestamp:
            message = f"no snapshot found for {identity} at {timestamp}"
        else:
            message = f"no snapshots found for {identity}"
        super().__init__(message)
        self.identity = identity
        self.timestamp = timestamp


class SnapshotExistsError(BackupError):
    """A snapshot with the same identity and timestamp is already stored."""
    pass


class SnapshotTypeError(BackupError):
    """Stored manifest declares a different resource type than requested."""

    def __init__(self, expected: str, actual: str):
        article = "an" if expected[:1] in "aeiou" else "a"
        super().__init__(f"not {article} {expected} snapshot (manifest type {actual!r})")
        self.expected = expected
        self.actual = actual


class MissingPartError(BackupError):
    """A part required by the requested operation is absent."""

    def __init__(self, part: str, identity: str = "", timestamp: str = ""):
        where = f" for {identity}" if identity else ""
        when = f" at {timestamp}" if timestamp else ""
        super().__init__(f"missing part {part!r}{where}{when}")
        self.part = part
        self.identity = identity
        self.timestamp = timestamp


class CorruptSnapshotError(BackupError):
    """A stored part cannot be decoded or fails validation."""

    def __init__(self, part: str, identity: str = "", timestamp: str = "", cause: Optional[BaseException] = None):
        where = f" for {identity}" if identity else ""
        when = f" at {timestamp}" if timestamp else ""
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"corrupt part {part!r}{where}{when}{detail}")
        self.part = part
        self.identity = identity
        self.timestamp = timestamp


class PartNotFoundError(BackupError):
    """A part's payload could not be located while reading it."""
    pass


class TransferError(BackupError):
    """Streaming transfer failed on the producer or consumer side."""

    def __init__(self, message: str, label: str = ""):
        super().__init__(f"{label}: {message}" if label else message)
        self.label = label


class PipeClosedError(TransferError):
    """The pipe was closed by the other side of a transfer."""
    pass


class ApplyError(BackupError):
    """A single reconciliation operation failed."""

    def __init__(self, resource: str, operation: str, name: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} {resource} {name!r} failed{detail}")
        self.resource = resource
        self.operation = operation
        self.name = name


class HostError(BackupError):
    """Host control API failure."""
    pass


class HostConflictError(HostError):
    """Resource already exists on the host."""
    pass


class HostNotFoundError(HostError):
    """Resource does not exist on the host."""
    pass


class ResticError(BackupError):
    """restic exited with a non-zero status."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ResticNotInstalledError(ResticError):
    """restic binary not found on PATH."""
    pass


class ResticLockedError(ResticError):
    """Repository is locked by another restic process."""
    pass


class ResticNotFoundError(ResticError):
    """Snapshot or path inside a snapshot does not exist."""
    pass
