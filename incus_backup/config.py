"""Configuration management for incus-backup."""

import os
import shutil
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class TransferConfig:
    """Streaming transfer configuration."""
    chunk_size: int = 1024 * 1024
    queue_depth: int = 8  # chunks buffered between producer and consumer
    progress_interval: float = 0.2

    @classmethod
    def from_env(cls) -> 'TransferConfig':
        """Create config from environment variables."""
        return cls(
            chunk_size=int(os.getenv("TRANSFER_CHUNK_SIZE", str(1024 * 1024))),
            queue_depth=int(os.getenv("TRANSFER_QUEUE_DEPTH", "8")),
            progress_interval=float(os.getenv("TRANSFER_PROGRESS_INTERVAL", "0.2"))
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.queue_depth <= 0:
            raise ValueError(f"queue_depth must be positive, got {self.queue_depth}")
        if self.progress_interval < 0:
            raise ValueError(f"progress_interval must be non-negative, got {self.progress_interval}")


@dataclass(frozen=True)
class ResticConfig:
    """restic repository tool configuration."""
    binary: str = "restic"
    required_version: str = "0.18.0"
    version_timeout: float = 5.0
    lock_retry_attempts: int = 3
    lock_retry_max_wait: float = 30.0

    @classmethod
    def from_env(cls) -> 'ResticConfig':
        """Create config from environment variables."""
        return cls(
            binary=os.getenv("RESTIC_BINARY", "restic"),
            version_timeout=float(os.getenv("RESTIC_VERSION_TIMEOUT", "5.0")),
            lock_retry_attempts=int(os.getenv("RESTIC_LOCK_RETRY_ATTEMPTS", "3")),
            lock_retry_max_wait=float(os.getenv("RESTIC_LOCK_RETRY_MAX_WAIT", "30.0"))
        )

    def __post_init__(self):
        """Validate configuration."""
        if not self.binary:
            raise ValueError("binary must not be empty")
        if self.version_timeout <= 0:
            raise ValueError(f"version_timeout must be positive, got {self.version_timeout}")
        if self.lock_retry_attempts <= 0:
            raise ValueError(f"lock_retry_attempts must be positive, got {self.lock_retry_attempts}")
        if self.lock_retry_max_wait <= 0:
            raise ValueError(f"lock_retry_max_wait must be positive, got {self.lock_retry_max_wait}")


@dataclass(frozen=True)
class BackupConfig:
    """Backup, restore and prune defaults."""
    optimized: bool = False
    snapshot: bool = False  # quiesce through a temporary snapshot
    snapshot_prefix: str = "tmp-incus-backup"
    default_project: str = "default"
    keep: int = 3
    reclaim_space: bool = True

    @classmethod
    def from_env(cls) -> 'BackupConfig':
        """Create config from environment variables."""
        return cls(
            optimized=os.getenv("BACKUP_OPTIMIZED", "false").lower() == "true",
            snapshot=os.getenv("BACKUP_SNAPSHOT", "false").lower() == "true",
            snapshot_prefix=os.getenv("BACKUP_SNAPSHOT_PREFIX", "tmp-incus-backup"),
            default_project=os.getenv("INCUS_PROJECT", "default"),
            keep=int(os.getenv("PRUNE_KEEP", "3")),
            reclaim_space=os.getenv("PRUNE_RECLAIM", "true").lower() == "true"
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.keep <= 0:
            raise ValueError(f"keep must be positive, got {self.keep}")
        if not self.snapshot_prefix:
            raise ValueError("snapshot_prefix must not be empty")
        if not self.default_project:
            raise ValueError("default_project must not be empty")


@dataclass(frozen=True)
class IncusBackupConfig:
    """Main incus-backup configuration."""
    transfer: TransferConfig = field(default_factory=TransferConfig)
    restic: ResticConfig = field(default_factory=ResticConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)

    @classmethod
    def from_env(cls) -> 'IncusBackupConfig':
        """Create complete config from environment variables."""
        return cls(
            transfer=TransferConfig.from_env(),
            restic=ResticConfig.from_env(),
            backup=BackupConfig.from_env()
        )

    def to_dict(self) -> dict:
        """Convert config to a flat dictionary for display and logging."""
        return {
            'chunk_size': self.transfer.chunk_size,
            'queue_depth': self.transfer.queue_depth,
            'progress_interval': self.transfer.progress_interval,
            'restic_binary': self.restic.binary,
            'restic_required_version': self.restic.required_version,
            'restic_version_timeout': self.restic.version_timeout,
            'restic_lock_retry_attempts': self.restic.lock_retry_attempts,
            'optimized': self.backup.optimized,
            'snapshot': self.backup.snapshot,
            'default_project': self.backup.default_project,
            'keep': self.backup.keep,
            'reclaim_space': self.backup.reclaim_space,
        }


def validate_config(config: IncusBackupConfig, scheme: Optional[str] = None) -> List[str]:
    """Validate configuration and return warnings.

    Args:
        config: Configuration to validate
        scheme: Target scheme of the command being run; the restic binary
            is only looked up for ``restic``

    Returns:
        List of warning messages (empty when nothing looks off)
    """
    warnings = []

    if config.transfer.chunk_size * config.transfer.queue_depth > 256 * 1024 * 1024:
        warnings.append(
            f"Transfer buffer of {config.transfer.chunk_size * config.transfer.queue_depth:,} bytes "
            "is large; payloads stream, so a small buffer is enough"
        )

    if config.transfer.chunk_size < 4096:
        warnings.append(f"chunk_size {config.transfer.chunk_size} is very small and will slow transfers")

    if scheme == "restic" and shutil.which(config.restic.binary) is None:
        warnings.append(f"restic binary {config.restic.binary!r} not found on PATH; restic: targets will fail")

    return warnings
