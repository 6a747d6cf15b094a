from .config import IncusBackupConfig
from .errors import BackupError
from ._identity import Entry, ResourceKey, ResourceKind, LogicalSnapshot

__version__ = "0.3.0"
__author__ = "incus-backup"
__url__ = "https://github.com/incus-backup/incus-backup"

__all__ = [
    "IncusBackupConfig",
    "BackupError",
    "Entry",
    "ResourceKey",
    "ResourceKind",
    "LogicalSnapshot",
]
