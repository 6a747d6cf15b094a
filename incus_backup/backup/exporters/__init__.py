"""Resource exporters for backup/restore operations."""

from ._common import RESTORED, SKIPPED, RestoreOptions, RestorePlan, close_stream, require_part, should_replace
from .config_exporter import CapturedConfig, ConfigExporter, ConfigRestoreResult
from .instance_exporter import InstanceExporter
from .volume_exporter import VolumeExporter

__all__ = [
    "ConfigExporter",
    "InstanceExporter",
    "VolumeExporter",
    "CapturedConfig",
    "ConfigRestoreResult",
    "RestoreOptions",
    "RestorePlan",
    "RESTORED",
    "SKIPPED",
    "close_stream",
    "require_part",
    "should_replace",
]
