"""
Backup subsystem: object store, export, import/merge and scheduling.
"""

from .exporter import BackupExporter
from .importer import BackupImporter, ImportResult, ImportState
from .merge import MergeReport, Merger
from .object_store import ObjectStore
from .scheduler import AutoBackupScheduler, ScheduleOutcome

__all__ = [
    "AutoBackupScheduler",
    "BackupExporter",
    "BackupImporter",
    "ImportResult",
    "ImportState",
    "MergeReport",
    "Merger",
    "ObjectStore",
    "ScheduleOutcome",
]
