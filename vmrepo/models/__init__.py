"""
Data models package.
"""
from vmrepo.models.disk import DiskType, DiskInfo, Chain, MergeMarker, MergeStep
from vmrepo.models.backup import BackupMode, BackupMetadata, MetadataError

__all__ = [
    # Disks
    "DiskType",
    "DiskInfo",
    "Chain",
    "MergeMarker",
    "MergeStep",
    # Backups
    "BackupMode",
    "BackupMetadata",
    "MetadataError",
]
