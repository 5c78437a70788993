"""
Backup Repository Cleanup Services

This package checks a VM backup directory for inconsistencies (broken
aliases, orphaned or duplicated disks, incomplete backup records,
interrupted merges) and, when repair is enabled, fixes them and merges
the disk chains no backup uses anymore.
"""

from vmrepo.services.cleanup.context import (
    CleanupContext,
    CleanupError,
    ReadOnlyViolation
)
from vmrepo.services.cleanup.merge import (
    ChainMerger,
    MergeLimiter,
    MergePlan
)
from vmrepo.services.cleanup.service import (
    CleanupResult,
    RepositoryCleanupService,
    clean_repository
)

__all__ = [
    'ChainMerger',
    'CleanupContext',
    'CleanupError',
    'CleanupResult',
    'MergeLimiter',
    'MergePlan',
    'ReadOnlyViolation',
    'RepositoryCleanupService',
    'clean_repository'
]
