"""
Enumerate disks, aliases and interrupted merge markers of a VM backup
directory, and the metadata/archive files at its top level.
"""
import asyncio
import logging
import posixpath
from dataclasses import dataclass, field
from typing import Dict, List, Set

from vmrepo.services.cleanup.naming import (
    DISKS_DIR,
    disk_name_of_marker,
    is_alias,
    is_archive,
    is_archive_checksum,
    is_disk_file,
    is_metadata_file,
)
from vmrepo.services.storage.base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class RepositoryScan:
    """Disk-side content of a VM directory."""
    disks: Set[str] = field(default_factory=set)
    aliases: Dict[str, List[str]] = field(default_factory=dict)  # vdi dir -> alias paths
    interrupted: Dict[str, str] = field(default_factory=dict)  # disk path -> marker path


@dataclass
class VmEntries:
    """Top-level files of a VM directory."""
    metadata: Set[str] = field(default_factory=set)
    archives: Set[str] = field(default_factory=set)
    archive_checksums: List[str] = field(default_factory=list)


def _is_disk_or_marker(name: str) -> bool:
    return is_disk_file(name) or disk_name_of_marker(name) is not None


async def _scan_vdi_dir(storage: StorageBackend, vdi_dir: str, scan: RepositoryScan):
    names = await storage.list(vdi_dir, ignore_missing=True, filter=_is_disk_or_marker)

    scan.aliases[vdi_dir] = [
        posixpath.join(vdi_dir, name) for name in names if is_alias(name)
    ]
    for name in names:
        disk_name = disk_name_of_marker(name)
        if disk_name is None:
            scan.disks.add(posixpath.join(vdi_dir, name))
        else:
            scan.interrupted[posixpath.join(vdi_dir, disk_name)] = posixpath.join(vdi_dir, name)


async def _scan_job_dir(storage: StorageBackend, job_dir: str, scan: RepositoryScan):
    vdi_dirs = await storage.list(job_dir, ignore_missing=True, prepend_dir=True)
    await asyncio.gather(*(_scan_vdi_dir(storage, vdi_dir, scan) for vdi_dir in vdi_dirs))


async def scan_repository(storage: StorageBackend, vm_dir: str) -> RepositoryScan:
    """
    List ``<vm_dir>/vdis/<job>/<vdi>/`` for disks, aliases and markers.

    Missing directories at any level are treated as empty.
    """
    scan = RepositoryScan()
    job_dirs = await storage.list(
        posixpath.join(vm_dir, DISKS_DIR),
        ignore_missing=True,
        prepend_dir=True,
    )
    await asyncio.gather(*(_scan_job_dir(storage, job_dir, scan) for job_dir in job_dirs))

    logger.debug(
        f"Scanned {vm_dir}: {len(scan.disks)} disks, "
        f"{sum(len(a) for a in scan.aliases.values())} aliases, "
        f"{len(scan.interrupted)} interrupted merges"
    )
    return scan


async def scan_vm_entries(storage: StorageBackend, vm_dir: str) -> VmEntries:
    """Classify the metadata, archive and checksum files of ``vm_dir``."""
    entries = VmEntries()
    for path in await storage.list(vm_dir, ignore_missing=True, prepend_dir=True):
        if is_metadata_file(path):
            entries.metadata.add(path)
        elif is_archive(path):
            entries.archives.add(path)
        elif is_archive_checksum(path):
            entries.archive_checksums.append(path)
    return entries
