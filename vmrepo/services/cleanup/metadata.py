"""
Backup metadata cross-referencing and size reconciliation.

Decides which disks and archives are still used by a backup record, drops
records pointing to missing files, and keeps the ``size`` stored in each
record in line with the files on storage.
"""
import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from vmrepo.models.backup import BackupMetadata, BackupMode, MetadataError
from vmrepo.services.cleanup.context import CleanupContext
from vmrepo.services.cleanup.graph import DiskGraph
from vmrepo.services.cleanup.naming import archive_of_checksum, resolve_path
from vmrepo.services.cleanup.scanner import VmEntries
from vmrepo.services.disk.base import DiskError
from vmrepo.services.storage.base import StorageBackend, StorageError

logger = logging.getLogger(__name__)

TAR_BLOCK = 512
GZIP_MAGIC = b"\x1f\x8b"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


@dataclass
class MetadataRecord:
    """A metadata file whose referenced files all exist."""
    path: str
    metadata: BackupMetadata
    disks: List[str] = field(default_factory=list)
    archive: Optional[str] = None


@dataclass
class MetadataIndex:
    """Usage of the repository's files by its backup records."""
    records: Dict[str, MetadataRecord] = field(default_factory=dict)
    unused_disks: Set[str] = field(default_factory=set)
    unused_archives: Set[str] = field(default_factory=set)
    unused_checksums: List[str] = field(default_factory=list)
    disk_to_metadata: Dict[str, str] = field(default_factory=dict)


async def is_valid_archive(storage: StorageBackend, path: str) -> bool:
    """
    Best-effort probe of a full backup archive.

    A plain tar must end with two zero blocks; a compressed archive is only
    checked for its magic number. Never a reason to delete the file.
    """
    try:
        size = await storage.get_size(path)
        if size < 2 * TAR_BLOCK:
            return False
        head = await storage.read(path, 0, 4)
        if head.startswith(GZIP_MAGIC) or head.startswith(ZSTD_MAGIC):
            return True
        tail = await storage.read(path, size - 2 * TAR_BLOCK, 2 * TAR_BLOCK)
        return tail == bytes(2 * TAR_BLOCK)
    except StorageError as e:
        logger.debug(f"Archive probe failed for {path}: {e}")
        return False


class MetadataCrossReferencer:
    """Match backup records against the disks and archives that survived."""

    def __init__(self, ctx: CleanupContext, vm_dir: str):
        """
        Args:
            ctx: Cleanup run context
            vm_dir: VM backup directory, base of the records' relative paths
        """
        self.ctx = ctx
        self.vm_dir = vm_dir

    async def _drop_incomplete(self, path: str):
        if self.ctx.repair:
            await self.ctx.remove(path, "incomplete backup")

    async def _check_record(
        self,
        path: str,
        graph: DiskGraph,
        entries: VmEntries,
        index: MetadataIndex
    ):
        ctx = self.ctx
        try:
            metadata = BackupMetadata.from_json(await ctx.storage.read_file(path))
        except MetadataError as e:
            ctx.warn("failed to parse backup metadata", path=path, error=e)
            if ctx.repair:
                await ctx.remove(path, "unparsable backup metadata")
            return
        except StorageError as e:
            ctx.warn("failed to read backup metadata", path=path, error=e)
            return

        mode = metadata.backup_mode
        if mode == BackupMode.FULL:
            archive = resolve_path(self.vm_dir, metadata.xva or "")
            if not metadata.xva or archive not in entries.archives:
                ctx.warn("the archive linked to the backup is missing", backup=path, archive=archive)
                await self._drop_incomplete(path)
                return
            index.unused_archives.discard(archive)
            index.records[path] = MetadataRecord(path=path, metadata=metadata, archive=archive)

        elif mode == BackupMode.DELTA:
            if not metadata.vdis:
                ctx.warn("delta backup references no disk", backup=path)
                await self._drop_incomplete(path)
                return

            linked = [resolve_path(self.vm_dir, p) for p in metadata.vdis.values()]
            missing = [p for p in linked if p not in graph and p not in graph.unreadable]

            # a single missing disk invalidates the whole record
            if missing:
                ctx.warn("some disks linked to the backup are missing", backup=path, missing=missing)
                await self._drop_incomplete(path)
                return

            for disk in linked:
                index.unused_disks.discard(disk)
                index.disk_to_metadata[disk] = path

            unreadable = [p for p in linked if p in graph.unreadable]
            if unreadable:
                ctx.info("backup has unreadable disks, leaving it untouched", backup=path, unreadable=unreadable)
                return
            index.records[path] = MetadataRecord(path=path, metadata=metadata, disks=linked)

        else:
            ctx.warn("unknown backup mode", backup=path, mode=metadata.mode)

    async def cross_reference(self, graph: DiskGraph, entries: VmEntries) -> MetadataIndex:
        """
        Classify every active disk and archive as used or unused.

        Returns:
            The valid records and the unused files
        """
        index = MetadataIndex(
            unused_disks=set(graph.nodes),
            unused_archives=set(entries.archives),
        )

        async def probe(path: str):
            # a suspect archive is only reported
            if not await is_valid_archive(self.ctx.storage, path):
                self.ctx.warn("archive might be broken", path=path)

        await asyncio.gather(
            *(probe(path) for path in sorted(entries.archives)),
            *(self._check_record(path, graph, entries, index) for path in sorted(entries.metadata)),
        )

        for checksum in entries.archive_checksums:
            archive = archive_of_checksum(checksum)
            if archive not in entries.archives or archive in index.unused_archives:
                index.unused_checksums.append(checksum)

        return index


async def compute_disks_size(ctx: CleanupContext, paths: Iterable[str]) -> Optional[int]:
    """
    Sum of the storage size of ``paths``, or None when one of them cannot
    be measured cheaply.
    """
    async with AsyncExitStack() as stack:
        disks = [
            await stack.enter_async_context(ctx.codec.open(ctx.storage, path))
            for path in paths
        ]
        sizes = await asyncio.gather(*(disk.get_size() for disk in disks))

    if any(size is None for size in sizes):
        return None
    return sum(sizes)


async def _reconcile_record(
    record: MetadataRecord,
    merged: bool,
    ctx: CleanupContext,
    fix_metadata_sizes: bool
) -> bool:
    stored = record.metadata.size
    try:
        if record.archive is not None:
            actual = await ctx.storage.get_size(record.archive)
        else:
            actual = await compute_disks_size(ctx, record.disks)
            if actual is None:
                return False
    except (DiskError, StorageError) as e:
        ctx.warn("failed to get backup size", backup=record.path, error=e)
        return False

    if actual == stored:
        return False

    # a merge changes the size, no need to warn about it
    if not merged:
        ctx.warn(
            "incorrect backup size in metadata",
            path=record.path,
            actual=stored if stored is not None else "none",
            expected=actual,
        )
        if not fix_metadata_sizes:
            return False

    if not ctx.repair:
        return False

    try:
        await ctx.write(record.path, record.metadata.with_size(actual))
    except StorageError as e:
        ctx.warn("failed to update backup size in metadata", path=record.path, error=e)
        return False

    record.metadata.size = actual
    return True


async def reconcile_sizes(
    index: MetadataIndex,
    merged_metadata: Set[str],
    ctx: CleanupContext,
    fix_metadata_sizes: bool = False
) -> Set[str]:
    """
    Recompute the size of every surviving record.

    Records whose disks were merged this run are always rewritten; other
    mismatches are reported and only rewritten with ``fix_metadata_sizes``.

    Returns:
        Paths of the rewritten metadata files
    """
    records = [index.records[path] for path in sorted(index.records)]
    results = await asyncio.gather(*(
        _reconcile_record(record, record.path in merged_metadata, ctx, fix_metadata_sizes)
        for record in records
    ))
    return {record.path for record, updated in zip(records, results) if updated}
