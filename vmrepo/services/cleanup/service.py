"""
Repository cleanup service.

Runs the whole consistency pipeline on one VM backup directory:

1. scan disks, aliases and interrupted merge markers
2. validate aliases
3. build the disk graph and resolve duplicated identities
4. prune orphaned disks
5. cross-reference backup metadata
6. merge unused chains, delete unused files, reconcile sizes
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from vmrepo.core.config import settings
from vmrepo.core.logging_handler import LoggingContext
from vmrepo.models.disk import Chain
from vmrepo.services.cleanup.aliases import check_all_aliases, remove_disk
from vmrepo.services.cleanup.context import CleanupContext, LogCallback, log_info, log_warn
from vmrepo.services.cleanup.graph import DiskGraphBuilder
from vmrepo.services.cleanup.merge import (
    ChainMerger,
    MergeLimiter,
    MergePlan,
    plan_interrupted,
    plan_merges,
)
from vmrepo.services.cleanup.metadata import (
    MetadataCrossReferencer,
    MetadataIndex,
    reconcile_sizes,
)
from vmrepo.services.cleanup.orphans import prune_orphans
from vmrepo.services.cleanup.scanner import scan_repository, scan_vm_entries
from vmrepo.services.disk.base import DiskCodec
from vmrepo.services.progress import ProgressStream
from vmrepo.services.storage.base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Summary of one cleanup run."""
    vm_dir: str
    merge_needed: bool = False  # chains were merged, or would have been
    merged_chains: List[Chain] = field(default_factory=list)
    failed_chains: List[Chain] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    updated_metadata: Set[str] = field(default_factory=set)

    @property
    def merge_performed(self) -> bool:
        return bool(self.merged_chains)


class RepositoryCleanupService:
    """
    Check and repair VM backup directories.

    Options left to None take their value from settings. With repair
    disabled the service never deletes, writes or renames anything.
    """

    def __init__(
        self,
        storage: StorageBackend,
        codec: DiskCodec,
        repair: Optional[bool] = None,
        merge: Optional[bool] = None,
        fix_metadata_sizes: Optional[bool] = None,
        merge_limiter: Optional[MergeLimiter] = None,
        progress: Optional[ProgressStream] = None,
        on_info: LogCallback = log_info,
        on_warn: LogCallback = log_warn
    ):
        """
        Initialize cleanup service.

        Args:
            storage: Backend holding the backup directories
            codec: Disk codec used to open and merge disks
            repair: Allow deletions and writes
            merge: Merge unused chains (needs repair)
            fix_metadata_sizes: Rewrite wrong sizes of unmerged backups
            merge_limiter: Cap on concurrent merges, shared with other runs
                if the caller wants to; a fresh one is built per run otherwise
            progress: Stream receiving merge progress events
            on_info: Informational message callback
            on_warn: Inconsistency report callback
        """
        self.storage = storage
        self.codec = codec
        self.repair = settings.CLEANUP_REPAIR if repair is None else repair
        self.merge = settings.CLEANUP_MERGE if merge is None else merge
        self.fix_metadata_sizes = (
            settings.CLEANUP_FIX_METADATA_SIZES if fix_metadata_sizes is None else fix_metadata_sizes
        )
        self.merge_limiter = merge_limiter
        self.progress = progress or ProgressStream()
        self.on_info = on_info
        self.on_warn = on_warn

    def _context(self) -> CleanupContext:
        return CleanupContext(
            storage=self.storage,
            codec=self.codec,
            repair=self.repair,
            on_info=self.on_info,
            on_warn=self.on_warn,
        )

    async def clean(self, vm_dir: str) -> CleanupResult:
        """
        Run the pipeline on one VM backup directory.

        Args:
            vm_dir: Directory holding the VM's metadata and ``vdis/`` tree

        Returns:
            What was merged and deleted, and whether a merge is needed
        """
        with LoggingContext(vm_dir=vm_dir):
            logger.info(f"Cleaning {vm_dir} (repair={self.repair}, merge={self.merge})")
            result = await self._clean(vm_dir)
            logger.info(
                f"Cleaned {vm_dir}: {len(result.merged_chains)} chains merged, "
                f"{len(result.deleted)} files deleted, {len(result.updated_metadata)} sizes updated"
            )
            return result

    async def _clean(self, vm_dir: str) -> CleanupResult:
        ctx = self._context()

        scan = await scan_repository(self.storage, vm_dir)
        alias_check = await check_all_aliases(scan.aliases, ctx, scan.interrupted)

        builder = DiskGraphBuilder(ctx)
        graph = await builder.build(sorted(scan.disks - alias_check.broken), scan.interrupted)
        await prune_orphans(graph, ctx)
        interrupted = await builder.drop_orphan_markers(scan.interrupted)

        entries = await scan_vm_entries(self.storage, vm_dir)
        index = await MetadataCrossReferencer(ctx, vm_dir).cross_reference(graph, entries)

        forced = await plan_interrupted(graph, interrupted, ctx, unused=index.unused_disks)
        plan = plan_merges(graph, index.unused_disks, ctx, forced)

        result = CleanupResult(vm_dir=vm_dir, merge_needed=bool(plan.chains))
        merged_metadata = await self._apply(plan, index, ctx, result)

        result.updated_metadata = await reconcile_sizes(
            index,
            merged_metadata,
            ctx,
            fix_metadata_sizes=self.fix_metadata_sizes,
        )
        result.deleted = list(ctx.deleted)
        return result

    async def _merge_all(self, chains: List[Chain], ctx: CleanupContext, result: CleanupResult):
        limiter = self.merge_limiter or MergeLimiter(settings.MERGE_CONCURRENCY)
        merger = ChainMerger(ctx, limiter, self.progress, settings.MERGE_PROGRESS_INTERVAL)
        sizes = await asyncio.gather(*(merger.merge(chain) for chain in chains))

        for chain, size in zip(chains, sizes):
            if size is None:
                result.failed_chains.append(chain)
            else:
                result.merged_chains.append(chain)

    async def _apply(
        self,
        plan: MergePlan,
        index: MetadataIndex,
        ctx: CleanupContext,
        result: CleanupResult
    ) -> Set[str]:
        """Execute the plan; returns the metadata files whose disks were merged."""
        for archive in sorted(index.unused_archives):
            ctx.warn("unused archive", path=archive)

        if plan.chains and not (self.merge and self.repair):
            ctx.info(
                "merge skipped",
                chains=len(plan.chains),
                reason="merge disabled" if not self.merge else "repair disabled",
            )

        if not self.repair:
            return set()

        jobs = [
            *(remove_disk(ctx, path, "unused disk") for path in plan.deletions),
            *(ctx.remove(path, "unused archive") for path in sorted(index.unused_archives)),
            *(ctx.remove(path, "unused archive checksum") for path in index.unused_checksums),
        ]
        if self.merge and plan.chains:
            jobs.append(self._merge_all(plan.chains, ctx, result))
        await asyncio.gather(*jobs)

        return {
            index.disk_to_metadata[chain.target]
            for chain in result.merged_chains
            if chain.target in index.disk_to_metadata
        }


async def clean_repository(
    storage: StorageBackend,
    codec: DiskCodec,
    vm_dir: str,
    *,
    repair: Optional[bool] = None,
    merge: Optional[bool] = None,
    fix_metadata_sizes: Optional[bool] = None,
    merge_limiter: Optional[MergeLimiter] = None,
    progress: Optional[ProgressStream] = None,
    on_info: LogCallback = log_info,
    on_warn: LogCallback = log_warn
) -> CleanupResult:
    """Check and optionally repair one VM backup directory."""
    service = RepositoryCleanupService(
        storage,
        codec,
        repair=repair,
        merge=merge,
        fix_metadata_sizes=fix_metadata_sizes,
        merge_limiter=merge_limiter,
        progress=progress,
        on_info=on_info,
        on_warn=on_warn,
    )
    return await service.clean(vm_dir)
