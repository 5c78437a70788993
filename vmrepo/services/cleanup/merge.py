r"""
Chain merge planning and execution.

Unused disks are folded forward into the first used disk below them:

    [ ancestor, child1, ..., childN ]      childN is used
         |         \____________/            ^
         |           deleted                 |
         \_____________ renamed _____________/

1. write a merge marker next to the ancestor
2. fold every child's blocks into the ancestor (disk codec)
3. mark the merge as cleaning
4. move the ancestor onto childN's path
5. delete child1..childN-1
6. delete the marker

A run killed before step 4 leaves the marker, and the next run merges the
same chain again; folding the same children again is idempotent. A run
killed after step 4 leaves an orphan marker and orphan intermediates, both
removed by the next run.
"""
import asyncio
import json
import logging
import posixpath
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from vmrepo.models.disk import Chain, MergeMarker, MergeStep
from vmrepo.services.cleanup.aliases import AliasError, move_disk, remove_disk
from vmrepo.services.cleanup.context import CleanupContext
from vmrepo.services.cleanup.graph import DiskGraph
from vmrepo.services.cleanup.naming import merge_marker_path
from vmrepo.services.disk.base import DiskError
from vmrepo.services.progress import (
    MergeEventKind,
    MergeProgress,
    ProgressStream,
    report_periodically,
)
from vmrepo.services.storage.base import StorageBackend, StorageError

logger = logging.getLogger(__name__)


class MergeLimiter:
    """
    Caps the number of merges in flight.

    Built by the caller and shared by every merge it wants to throttle
    together; there is no process-wide default instance.
    """

    def __init__(self, max_concurrent: int = 1):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.in_flight = 0

    async def __aenter__(self):
        await self._semaphore.acquire()
        self.in_flight += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.in_flight -= 1
        self._semaphore.release()
        return False


@dataclass
class MergePlan:
    """What stage 6 has to do."""
    chains: List[Chain] = field(default_factory=list)
    deletions: List[str] = field(default_factory=list)  # unused disks with no used descendant


async def read_marker(storage: StorageBackend, path: str) -> Optional[MergeMarker]:
    """Load a merge marker, None if it is unreadable."""
    try:
        raw = json.loads(await storage.read_file(path))
        return MergeMarker(
            parent=raw["parent"],
            children=list(raw.get("children") or []),
            step=MergeStep(raw.get("step", MergeStep.MERGING.value)),
            done=int(raw.get("done", 0)),
            total=int(raw.get("total", 0)),
            started_at=raw.get("started_at", ""),
        )
    except (StorageError, ValueError, KeyError, TypeError) as e:
        logger.debug(f"Ignoring unreadable merge marker {path}: {e}")
        return None


def _is_contiguous(graph: DiskGraph, ancestor: str, children: List[str]) -> bool:
    parent = ancestor
    for child in children:
        if child not in graph or graph.parents.get(child) != parent:
            return False
        parent = child
    return True


async def plan_interrupted(
    graph: DiskGraph,
    interrupted: Dict[str, str],
    ctx: CleanupContext,
    unused: Optional[Set[str]] = None
) -> List[Chain]:
    """
    Chains forced by merge markers, whatever the usage of their disks.

    The chain recorded in the marker is resumed when it is still intact;
    otherwise the marked disk is merged with its current child. With
    ``unused``, a recorded chain is cut at its first used child so that no
    used disk is deleted as an intermediate.
    """
    pinned = graph.pinned()
    claimed: Set[str] = set()
    chains = []
    for disk in sorted(interrupted):
        if disk in pinned:
            ctx.warn("interrupted merge involves a disk with multiple children, not resuming", path=disk)
            continue

        marker = await read_marker(ctx.storage, interrupted[disk])
        if marker is not None and marker.children and _is_contiguous(graph, disk, marker.children):
            children = marker.children
        else:
            child = graph.children.get(disk)
            children = [child] if child in graph else []

        if unused is not None:
            for i, child in enumerate(children[:-1]):
                if child not in unused:
                    children = children[:i + 1]
                    break

        if not children:
            ctx.warn("interrupted merge has no child to merge with", path=disk, marker=interrupted[disk])
            continue

        if claimed.intersection([disk, *children]):
            ctx.warn("interrupted merges overlap, resuming only the first one", path=disk)
            continue
        claimed.update([disk, *children])

        ctx.info("resuming interrupted merge", parent=disk, children=children)
        chains.append(Chain([disk, *children], interrupted=True))
    return chains


def plan_merges(
    graph: DiskGraph,
    unused: Set[str],
    ctx: CleanupContext,
    forced: Optional[List[Chain]] = None
) -> MergePlan:
    """
    Group unused disks into chains ending at the first used disk below
    them, and list the unused disks with no used descendant.

    Disks of a multi-child conflict count as used. Forced chains (from
    merge markers) take precedence over any chain or deletion touching
    the same disks.
    """
    forced = forced or []
    reserved = {disk for chain in forced for disk in chain.disks}
    pinned = graph.pinned()
    candidates = set(unused) - pinned - reserved
    near_unreadable = {posixpath.dirname(path) for path in graph.unreadable}

    chains_by_head: Dict[str, List[str]] = {}
    visited: Set[str] = set()
    untouched: Set[str] = set()
    plan = MergePlan()

    for start in sorted(candidates):
        if start in visited:
            continue

        walked: List[str] = []
        node = start
        while node in candidates and node not in visited:
            visited.add(node)
            walked.append(node)
            child = graph.children.get(node)
            node = child if child in graph else None
            if node is None:
                break

        if node is None:
            tail = None
        elif node in walked:
            ctx.warn("disk chain loops on itself, leaving it untouched", disks=walked)
            untouched.update(walked)
            continue
        elif node in pinned:
            # never merge into a disk with conflicting children
            ctx.info("chain ends on a disk with multiple children, not merging it", disks=walked + [node])
            untouched.update(walked)
            continue
        elif node in reserved:
            ctx.info("chain ends on an interrupted merge, postponing it", disks=walked + [node])
            untouched.update(walked)
            continue
        elif node in untouched:
            untouched.update(walked)
            continue
        elif node in chains_by_head:
            # an already planned chain starts right below: absorb it
            tail = chains_by_head.pop(node)
        elif node in visited:
            # already walked and found without a used descendant
            tail = None
        else:
            tail = [node]

        if tail is not None:
            chains_by_head[start] = walked + tail
        else:
            plan.deletions.extend(walked)

    plan.chains = [Chain(chains_by_head[head]) for head in sorted(chains_by_head)]
    plan.chains.extend(forced)

    kept = []
    for path in sorted(plan.deletions):
        ctx.warn("unused disk", path=path)
        if posixpath.dirname(path) in near_unreadable:
            # the unreadable neighbour may be its child
            ctx.warn("keeping unused disk next to an unreadable disk", path=path)
            continue
        kept.append(path)
    plan.deletions = kept

    return plan


class ChainMerger:
    """Run chain merges through a limiter, publishing progress events."""

    def __init__(
        self,
        ctx: CleanupContext,
        limiter: MergeLimiter,
        progress: ProgressStream,
        progress_interval: float = 10.0
    ):
        """
        Args:
            ctx: Cleanup run context (must have repair enabled)
            limiter: Shared cap on concurrent merges
            progress: Stream receiving MergeProgressEvents
            progress_interval: Seconds between PROGRESS events
        """
        self.ctx = ctx
        self.limiter = limiter
        self.progress = progress
        self.progress_interval = progress_interval

    async def merge(self, chain: Chain) -> Optional[int]:
        """
        Merge a chain, waiting for a limiter slot first.

        Returns:
            The merged logical size, None if the merge did not complete
        """
        async with self.limiter:
            return await self._merge(chain)

    async def _write_marker(self, path: str, marker: MergeMarker):
        await self.ctx.write(path, json.dumps(marker.to_dict()).encode("utf-8"))

    async def _merge(self, chain: Chain) -> Optional[int]:
        ctx = self.ctx
        marker_path = merge_marker_path(chain.ancestor)
        marker = MergeMarker(parent=chain.ancestor, children=chain.children)
        progress = MergeProgress(parent=chain.ancestor, target=chain.target)

        ctx.info("will merge children into parent", parent=chain.ancestor, children=chain.children)
        try:
            await self._write_marker(marker_path, marker)
        except StorageError as e:
            ctx.warn("failed to write merge state, skipping merge", path=marker_path, error=e)
            return None

        async def save_progress(p: MergeProgress):
            marker.done, marker.total = p.done, p.total
            await self._write_marker(marker_path, marker)
            ctx.info("merge in progress", parent=p.parent, done=p.done, total=p.total, progress=round(p.percent))

        self.progress.publish(progress.to_event(MergeEventKind.STARTED))
        reporter = asyncio.create_task(
            report_periodically(progress, self.progress, self.progress_interval, on_tick=save_progress)
        )
        try:
            merged_size = await ctx.codec.merge_chain(
                ctx.storage,
                chain.ancestor,
                ctx.storage,
                chain.children,
                on_progress=progress.update,
            )
        except (DiskError, StorageError) as e:
            progress.mark_failed()
            self.progress.publish(progress.to_event(MergeEventKind.FAILED, error=str(e)))
            ctx.warn("merge failed, it will be resumed on next run", parent=chain.ancestor, error=e)
            return None
        finally:
            reporter.cancel()
            with suppress(asyncio.CancelledError):
                await reporter

        try:
            marker.step = MergeStep.CLEANING
            marker.done, marker.total = progress.total, progress.total
            await self._write_marker(marker_path, marker)
            await move_disk(ctx, chain.ancestor, chain.target)
        except (AliasError, StorageError) as e:
            progress.mark_failed()
            self.progress.publish(progress.to_event(MergeEventKind.FAILED, error=str(e)))
            ctx.warn("failed to move merged disk into place", parent=chain.ancestor, target=chain.target, error=e)
            return None

        for intermediate in chain.children[:-1]:
            await remove_disk(ctx, intermediate, "merged disk")
        await ctx.remove(marker_path, "merge state")

        progress.mark_completed()
        self.progress.publish(progress.to_event(MergeEventKind.COMPLETED))
        ctx.info("merge done", parent=chain.ancestor, target=chain.target, size=merged_size)
        return merged_size
