"""
Disk dependency graph.

Opens every disk of a repository, keeps the readable ones, records
parent/child links and resolves duplicated disk identities.

The graph is an arena of nodes keyed by path; edges are stored in plain
dicts so later stages can walk it without holding disk handles.
"""
import asyncio
import logging
import posixpath
from collections import defaultdict
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set

from vmrepo.models.disk import DiskInfo, DiskType
from vmrepo.services.cleanup.aliases import remove_disk
from vmrepo.services.cleanup.context import CleanupContext
from vmrepo.services.cleanup.naming import resolve_path
from vmrepo.services.disk.base import DiskError, DiskFormatError
from vmrepo.services.storage.base import StorageError

logger = logging.getLogger(__name__)


@dataclass
class DiskGraph:
    """Readable disks of a repository and the links between them."""
    nodes: Dict[str, DiskInfo] = field(default_factory=dict)
    parents: Dict[str, str] = field(default_factory=dict)  # child -> parent
    children: Dict[str, str] = field(default_factory=dict)  # parent -> first child seen
    conflicts: Dict[str, List[str]] = field(default_factory=dict)  # parent -> every child
    unreadable: Set[str] = field(default_factory=set)

    @property
    def active(self) -> Set[str]:
        return set(self.nodes)

    def __contains__(self, path: str) -> bool:
        return path in self.nodes

    def add_edge(self, parent: str, child: str):
        self.parents[child] = parent
        if parent in self.children and self.children[parent] != child:
            known = self.conflicts.setdefault(parent, [self.children[parent]])
            if child not in known:
                known.append(child)
        else:
            self.children[parent] = child

    def remove(self, path: str):
        """Drop a disk from the active set. Its edges are kept for pruning."""
        self.nodes.pop(path, None)

    def pinned(self) -> Set[str]:
        """Disks taking part in a multi-child conflict."""
        paths = set()
        for parent, children in self.conflicts.items():
            paths.add(parent)
            paths.update(children)
        return paths


class DiskGraphBuilder:
    """Build a DiskGraph from the disk paths found by the scanner."""

    def __init__(self, ctx: CleanupContext):
        """
        Args:
            ctx: Cleanup run context
        """
        self.ctx = ctx
        self.graph = DiskGraph()

    async def _load(self, path: str, interrupted: Dict[str, str]):
        ctx = self.ctx
        try:
            async with ctx.codec.open(
                ctx.storage,
                path,
                check_secondary_footer=path not in interrupted,
            ) as disk:
                info = DiskInfo(
                    path=path,
                    uuid=str(disk.uuid),
                    disk_type=disk.disk_type,
                    size=disk.size,
                )
                if disk.disk_type == DiskType.DIFFERENCING:
                    info.parent_path = resolve_path(posixpath.dirname(path), disk.parent_name)
        except DiskFormatError as e:
            ctx.warn("disk check error", path=path, error=e)
            if ctx.repair:
                await remove_disk(ctx, path, "broken disk")
            return
        except (DiskError, StorageError) as e:
            # not a verdict on the content: keep the file
            ctx.warn("disk unreadable, keeping it", path=path, error=e)
            self.graph.unreadable.add(path)
            return

        self.graph.nodes[path] = info

    async def build(self, paths: Iterable[str], interrupted: Dict[str, str]) -> DiskGraph:
        """
        Open every disk concurrently, resolve duplicated identities, then
        link children to parents.

        Args:
            paths: Candidate disk paths
            interrupted: Disk path -> merge marker path
        """
        await asyncio.gather(*(self._load(path, interrupted) for path in paths))
        await self.deduplicate()
        self._link()
        return self.graph

    def _link(self):
        # edges are added in path order so that conflict reports are stable
        for path in sorted(self.graph.nodes):
            info = self.graph.nodes[path]
            if info.parent_path is not None:
                self.graph.add_edge(info.parent_path, path)

        for parent, children in self.graph.conflicts.items():
            self.ctx.warn(
                "multiple children for one parent disk, leaving this chain untouched",
                parent=parent,
                children=children,
            )

    async def _contains(self, container: str, contained: str) -> bool:
        ctx = self.ctx
        async with AsyncExitStack() as stack:
            outer = await stack.enter_async_context(ctx.codec.open(ctx.storage, container))
            inner = await stack.enter_async_context(ctx.codec.open(ctx.storage, contained))
            return await outer.contains_all_data_of(inner)

    async def _deduplicate_group(self, uuid: str, paths: List[str]):
        ctx = self.ctx
        ctx.warn("disk uuid is duplicated", uuid=uuid, paths=paths)

        kept = paths[0]
        for other in paths[1:]:
            try:
                if await self._contains(kept, other):
                    subset = other
                elif await self._contains(other, kept):
                    subset, kept = kept, other
                else:
                    ctx.warn("same uuid but different content", uuid=uuid, paths=[kept, other])
                    continue
            except (DiskError, StorageError) as e:
                ctx.warn("failed to compare duplicated disks", uuid=uuid, paths=[kept, other], error=e)
                continue

            ctx.warn("disk content is included in a duplicate", path=subset, kept=kept)
            self.graph.remove(subset)
            if ctx.repair:
                await remove_disk(ctx, subset, "duplicated disk")

    async def deduplicate(self):
        """
        Resolve disks sharing an identity.

        The disk whose data contains the other's is kept, whatever the
        files' ages; when neither contains the other both are kept.
        """
        by_uuid: Dict[str, List[str]] = defaultdict(list)
        for path in sorted(self.graph.nodes):
            by_uuid[self.graph.nodes[path].uuid].append(path)

        await asyncio.gather(*(
            self._deduplicate_group(uuid, paths)
            for uuid, paths in by_uuid.items()
            if len(paths) > 1
        ))

    async def drop_orphan_markers(self, interrupted: Dict[str, str]) -> Dict[str, str]:
        """
        Forget merge markers whose disk is gone.

        Returns:
            The markers still covering an active disk
        """
        kept = {}
        for disk_path, marker_path in interrupted.items():
            if disk_path in self.graph:
                kept[disk_path] = marker_path
                continue
            if disk_path in self.graph.unreadable:
                logger.debug(f"Skipping interrupted merge of unreadable disk {disk_path}")
                continue

            self.ctx.warn("orphan merge state", marker=marker_path, missing_disk=disk_path)
            if self.ctx.repair:
                await self.ctx.remove(marker_path, "orphan merge state")
        return kept
