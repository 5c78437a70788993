"""
Removal of disks whose ancestry is broken.
"""
import asyncio
import logging
from typing import Dict, List, Set

from vmrepo.services.cleanup.aliases import remove_disk
from vmrepo.services.cleanup.context import CleanupContext
from vmrepo.services.cleanup.graph import DiskGraph

logger = logging.getLogger(__name__)


def find_orphans(graph: DiskGraph) -> Dict[str, str]:
    """
    Return every active disk whose chain does not reach a root disk,
    mapped to the missing ancestor it was orphaned by.

    A disk is orphaned when its parent is neither active nor merely
    unreadable, or when its parent is itself orphaned. Membership is
    decided against a snapshot of the active set taken before anything is
    removed, and each disk is resolved exactly once.
    """
    active = frozenset(graph.nodes)
    orphaned: Dict[str, str] = {}
    resolved: Set[str] = set()

    for start in sorted(active):
        # walk up until a disk whose status is known
        path: List[str] = []
        visited: Set[str] = set()
        node = start
        missing = None
        while node not in resolved:
            visited.add(node)
            path.append(node)
            parent = graph.parents.get(node)
            if parent is None:
                break
            if parent in orphaned:
                missing = orphaned[parent]
                break
            if parent not in active:
                if parent not in graph.unreadable:
                    missing = parent
                break
            if parent in visited:
                logger.warning(f"Disk parent cycle through {parent}, leaving {len(path)} disks untouched")
                break
            node = parent

        for disk in path:
            resolved.add(disk)
            if missing is not None:
                orphaned[disk] = missing

    return orphaned


async def prune_orphans(graph: DiskGraph, ctx: CleanupContext) -> Set[str]:
    """
    Drop orphaned disks and their whole descendance from the graph,
    deleting them when repair is enabled.

    Returns:
        The pruned disk paths
    """
    orphaned = find_orphans(graph)

    for child in sorted(orphaned):
        ctx.warn("parent disk is missing", parent=orphaned[child], child=child)
        graph.remove(child)

    if ctx.repair:
        await asyncio.gather(*(
            remove_disk(ctx, child, "orphan disk") for child in sorted(orphaned)
        ))

    return set(orphaned)
