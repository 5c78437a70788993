"""
Alias validation.

An alias is a tiny file next to the other disks of a vdi directory whose
content is the path of the real disk, stored under ``<vdi>/data/``.
Every disk in ``data/`` must be reached by exactly one valid alias.
"""
import asyncio
import logging
import posixpath
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from vmrepo.core.config import settings
from vmrepo.services.cleanup.context import CleanupContext
from vmrepo.services.cleanup.naming import ALIAS_DATA_DIR, is_alias, is_disk_file, resolve_path
from vmrepo.services.disk.base import DiskError, DiskFormatError
from vmrepo.services.storage.base import StorageBackend, StorageError, StorageNotFoundError

logger = logging.getLogger(__name__)


class AliasError(Exception):
    """The alias file itself is unusable."""
    pass


@dataclass
class AliasCheck:
    """Outcome of validating the aliases of a repository."""
    confirmed: Set[str] = field(default_factory=set)  # canonical target paths
    broken: Set[str] = field(default_factory=set)  # alias paths not to be opened later


async def resolve_alias(storage: StorageBackend, alias_path: str, max_size: Optional[int] = None) -> str:
    """
    Return the path an alias points to.

    Relative content is resolved against the alias' directory.

    Raises:
        AliasError: if the file is too large to be an alias, empty, or
            points to another alias
        StorageError: if the alias cannot be read
    """
    if not is_alias(alias_path):
        return alias_path

    max_size = max_size if max_size is not None else settings.ALIAS_MAX_SIZE
    size = await storage.get_size(alias_path)
    if size > max_size:
        raise AliasError(f"alias {alias_path} is {size} bytes, more than {max_size}")

    content = (await storage.read_file(alias_path)).decode("utf-8", errors="replace").strip()
    if not content:
        raise AliasError(f"alias {alias_path} is empty")
    if is_alias(content):
        raise AliasError(f"alias {alias_path} points to another alias: {content}")

    return resolve_path(posixpath.dirname(alias_path), content)


async def _check_alias(
    alias: str,
    ctx: CleanupContext,
    result: AliasCheck,
    interrupted: Dict[str, str]
) -> bool:
    """Validate one alias; False when its target could not be learned."""
    try:
        target = await resolve_alias(ctx.storage, alias)
    except AliasError as e:
        ctx.warn("invalid alias", alias=alias, error=e)
        result.broken.add(alias)
        if ctx.repair:
            await ctx.remove(alias, "invalid alias")
        return True
    except StorageError as e:
        ctx.warn("unreadable alias, keeping it", alias=alias, error=e)
        return False

    if not is_disk_file(target):
        ctx.warn("alias references non disk target", alias=alias, target=target)
        result.broken.add(alias)
        if ctx.repair:
            ctx.info("removing alias and non disk target", alias=alias, target=target)
            await ctx.remove(target, "non disk alias target")
            await ctx.remove(alias, "alias")
        return True

    handle = AsyncExitStack()
    try:
        # a disk being merged has an inconsistent secondary footer
        await handle.enter_async_context(ctx.codec.open(
            ctx.storage,
            target,
            check_secondary_footer=alias not in interrupted,
        ))
    except (DiskFormatError, StorageNotFoundError) as e:
        ctx.warn("missing or broken alias target", alias=alias, target=target, error=e)
        result.broken.add(alias)
        if ctx.repair:
            # the target is judged on its own by the data directory check
            await ctx.remove(alias, "alias with broken target")
        return True
    except (DiskError, StorageError) as e:
        # left to the graph builder, which keeps unreadable disks
        ctx.warn("alias target unreadable, keeping it", alias=alias, target=target, error=e)
        result.confirmed.add(target)
        return True

    try:
        await handle.aclose()
    except (DiskError, StorageError) as e:
        # a failed release says nothing about the target
        logger.debug(f"Failed to release {target}: {e}")

    result.confirmed.add(target)
    return True


async def check_aliases(
    alias_paths: List[str],
    data_dir: str,
    ctx: CleanupContext,
    result: AliasCheck,
    interrupted: Optional[Dict[str, str]] = None
):
    """
    Validate the aliases of one vdi directory, then flag every disk of
    ``data_dir`` that no valid alias references.

    Aliases listed in ``interrupted`` (alias path -> merge marker path)
    are opened without the secondary footer check.
    """
    interrupted = interrupted or {}
    complete = True
    for alias in alias_paths:
        complete = await _check_alias(alias, ctx, result, interrupted) and complete

    disks = await ctx.storage.list(data_dir, ignore_missing=True, prepend_dir=True)

    async def check_referenced(path: str):
        if resolve_path("/", path) not in result.confirmed:
            ctx.warn("no alias references disk", path=path)
            if not complete:
                # an unreadable alias may reference it
                ctx.info("keeping unreferenced disk, some aliases are unreadable", path=path)
            elif ctx.repair:
                await ctx.remove(path, "unreferenced disk")

    await asyncio.gather(*(check_referenced(path) for path in disks))


async def check_all_aliases(
    aliases: Dict[str, List[str]],
    ctx: CleanupContext,
    interrupted: Optional[Dict[str, str]] = None
) -> AliasCheck:
    """Validate every vdi directory of a scan concurrently."""
    result = AliasCheck()
    await asyncio.gather(*(
        check_aliases(alias_paths, posixpath.join(vdi_dir, ALIAS_DATA_DIR), ctx, result, interrupted)
        for vdi_dir, alias_paths in aliases.items()
    ))
    if result.broken:
        logger.debug(f"{len(result.broken)} broken aliases")
    return result


async def remove_disk(ctx: CleanupContext, path: str, reason: str) -> bool:
    """Delete a disk; for an alias, its target is deleted first."""
    if is_alias(path):
        try:
            target = await resolve_alias(ctx.storage, path)
        except (AliasError, StorageError) as e:
            logger.debug(f"Cannot resolve alias {path} before deletion: {e}")
        else:
            await ctx.remove(target, f"{reason} data")
    return await ctx.remove(path, reason)


async def move_disk(ctx: CleanupContext, source: str, destination: str):
    """
    Move a disk's data onto another disk's path.

    Aliases are followed on both sides so that the destination alias, if
    any, stays valid; a source alias is deleted once its data has moved.

    Raises:
        AliasError: if either alias cannot be resolved
        StorageError: if the data cannot be moved
    """
    source_data = await resolve_alias(ctx.storage, source)
    destination_data = await resolve_alias(ctx.storage, destination)
    await ctx.rename(source_data, destination_data)
    if source_data != source:
        await ctx.remove(source, "merged alias")
