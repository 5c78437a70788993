"""
Shared state of one cleanup run and the only place files are mutated.

Every deletion, write and rename of the pipeline goes through
CleanupContext, which refuses to act unless repair is enabled. With
repair disabled a run is strictly read-only.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from vmrepo.services.disk.base import DiskCodec
from vmrepo.services.storage.base import StorageBackend, StorageError, StorageNotFoundError

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, Dict[str, Any]], None]


class CleanupError(Exception):
    """Base exception for cleanup runs."""
    pass


class ReadOnlyViolation(CleanupError):
    """A mutation was attempted while repair is disabled."""
    pass


def _render(message: str, details: Optional[Dict[str, Any]]) -> str:
    if not details:
        return message
    rendered = ", ".join(f"{key}={value}" for key, value in details.items())
    return f"{message} ({rendered})"


def log_info(message: str, details: Optional[Dict[str, Any]] = None):
    """Default ``on_info``: the module logger at INFO."""
    logger.info(_render(message, details))


def log_warn(message: str, details: Optional[Dict[str, Any]] = None):
    """Default ``on_warn``: the module logger at WARNING."""
    logger.warning(_render(message, details))


@dataclass
class CleanupContext:
    """Collaborators, options and side-effect log of one run."""
    storage: StorageBackend
    codec: DiskCodec
    repair: bool = False
    on_info: LogCallback = log_info
    on_warn: LogCallback = log_warn
    deleted: List[str] = field(default_factory=list)
    written: List[str] = field(default_factory=list)

    def info(self, message: str, **details: Any):
        self.on_info(message, details)

    def warn(self, message: str, **details: Any):
        self.on_warn(message, details)

    def _require_repair(self, action: str, path: str):
        if not self.repair:
            raise ReadOnlyViolation(f"refusing to {action} {path}: repair is disabled")

    async def remove(self, path: str, reason: str) -> bool:
        """
        Delete ``path``.

        A missing file counts as removed. Other storage failures are
        reported and swallowed so that one item never aborts the run.

        Returns:
            True if the file is gone afterwards
        """
        self._require_repair("delete", path)
        self.info(f"deleting {reason}", path=path)
        try:
            await self.storage.unlink(path)
        except StorageNotFoundError:
            pass
        except StorageError as e:
            self.warn(f"failed to delete {reason}", path=path, error=e)
            return False
        self.deleted.append(path)
        return True

    async def write(self, path: str, data: bytes):
        """Replace ``path`` with ``data``. Storage errors propagate."""
        self._require_repair("write", path)
        await self.storage.write_file(path, data, overwrite=True)
        self.written.append(path)

    async def rename(self, source: str, destination: str):
        """Move ``source`` onto ``destination``. Storage errors propagate."""
        self._require_repair("rename", source)
        await self.storage.rename(source, destination)
