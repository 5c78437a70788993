"""
Base storage backend interface.

Paths are POSIX-style and absolute relative to the backend root
("/vm/vdis/job/vdi/disk.vhd").
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize storage backend.

        Args:
            config: Storage-specific configuration dictionary
        """
        self.config = config
        self.logger = logger

    @abstractmethod
    async def list(
        self,
        path: str,
        ignore_missing: bool = False,
        prepend_dir: bool = False,
        filter: Optional[Callable[[str], bool]] = None
    ) -> List[str]:
        """
        List the entries of a directory, sorted by name.

        Args:
            path: Directory to list
            ignore_missing: Return [] instead of raising when missing
            prepend_dir: Return full paths instead of bare names
            filter: Predicate on the bare entry name

        Raises:
            StorageNotFoundError: if the directory is missing and
                ignore_missing is False
        """
        pass

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        """
        Read a whole file.

        Raises:
            StorageNotFoundError: if the file does not exist
            StorageReadError: on any other failure
        """
        pass

    @abstractmethod
    async def read(self, path: str, position: int, length: int) -> bytes:
        """Read up to ``length`` bytes starting at ``position``."""
        pass

    @abstractmethod
    async def write_file(self, path: str, data: bytes, overwrite: bool = False) -> None:
        """
        Write a whole file, replacing it atomically when overwrite is set.

        Raises:
            StorageWriteError: if the file exists and overwrite is False, or
                the write fails
        """
        pass

    @abstractmethod
    async def unlink(self, path: str) -> None:
        """
        Delete a file, or a directory tree for directory-based disks.

        Raises:
            StorageNotFoundError: if nothing exists at path
        """
        pass

    @abstractmethod
    async def rename(self, source: str, destination: str) -> None:
        """Move a file, replacing the destination if it exists."""
        pass

    @abstractmethod
    async def get_size(self, path: str) -> int:
        """Size of a file in bytes."""
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """
        Check if a file exists in storage.

        Args:
            path: Path to file in storage

        Returns:
            True if file exists, False otherwise
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageNotFoundError(StorageError):
    """Exception raised when file is not found."""
    pass


class StorageReadError(StorageError):
    """Exception raised when a read fails."""
    pass


class StorageWriteError(StorageError):
    """Exception raised when a write, rename or delete fails."""
    pass
