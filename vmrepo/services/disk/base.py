"""
Disk codec interface.

The cleanup engine never parses disk images itself. A codec knows how to
open a disk stored on a StorageBackend, report its identity and parent,
compare block allocation with another disk, and fold a chain of
differencing disks into their ancestor.
"""
from abc import ABC, abstractmethod
from typing import AsyncContextManager, Callable, List, Optional

from vmrepo.models.disk import DiskType
from vmrepo.services.storage.base import StorageBackend

ProgressCallback = Callable[[int, int], None]


class DiskError(Exception):
    """Base exception for codec failures."""
    pass


class DiskFormatError(DiskError):
    """
    The file is not a valid disk: bad footer, header or block table.

    Safe to repair by deleting the file.
    """
    pass


class DiskOpenError(DiskError):
    """
    The disk could not be read for a reason that says nothing about its
    content (I/O error, timeout, permissions).
    """
    pass


class DiskHandle(ABC):
    """An open disk. Only valid inside the codec's ``open`` block."""

    path: str
    disk_type: DiskType
    uuid: str
    size: int  # logical size in bytes
    parent_name: Optional[str]  # differencing disks only, relative to the disk's directory

    @abstractmethod
    async def contains_all_data_of(self, other: "DiskHandle") -> bool:
        """True if every block allocated in ``other`` is allocated here with the same content."""
        pass

    @abstractmethod
    async def get_size(self) -> Optional[int]:
        """
        Bytes used on storage, or None when it can only be computed with
        an expensive per-block query.
        """
        pass


class DiskCodec(ABC):
    """Open and merge disks stored on a StorageBackend."""

    @abstractmethod
    def open(
        self,
        storage: StorageBackend,
        path: str,
        check_secondary_footer: bool = True
    ) -> AsyncContextManager[DiskHandle]:
        """
        Open a disk, releasing it when the block exits.

        Args:
            storage: Backend holding the disk
            path: Disk path; aliases are followed
            check_secondary_footer: Verify the footer copy; disks with an
                interrupted merge have an inconsistent one

        Raises:
            DiskFormatError: if the file is structurally invalid
            DiskOpenError: or any StorageError, on I/O failures
        """
        pass

    @abstractmethod
    async def merge_chain(
        self,
        parent_storage: StorageBackend,
        parent_path: str,
        child_storage: StorageBackend,
        child_paths: List[str],
        on_progress: Optional[ProgressCallback] = None
    ) -> int:
        """
        Fold every child's blocks into the parent, oldest child first.

        Afterwards reading the parent returns what reading the newest child
        returned before. No file is deleted or renamed.

        Args:
            on_progress: Called with (blocks done, blocks total)

        Returns:
            Logical size of the merged disk
        """
        pass
