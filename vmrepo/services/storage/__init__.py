"""
Storage backend factory and exports.
"""
import enum
from typing import Dict, Any, Optional

from vmrepo.core.config import settings
from vmrepo.services.storage.base import (
    StorageBackend,
    StorageError,
    StorageNotFoundError,
    StorageReadError,
    StorageWriteError
)
from vmrepo.services.storage.local import LocalStorage


class StorageType(str, enum.Enum):
    """Storage backend types."""
    LOCAL = "local"


def create_storage_backend(
    storage_type: StorageType,
    config: Optional[Dict[str, Any]] = None
) -> StorageBackend:
    """
    Factory function to create storage backend instances.

    Args:
        storage_type: Type of storage backend
        config: Configuration dictionary for the backend; a local backend
            without ``base_path`` is rooted at BACKUP_BASE_PATH

    Returns:
        Initialized storage backend instance

    Raises:
        StorageError: If storage type is not supported
    """
    if storage_type == StorageType.LOCAL:
        return LocalStorage({"base_path": settings.BACKUP_BASE_PATH, **(config or {})})
    else:
        raise StorageError(f"Unsupported storage type: {storage_type}")


__all__ = [
    "StorageBackend",
    "StorageError",
    "StorageNotFoundError",
    "StorageReadError",
    "StorageWriteError",
    "StorageType",
    "LocalStorage",
    "create_storage_backend"
]
