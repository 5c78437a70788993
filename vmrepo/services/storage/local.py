"""
Local filesystem storage backend.
"""
import asyncio
import posixpath
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import aiofiles
import aiofiles.os

from vmrepo.services.storage.base import (
    StorageBackend,
    StorageError,
    StorageNotFoundError,
    StorageReadError,
    StorageWriteError
)


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize local storage.

        Config format:
        {
            "base_path": "/path/to/backups"
        }
        """
        super().__init__(config)
        self.base_path = Path(config["base_path"])

        # Create base directory if it doesn't exist
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, path: str) -> Path:
        """Get full filesystem path from a backend path."""
        relative = posixpath.normpath("/" + path).lstrip("/")
        full_path = self.base_path / relative
        # Ensure path is within base_path (security check)
        if not str(full_path.resolve()).startswith(str(self.base_path.resolve())):
            raise StorageError(f"Path {path} is outside base path")
        return full_path

    async def list(
        self,
        path: str,
        ignore_missing: bool = False,
        prepend_dir: bool = False,
        filter: Optional[Callable[[str], bool]] = None
    ) -> List[str]:
        """List the entries of a directory."""
        dir_path = self._get_full_path(path)

        try:
            names = await aiofiles.os.listdir(dir_path)
        except FileNotFoundError:
            if ignore_missing:
                return []
            raise StorageNotFoundError(f"Directory not found: {path}")
        except NotADirectoryError:
            raise StorageReadError(f"Not a directory: {path}")
        except OSError as e:
            self.logger.error(f"Failed to list {path} in local storage: {e}")
            raise StorageReadError(f"List failed: {e}")

        names = sorted(names)
        if filter is not None:
            names = [name for name in names if filter(name)]
        if prepend_dir:
            return [posixpath.join(path, name) for name in names]
        return names

    async def read_file(self, path: str) -> bytes:
        """Read a whole file from local storage."""
        try:
            async with aiofiles.open(self._get_full_path(path), 'rb') as f:
                return await f.read()
        except FileNotFoundError:
            raise StorageNotFoundError(f"File not found: {path}")
        except OSError as e:
            raise StorageReadError(f"Read failed: {e}")

    async def read(self, path: str, position: int, length: int) -> bytes:
        """Read a byte range from local storage."""
        try:
            async with aiofiles.open(self._get_full_path(path), 'rb') as f:
                await f.seek(position)
                return await f.read(length)
        except FileNotFoundError:
            raise StorageNotFoundError(f"File not found: {path}")
        except OSError as e:
            raise StorageReadError(f"Read failed: {e}")

    async def write_file(self, path: str, data: bytes, overwrite: bool = False) -> None:
        """Write a file, through a temporary sibling when overwriting."""
        dest_path = self._get_full_path(path)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            if not overwrite:
                async with aiofiles.open(dest_path, 'xb') as f:
                    await f.write(data)
                return

            tmp_path = dest_path.with_name(f".{dest_path.name}.tmp")
            async with aiofiles.open(tmp_path, 'wb') as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, dest_path)
        except FileExistsError:
            raise StorageWriteError(f"File already exists: {path}")
        except OSError as e:
            self.logger.error(f"Failed to write {path} to local storage: {e}")
            raise StorageWriteError(f"Write failed: {e}")

    async def unlink(self, path: str) -> None:
        """Delete a file or a directory tree from local storage."""
        full_path = self._get_full_path(path)

        try:
            if await aiofiles.os.path.isdir(full_path):
                await asyncio.get_event_loop().run_in_executor(None, shutil.rmtree, full_path)
            else:
                await aiofiles.os.remove(full_path)
        except FileNotFoundError:
            raise StorageNotFoundError(f"File not found: {path}")
        except OSError as e:
            self.logger.error(f"Failed to delete {path} from local storage: {e}")
            raise StorageWriteError(f"Delete failed: {e}")

    async def rename(self, source: str, destination: str) -> None:
        """Move a file inside local storage."""
        try:
            await aiofiles.os.replace(
                self._get_full_path(source),
                self._get_full_path(destination)
            )
        except FileNotFoundError:
            raise StorageNotFoundError(f"File not found: {source}")
        except OSError as e:
            raise StorageWriteError(f"Rename failed: {e}")

    async def get_size(self, path: str) -> int:
        """Size of a file in local storage."""
        try:
            stat = await aiofiles.os.stat(self._get_full_path(path))
        except FileNotFoundError:
            raise StorageNotFoundError(f"File not found: {path}")
        except OSError as e:
            raise StorageReadError(f"Stat failed: {e}")
        return stat.st_size

    async def exists(self, path: str) -> bool:
        """Check if a file exists in local storage."""
        try:
            return await aiofiles.os.path.exists(self._get_full_path(path))
        except Exception:
            return False
