"""Global pytest configuration and fixtures.

Disks are JSON block maps stored in an in-memory storage backend:

    {"uuid": "...", "type": "differencing", "parent": "A.vhd",
     "size": 4096, "blocks": {"0": "a", "3": "c"}}
"""

import asyncio
import json
import posixpath
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import pytest

from vmrepo.models.disk import DiskType
from vmrepo.services.disk.base import DiskCodec, DiskFormatError, DiskHandle, DiskOpenError
from vmrepo.services.storage.base import (
    StorageBackend,
    StorageNotFoundError,
    StorageReadError,
    StorageWriteError,
)

VM_DIR = "/vm"
VDI_DIR = "/vm/vdis/job/vdi"


def _norm(path: str) -> str:
    return posixpath.normpath("/" + path.lstrip("/"))


class MemoryStorage(StorageBackend):
    """Dict-backed storage; directories exist while they hold a file."""

    def __init__(self):
        super().__init__({})
        self.files: Dict[str, bytes] = {}
        self.mutations: List[tuple] = []
        self.unreadable: set = set()
        self.undeletable: set = set()

    def _under(self, path: str) -> List[str]:
        prefix = path.rstrip("/") + "/"
        return [p for p in self.files if p.startswith(prefix)]

    async def list(self, path, ignore_missing=False, prepend_dir=False, filter=None):
        path = _norm(path)
        prefix = path.rstrip("/") + "/"
        names = sorted({p[len(prefix):].split("/", 1)[0] for p in self._under(path)})
        if not names and not ignore_missing:
            raise StorageNotFoundError(f"Directory not found: {path}")
        if filter is not None:
            names = [name for name in names if filter(name)]
        if prepend_dir:
            return [posixpath.join(path, name) for name in names]
        return names

    async def read_file(self, path):
        path = _norm(path)
        if path in self.unreadable:
            raise StorageReadError(f"Read failed: {path}")
        if path not in self.files:
            raise StorageNotFoundError(f"File not found: {path}")
        return self.files[path]

    async def read(self, path, position, length):
        data = await self.read_file(path)
        return data[position:position + length]

    async def write_file(self, path, data, overwrite=False):
        path = _norm(path)
        if path in self.files and not overwrite:
            raise StorageWriteError(f"File already exists: {path}")
        self.mutations.append(("write", path))
        self.files[path] = bytes(data)

    async def unlink(self, path):
        path = _norm(path)
        if path in self.undeletable:
            raise StorageWriteError(f"Delete failed: {path}")
        self.mutations.append(("unlink", path))
        if path in self.files:
            del self.files[path]
            return
        children = self._under(path)
        if not children:
            raise StorageNotFoundError(f"File not found: {path}")
        for child in children:
            del self.files[child]

    async def rename(self, source, destination):
        source, destination = _norm(source), _norm(destination)
        if source not in self.files:
            raise StorageNotFoundError(f"File not found: {source}")
        self.mutations.append(("rename", source, destination))
        self.files[destination] = self.files.pop(source)

    async def get_size(self, path):
        return len(await self.read_file(path))

    async def exists(self, path):
        path = _norm(path)
        return path in self.files or bool(self._under(path))


class MemoryDisk(DiskHandle):
    def __init__(self, path: str, raw: Dict, stored_size: int, size_known: bool):
        self.path = path
        self.uuid = raw["uuid"]
        self.disk_type = DiskType(raw["type"])
        self.size = int(raw.get("size", 0))
        self.parent_name = raw.get("parent")
        self.blocks: Dict[str, str] = dict(raw.get("blocks", {}))
        self._stored_size = stored_size
        self._size_known = size_known

    async def contains_all_data_of(self, other: "MemoryDisk") -> bool:
        return all(self.blocks.get(key) == value for key, value in other.blocks.items())

    async def get_size(self) -> Optional[int]:
        return self._stored_size if self._size_known else None


class MemoryCodec(DiskCodec):
    """Block-map codec; merging overlays every child's blocks on the parent."""

    def __init__(self):
        self.open_failures: set = set()  # paths raising DiskOpenError
        self.footer_failures: set = set()  # paths whose secondary footer is inconsistent
        self.merge_failures: set = set()  # parent paths whose merge fails
        self.size_known = True
        self.merge_delay = 0.0
        self.open_handles = 0
        self.footer_checks: Dict[str, bool] = {}
        self.active_merges = 0
        self.max_active_merges = 0

    async def _resolve(self, storage, path):
        if path.endswith(".alias.vhd"):
            content = (await storage.read_file(path)).decode().strip()
            return _norm(posixpath.join(posixpath.dirname(path), content))
        return path

    async def _load(self, storage, path):
        data = await storage.read_file(await self._resolve(storage, path))
        try:
            raw = json.loads(data)
            DiskType(raw["type"])
            raw["uuid"]
        except (ValueError, KeyError, TypeError) as e:
            raise DiskFormatError(f"invalid disk {path}: {e}")
        return raw, len(data)

    @asynccontextmanager
    async def open(self, storage, path, check_secondary_footer=True):
        if path in self.open_failures:
            raise DiskOpenError(f"I/O error on {path}")
        self.footer_checks[path] = check_secondary_footer
        if check_secondary_footer and path in self.footer_failures:
            raise DiskFormatError(f"secondary footer mismatch in {path}")
        raw, stored_size = await self._load(storage, path)
        self.open_handles += 1
        try:
            yield MemoryDisk(path, raw, stored_size, self.size_known)
        finally:
            self.open_handles -= 1

    async def merge_chain(self, parent_storage, parent_path, child_storage, child_paths, on_progress=None):
        self.active_merges += 1
        self.max_active_merges = max(self.max_active_merges, self.active_merges)
        try:
            if parent_path in self.merge_failures:
                raise DiskOpenError(f"merge of {parent_path} failed")
            parent, _ = await self._load(parent_storage, parent_path)
            children = [(await self._load(child_storage, path))[0] for path in child_paths]

            total = sum(len(child["blocks"]) for child in children)
            done = 0
            for child in children:
                for key, value in child["blocks"].items():
                    parent["blocks"][key] = value
                    done += 1
                    if on_progress is not None:
                        on_progress(done, total)
                if self.merge_delay:
                    await asyncio.sleep(self.merge_delay)
            parent["size"] = children[-1].get("size", parent.get("size", 0))

            target = await self._resolve(parent_storage, parent_path)
            await parent_storage.write_file(target, json.dumps(parent).encode(), overwrite=True)
            return parent["size"]
        finally:
            self.active_merges -= 1


class RepoBuilder:
    """Lays out a VM backup directory in a MemoryStorage."""

    def __init__(self, storage: MemoryStorage, vm_dir: str = VM_DIR, vdi_dir: str = VDI_DIR):
        self.storage = storage
        self.vm_dir = vm_dir
        self.vdi_dir = vdi_dir

    def disk(self, name, uuid=None, parent=None, blocks=None, size=4096, directory=None):
        """Add a disk; ``parent`` is a name relative to the disk's directory."""
        path = posixpath.join(directory or self.vdi_dir, name)
        raw = {
            "uuid": uuid or f"uuid-{name}",
            "type": "differencing" if parent else "dynamic",
            "parent": parent,
            "size": size,
            "blocks": blocks or {},
        }
        self.storage.files[path] = json.dumps(raw).encode()
        return path

    def alias(self, name, target_name, blocks=None, uuid=None, parent=None):
        """Add ``name`` (an .alias.vhd) pointing to ``data/<target_name>``."""
        target = self.disk(
            target_name,
            uuid=uuid or f"uuid-{name}",
            parent=parent,
            blocks=blocks,
            directory=posixpath.join(self.vdi_dir, "data"),
        )
        path = posixpath.join(self.vdi_dir, name)
        self.storage.files[path] = f"data/{target_name}".encode()
        return path, target

    def raw(self, path, data: bytes):
        self.storage.files[path] = data
        return path

    def delta(self, name, *disks, size=None, key="vdis"):
        """Add a delta metadata record referencing disk paths."""
        record = {
            "mode": "delta",
            key: {f"vdi{i}": posixpath.relpath(disk, self.vm_dir) for i, disk in enumerate(disks)},
        }
        if size is not None:
            record["size"] = size
        path = posixpath.join(self.vm_dir, name)
        self.storage.files[path] = json.dumps(record).encode()
        return path

    def full(self, name, archive_name, archive_data=None, size=None, with_archive=True):
        """Add a full metadata record and, by default, a valid tar archive."""
        record = {"mode": "full", "xva": f"./{archive_name}"}
        if size is not None:
            record["size"] = size
        path = posixpath.join(self.vm_dir, name)
        self.storage.files[path] = json.dumps(record).encode()
        archive = posixpath.join(self.vm_dir, archive_name)
        if with_archive:
            self.storage.files[archive] = archive_data if archive_data is not None else b"x" * 512 + bytes(1024)
        return path, archive

    def marker(self, disk_path, children=None):
        directory, name = posixpath.split(disk_path)
        path = posixpath.join(directory, f".{name}.merge.json")
        content = {"parent": disk_path, "children": children or [], "step": "merging"}
        self.storage.files[path] = json.dumps(content).encode()
        return path

    def read_json(self, path):
        return json.loads(self.storage.files[path])

    def blocks(self, path):
        return self.read_json(path)["blocks"]


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def codec():
    return MemoryCodec()


@pytest.fixture
def repo(storage):
    return RepoBuilder(storage)


class Recorder:
    """Collects on_info / on_warn calls."""

    def __init__(self):
        self.infos: List[tuple] = []
        self.warnings: List[tuple] = []

    def on_info(self, message, details=None):
        self.infos.append((message, details or {}))

    def on_warn(self, message, details=None):
        self.warnings.append((message, details or {}))

    def warned(self, message: str) -> List[Dict]:
        return [details for msg, details in self.warnings if msg == message]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_ctx(storage, codec, recorder):
    """Factory for CleanupContext bound to the memory fixtures."""
    from vmrepo.services.cleanup.context import CleanupContext

    def factory(repair: bool = False):
        return CleanupContext(
            storage=storage,
            codec=codec,
            repair=repair,
            on_info=recorder.on_info,
            on_warn=recorder.on_warn,
        )

    return factory
