"""
File naming conventions of a VM backup directory.

    <vm>/<timestamp>.json                    backup metadata
    <vm>/<timestamp>.xva[.checksum]          full backup archive
    <vm>/vdis/<job>/<vdi>/<ts>.vhd           disk
    <vm>/vdis/<job>/<vdi>/<ts>.alias.vhd     alias to <vdi>/data/<ts>.vhd
    <vm>/vdis/<job>/<vdi>/.<ts>.vhd.merge.json   interrupted merge marker
"""
import posixpath
import re
from typing import Optional

DISK_SUFFIX = ".vhd"
ALIAS_SUFFIX = ".alias.vhd"
METADATA_SUFFIX = ".json"
ARCHIVE_SUFFIX = ".xva"
ARCHIVE_CHECKSUM_SUFFIX = ".xva.checksum"
ALIAS_DATA_DIR = "data"
DISKS_DIR = "vdis"

MERGE_MARKER_RE = re.compile(r"^\.(.+)\.merge\.json$")


def is_disk_file(path: str) -> bool:
    return posixpath.basename(path).endswith(DISK_SUFFIX)


def is_alias(path: str) -> bool:
    return posixpath.basename(path).endswith(ALIAS_SUFFIX)


def is_metadata_file(path: str) -> bool:
    return posixpath.basename(path).endswith(METADATA_SUFFIX)


def is_archive(path: str) -> bool:
    return posixpath.basename(path).endswith(ARCHIVE_SUFFIX)


def is_archive_checksum(path: str) -> bool:
    return posixpath.basename(path).endswith(ARCHIVE_CHECKSUM_SUFFIX)


def archive_of_checksum(path: str) -> str:
    return path[:-len(".checksum")]


def merge_marker_path(disk_path: str) -> str:
    """Marker covering ``disk_path``, in the same directory."""
    directory, name = posixpath.split(disk_path)
    return posixpath.join(directory, f".{name}.merge.json")


def disk_name_of_marker(name: str) -> Optional[str]:
    """Disk basename covered by a marker file name, None if not a marker."""
    match = MERGE_MARKER_RE.match(name)
    return match.group(1) if match else None


def resolve_path(base_dir: str, path: str) -> str:
    """Resolve ``path`` against ``base_dir`` into a normalized absolute path."""
    return posixpath.normpath(posixpath.join("/", base_dir, path))
