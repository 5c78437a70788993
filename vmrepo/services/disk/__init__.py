"""
Disk codec contract.
"""
from vmrepo.services.disk.base import (
    DiskCodec,
    DiskHandle,
    DiskError,
    DiskFormatError,
    DiskOpenError,
    ProgressCallback
)

__all__ = [
    'DiskCodec',
    'DiskHandle',
    'DiskError',
    'DiskFormatError',
    'DiskOpenError',
    'ProgressCallback'
]
