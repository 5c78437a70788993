"""
Disk, chain and merge-marker models.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class DiskType(str, enum.Enum):
    """Virtual disk kinds."""
    FIXED = "fixed"
    DYNAMIC = "dynamic"
    DIFFERENCING = "differencing"


@dataclass
class DiskInfo:
    """What the graph builder learned about one disk file."""
    path: str
    uuid: str
    disk_type: DiskType
    size: int = 0  # logical size in bytes
    parent_path: Optional[str] = None  # differencing disks only

    @property
    def is_differencing(self) -> bool:
        return self.disk_type == DiskType.DIFFERENCING


@dataclass
class Chain:
    """
    Disks to merge, oldest first.

    The merged content ends up at the path of the last element.
    """
    disks: List[str]
    interrupted: bool = False

    def __post_init__(self):
        if len(self.disks) < 2:
            raise ValueError(f"a chain needs at least two disks, got {self.disks}")

    @property
    def ancestor(self) -> str:
        return self.disks[0]

    @property
    def children(self) -> List[str]:
        return self.disks[1:]

    @property
    def target(self) -> str:
        return self.disks[-1]

    def __len__(self) -> int:
        return len(self.disks)


class MergeStep(str, enum.Enum):
    """Where an in-flight merge was when its marker was last written."""
    MERGING = "merging"
    CLEANING = "cleaning"


@dataclass
class MergeMarker:
    """Content of an interrupted-merge marker file."""
    parent: str
    children: List[str]
    step: MergeStep = MergeStep.MERGING
    done: int = 0
    total: int = 0
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parent": self.parent,
            "children": list(self.children),
            "step": self.step.value,
            "done": self.done,
            "total": self.total,
            "started_at": self.started_at,
        }
