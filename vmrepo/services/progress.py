"""
Merge progress tracking.

Provides:
- Per-merge progress with blocks done/total and a smoothed block rate
- Typed progress events published on a ProgressStream
- A cooperative periodic reporter (an asyncio task, no threads)
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class MergeEventKind(str, enum.Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class MergeProgressEvent:
    """One observation of a merge, as seen by subscribers."""
    kind: MergeEventKind
    parent: str
    target: str
    done: int
    total: int
    percent: float
    blocks_per_second: float = 0.0
    error: Optional[str] = None


@dataclass
class MergeProgress:
    """Progress of a single chain merge."""
    parent: str
    target: str
    status: str = "pending"  # pending, merging, completed, failed
    done: int = 0
    total: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    _samples: List[tuple] = field(default_factory=list)  # (timestamp, done) for rate calc

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, (self.done / self.total) * 100)

    @property
    def blocks_per_second(self) -> float:
        """Merge rate over the last 10 seconds of samples."""
        if len(self._samples) < 2:
            return 0.0

        now = time.monotonic()
        recent = [(t, d) for t, d in self._samples if now - t < 10]
        if len(recent) < 2:
            recent = self._samples[-2:]

        time_delta = recent[-1][0] - recent[0][0]
        blocks_delta = recent[-1][1] - recent[0][1]

        if time_delta <= 0:
            return 0.0

        return blocks_delta / time_delta

    def update(self, done: int, total: Optional[int] = None):
        """Record a codec progress callback."""
        if self.status == "pending":
            self.status = "merging"
            self.started_at = datetime.now(timezone.utc)

        self.done = done
        if total is not None:
            self.total = total

        # Keep the last 20 samples
        self._samples.append((time.monotonic(), done))
        if len(self._samples) > 20:
            self._samples = self._samples[-20:]

    def mark_completed(self):
        self.status = "completed"
        self.completed_at = datetime.now(timezone.utc)
        if self.total > 0:
            self.done = self.total

    def mark_failed(self):
        self.status = "failed"
        self.completed_at = datetime.now(timezone.utc)

    def to_event(self, kind: MergeEventKind, error: Optional[str] = None) -> MergeProgressEvent:
        return MergeProgressEvent(
            kind=kind,
            parent=self.parent,
            target=self.target,
            done=self.done,
            total=self.total,
            percent=round(self.percent, 1),
            blocks_per_second=round(self.blocks_per_second, 1),
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for log details."""
        return {
            "parent": self.parent,
            "target": self.target,
            "status": self.status,
            "done": self.done,
            "total": self.total,
            "percent": round(self.percent, 1),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


ProgressSubscriber = Callable[[MergeProgressEvent], None]


class ProgressStream:
    """
    Fan-out of merge progress events to subscribers.

    One stream is built by the caller of a cleanup run and shared by all
    merges of that run.
    """

    def __init__(self):
        self._subscribers: List[ProgressSubscriber] = []

    def subscribe(self, callback: ProgressSubscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: MergeProgressEvent):
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                # a broken observer must not break the merge
                logger.warning(f"Progress subscriber failed on {event.kind.value} event for {event.parent}: {e}")


async def report_periodically(
    progress: MergeProgress,
    stream: ProgressStream,
    interval: float,
    on_tick: Optional[Callable[[MergeProgress], Awaitable[None]]] = None
):
    """
    Publish a PROGRESS event every ``interval`` seconds until cancelled.

    Nothing is published before the codec reported a first (done, total).

    Args:
        on_tick: Awaited after each event, e.g. to persist the progress
    """
    while True:
        await asyncio.sleep(interval)
        if progress.status != "merging":
            continue
        stream.publish(progress.to_event(MergeEventKind.PROGRESS))
        if on_tick is not None:
            try:
                await on_tick(progress)
            except Exception as e:
                logger.warning(f"Failed to persist merge progress of {progress.parent}: {e}")
