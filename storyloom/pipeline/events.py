"""
Pipeline state snapshots and the bus that pushes them to observers.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from storyloom.models import format_timestamp, utc_now


class PipelineState(str, Enum):
    """Stages of a story generation run"""
    IDLE = "idle"
    EXTRACTING_METADATA = "extracting_metadata"
    GENERATING_CHAPTER = "generating_chapter"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    OFFLINE = "offline"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.COMPLETE, PipelineState.OFFLINE, PipelineState.FAILED)


@dataclass(frozen=True)
class PipelineSnapshot:
    """One observable state transition of a run."""
    run_id: str
    journal_entry_id: str
    state: PipelineState
    progress: float
    step: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    chapter_id: Optional[str] = None
    request_id: Optional[str] = None
    replay: bool = False
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "journal_entry_id": self.journal_entry_id,
            "state": self.state.value,
            "progress": self.progress,
            "step": self.step,
            "error_kind": self.error_kind,
            "message": self.message,
            "chapter_id": self.chapter_id,
            "request_id": self.request_id,
            "replay": self.replay,
            "timestamp": format_timestamp(self.timestamp),
        }


class PipelineEventBus:
    """
    Fan-out of snapshots to subscriber queues.

    Usage:
        bus = PipelineEventBus()
        events = bus.subscribe()
        ...
        snapshot = await events.get()
    """

    def __init__(self):
        self._subscribers: List[asyncio.Queue] = []
        self._latest: Optional[PipelineSnapshot] = None

    @property
    def latest(self) -> Optional[PipelineSnapshot]:
        """Most recently published snapshot"""
        return self._latest

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, snapshot: PipelineSnapshot):
        self._latest = snapshot
        for queue in list(self._subscribers):
            if queue.full():
                # Slow subscriber: drop its oldest snapshot
                queue.get_nowait()
            queue.put_nowait(snapshot)
