"""
Offline request queue.
Durably captures operations that could not run while offline and replays
them, oldest first, once connectivity returns.
"""

import asyncio
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from storyloom.errors import NetworkError, PersistenceError
from storyloom.jobs.database import OfflineRequestDatabase
from storyloom.models import JournalEntry, format_timestamp, parse_timestamp, utc_now
from storyloom.utils.logging import queue_logger


class RequestType(str, Enum):
    """Operations that can be captured while offline"""
    GENERATE_STORY = "generateStory"


@dataclass
class OfflineRequest:
    """A captured operation plus its replay bookkeeping."""
    type: RequestType
    payload: Dict[str, str]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    creation_date: datetime = field(default_factory=utc_now)
    attempt_count: int = 0
    last_error: Optional[str] = None

    @classmethod
    def generate_story(
        cls,
        entry: JournalEntry,
        genre: str,
        user_id: str,
        student_name: str
    ) -> "OfflineRequest":
        """Capture everything needed to re-run story generation for an entry."""
        return cls(
            type=RequestType.GENERATE_STORY,
            payload={
                "entry_id": entry.id,
                "text": entry.content,
                "entry_date": format_timestamp(entry.date),
                "genre": genre,
                "user_id": user_id,
                "student_name": student_name,
            },
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OfflineRequest":
        return cls(
            type=RequestType(row["type"]),
            payload=row["payload"],
            id=row["request_id"],
            creation_date=parse_timestamp(row["creation_date"]),
            attempt_count=row["attempt_count"],
            last_error=row["last_error"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": dict(self.payload),
            "creation_date": format_timestamp(self.creation_date),
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
        }


@dataclass
class DrainReport:
    """Outcome of one drain call."""
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    stopped_offline: bool = False
    already_running: bool = False
    remaining: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "stopped_offline": self.stopped_offline,
            "already_running": self.already_running,
            "remaining": self.remaining,
        }


ReplayHandler = Callable[[OfflineRequest], Awaitable[Any]]
FailureCallback = Callable[[OfflineRequest, Exception], Awaitable[None]]


class OfflineRequestQueue:
    """
    FIFO log of offline requests.

    Usage:
        queue = OfflineRequestQueue()
        await queue.initialize()

        # Capture while offline
        await queue.add_request(OfflineRequest.generate_story(entry, ...))

        # Replay once back online
        report = await queue.drain(pipeline.replay)
    """

    def __init__(self, db_path: str = "offline_requests.db"):
        self.db = OfflineRequestDatabase(db_path)
        self._initialized = False
        self._draining = False
        self._rerun_requested = False

    async def initialize(self):
        """Initialize the database connection"""
        if not self._initialized:
            await self.db.connect()
            self._initialized = True

    async def add_request(self, request: OfflineRequest) -> OfflineRequest:
        """
        Persist a request at the tail of the queue.

        Raises:
            PersistenceError: if the log cannot be written
        """
        if not self._initialized:
            await self.initialize()

        try:
            await self.db.insert_request(
                request_id=request.id,
                request_type=request.type.value,
                payload=request.payload,
                creation_date=format_timestamp(request.creation_date),
                attempt_count=request.attempt_count
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to queue offline request {request.id}: {e}") from e

        queue_logger.info(
            "Queued offline request",
            request_id=request.id,
            type=request.type.value,
            entry_id=request.payload.get("entry_id"),
        )
        return request

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def drain(
        self,
        handler: ReplayHandler,
        on_failure: Optional[FailureCallback] = None
    ) -> DrainReport:
        """
        Replay queued requests in enqueue order, one at a time.

        A request is removed only after ``handler`` returns. A failed request
        stays queued with its error recorded. A not-connected NetworkError
        stops the drain; any other failure moves on to the next request.

        If a drain is already running, this call asks it to make one more
        pass and returns immediately. The extra pass only picks up requests
        that have not failed yet during the running drain.

        Args:
            handler: Coroutine that re-runs the captured operation (raises on failure)
            on_failure: Awaited after each failed replay with the request and error
        """
        if not self._initialized:
            await self.initialize()

        if self._draining:
            self._rerun_requested = True
            return DrainReport(already_running=True)

        self._draining = True
        report = DrainReport()
        try:
            while True:
                self._rerun_requested = False
                await self._drain_pass(handler, on_failure, report)
                if report.stopped_offline or not self._rerun_requested:
                    break
        finally:
            self._draining = False

        report.remaining = await self.db.count()
        queue_logger.info(
            "Offline queue drained",
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            stopped_offline=report.stopped_offline,
            remaining=report.remaining,
        )
        return report

    async def _drain_pass(
        self,
        handler: ReplayHandler,
        on_failure: Optional[FailureCallback],
        report: DrainReport
    ):
        last_seq = 0
        while True:
            row = await self.db.get_next_after(last_seq)
            if row is None:
                return
            last_seq = row["seq"]
            if row["request_id"] in report.failed:
                # Already failed earlier in this drain
                continue

            request = OfflineRequest.from_row(row)
            request.attempt_count = await self.db.record_attempt(request.id)

            try:
                await handler(request)
            except Exception as e:
                request.last_error = str(e) or e.__class__.__name__
                await self.db.record_failure(request.id, request.last_error)
                report.failed.append(request.id)

                queue_logger.warning(
                    "Offline replay failed",
                    request_id=request.id,
                    attempt_count=request.attempt_count,
                    error=request.last_error,
                )
                if on_failure is not None:
                    await on_failure(request, e)

                if isinstance(e, NetworkError) and e.not_connected:
                    report.stopped_offline = True
                    return
                continue

            await self.db.delete_request(request.id)
            report.succeeded.append(request.id)
            queue_logger.info(
                "Offline replay completed",
                request_id=request.id,
                attempt_count=request.attempt_count,
            )

    async def pending_count(self) -> int:
        """Get the number of queued requests"""
        if not self._initialized:
            await self.initialize()

        return await self.db.count()

    async def list_requests(self, limit: Optional[int] = None) -> List[OfflineRequest]:
        """Queued requests, oldest first"""
        if not self._initialized:
            await self.initialize()

        return [OfflineRequest.from_row(row) for row in await self.db.get_requests(limit)]

    async def get_request(self, request_id: str) -> Optional[OfflineRequest]:
        if not self._initialized:
            await self.initialize()

        row = await self.db.get_request(request_id)
        return OfflineRequest.from_row(row) if row else None

    async def remove_request(self, request_id: str) -> bool:
        """Drop a request without replaying it"""
        if not self._initialized:
            await self.initialize()

        removed = await self.db.delete_request(request_id)
        if removed:
            queue_logger.info("Removed offline request", request_id=request_id)
        return removed

    async def reset_attempts(self, request_id: str) -> bool:
        """Clear attempt count and last error (user-initiated retry)"""
        if not self._initialized:
            await self.initialize()

        return await self.db.reset_attempts(request_id)

    async def close(self):
        """Close the database connection"""
        if self._initialized:
            await self.db.close()
            self._initialized = False
