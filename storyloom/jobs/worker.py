"""
Background worker that replays the offline queue.
Drains the queue whenever connectivity comes back.
"""

import asyncio
from typing import Optional

from storyloom.config import config
from storyloom.errors import StoryEngineError, UnknownError
from storyloom.jobs.queue import DrainReport, OfflineRequest, OfflineRequestQueue
from storyloom.network import NetworkMonitor
from storyloom.pipeline.orchestrator import ErrorReporter, LoggingErrorReporter, StoryPipeline
from storyloom.utils.logging import queue_logger


class OfflineReplayWorker:
    """
    Replays queued requests through the pipeline on reconnect.

    Failed replays stay queued and are silent until a request reaches
    ``alert_threshold`` attempts; the error reporter hears about it once,
    on the attempt that reaches the threshold.
    """

    def __init__(
        self,
        offline_queue: OfflineRequestQueue,
        pipeline: StoryPipeline,
        monitor: NetworkMonitor,
        error_reporter: Optional[ErrorReporter] = None,
        alert_threshold: Optional[int] = None
    ):
        self.offline_queue = offline_queue
        self.pipeline = pipeline
        self.monitor = monitor
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.alert_threshold = alert_threshold or config.OFFLINE_REPLAY_ALERT_THRESHOLD

        self._is_processing = False
        self._current_request_id: Optional[str] = None
        self._startup_task: Optional[asyncio.Task] = None
        self._started = False

    async def process_queue(self) -> DrainReport:
        """
        Drain the offline queue.
        Called on every reconnect edge; safe to call while a drain is running.
        """
        if not self.monitor.is_connected:
            queue_logger.info("Skipping offline replay, still disconnected")
            return DrainReport(remaining=await self.offline_queue.pending_count())

        self._is_processing = True
        try:
            return await self.offline_queue.drain(self._replay, on_failure=self._on_failure)
        finally:
            if not self.offline_queue.is_draining:
                self._is_processing = False
                self._current_request_id = None

    async def _replay(self, request: OfflineRequest):
        self._current_request_id = request.id
        try:
            await self.pipeline.replay(request)
        finally:
            self._current_request_id = None

    async def _on_failure(self, request: OfflineRequest, error: Exception):
        if request.attempt_count != self.alert_threshold:
            return

        if not isinstance(error, StoryEngineError):
            error = UnknownError(str(error))
        self.error_reporter.report(error, {
            "request_id": request.id,
            "journal_entry_id": request.payload.get("entry_id"),
            "attempt_count": request.attempt_count,
        })

    def start(self):
        """Start listening for reconnects and replay anything left from a previous run"""
        if self._started:
            return
        self.monitor.add_reconnect_listener(self.process_queue)
        self._started = True

        if self.monitor.is_connected:
            self._startup_task = asyncio.get_running_loop().create_task(self.process_queue())
        queue_logger.info("Offline replay worker started", alert_threshold=self.alert_threshold)

    async def shutdown(self):
        """Stop listening and wait for the start-up drain to settle"""
        self.monitor.remove_reconnect_listener(self.process_queue)
        self._started = False

        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
            try:
                await self._startup_task
            except asyncio.CancelledError:
                pass
        self._startup_task = None
        queue_logger.info("Offline replay worker stopped")

    @property
    def is_processing(self) -> bool:
        """Check if the worker is currently draining the queue"""
        return self._is_processing

    @property
    def current_request(self) -> Optional[str]:
        """Get the ID of the request being replayed"""
        return self._current_request_id
