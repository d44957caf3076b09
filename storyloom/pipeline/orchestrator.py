"""
Story pipeline: journal entry -> metadata -> chapter -> story graph.

One run walks through fixed stages and publishes a snapshot at each:

    EXTRACTING_METADATA (0.0)
    GENERATING_CHAPTER  (0.25 recalling previous chapters, 0.5 writing)
    PERSISTING          (0.75)
    COMPLETE            (1.0)

A run that finds no connectivity before the chapter request is captured in
the offline queue and ends in OFFLINE. Any other failure ends in FAILED
with nothing persisted.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol

from storyloom.clients import CONTINUITY_WINDOW, ChapterGenerationClient, MetadataExtractionClient
from storyloom.config import config
from storyloom.database import StoryPersistenceManager
from storyloom.errors import (
    OFFLINE_MESSAGE,
    DecodeError,
    IntegrityError,
    NetworkError,
    StoryEngineError,
    UnknownError,
)
from storyloom.jobs.queue import OfflineRequest, OfflineRequestQueue, RequestType
from storyloom.models import (
    JournalEntry,
    StoryChapter,
    StoryNode,
    normalize_genre,
    parse_timestamp,
    utc_now,
)
from storyloom.network import NetworkMonitor
from storyloom.pipeline.events import PipelineEventBus, PipelineSnapshot, PipelineState
from storyloom.pipeline.journal import JournalStore
from storyloom.utils.logging import story_logger


# Fixed progress checkpoints
PROGRESS_EXTRACTING = 0.0
PROGRESS_RECALLING = 0.25
PROGRESS_WRITING = 0.5
PROGRESS_PERSISTING = 0.75
PROGRESS_COMPLETE = 1.0


class ErrorReporter(Protocol):
    def report(self, error: StoryEngineError, context: Dict[str, Any]) -> None:
        ...


class LoggingErrorReporter:
    """Default error sink: records terminal failures in the story log."""

    def report(self, error: StoryEngineError, context: Dict[str, Any]) -> None:
        story_logger.error(
            f"Story generation failed: {error}",
            kind=error.kind,
            user_message=error.user_message,
            **context,
        )


@dataclass
class PipelineResult:
    """Terminal outcome of a run."""
    run_id: str
    journal_entry_id: str
    state: PipelineState
    chapter: Optional[StoryChapter] = None
    node: Optional[StoryNode] = None
    error: Optional[StoryEngineError] = None
    request_id: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "journal_entry_id": self.journal_entry_id,
            "state": self.state.value,
            "chapter": self.chapter.to_dict() if self.chapter else None,
            "node": self.node.to_dict() if self.node else None,
            "error_kind": self.error.kind if self.error else None,
            "request_id": self.request_id,
            "message": self.message,
        }


class _Run:
    """Snapshot publisher for one run; keeps progress monotonic."""

    def __init__(self, bus: PipelineEventBus, entry_id: str, replay: bool):
        self.bus = bus
        self.run_id = uuid.uuid4().hex[:12]
        self.entry_id = entry_id
        self.replay = replay
        self.progress = PROGRESS_EXTRACTING
        self.state = PipelineState.IDLE

    def publish(self, state: PipelineState, step: str, progress: Optional[float] = None, **fields):
        if progress is not None:
            self.progress = max(self.progress, progress)
        self.state = state
        self.bus.publish(PipelineSnapshot(
            run_id=self.run_id,
            journal_entry_id=self.entry_id,
            state=state,
            progress=self.progress,
            step=step,
            replay=self.replay,
            **fields,
        ))


class StoryPipeline:
    """
    Orchestrates story generation for journal entries.

    All collaborators are injected; the app composition root builds one of
    each per process.

    Usage:
        pipeline = StoryPipeline(metadata_client, chapter_client, persistence,
                                 offline_queue, monitor)
        result = await pipeline.submit(entry, genre="mystery")
    """

    def __init__(
        self,
        metadata_client: MetadataExtractionClient,
        chapter_client: ChapterGenerationClient,
        persistence: StoryPersistenceManager,
        offline_queue: OfflineRequestQueue,
        monitor: NetworkMonitor,
        error_reporter: Optional[ErrorReporter] = None,
        event_bus: Optional[PipelineEventBus] = None,
        journal_store: Optional[JournalStore] = None,
    ):
        self.metadata_client = metadata_client
        self.chapter_client = chapter_client
        self.persistence = persistence
        self.offline_queue = offline_queue
        self.monitor = monitor
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.events = event_bus or PipelineEventBus()
        self.journal_store = journal_store

    # =========================================================================
    # Entry points
    # =========================================================================

    async def submit(
        self,
        entry: JournalEntry,
        genre: Optional[str] = None,
        user_id: Optional[str] = None,
        student_name: Optional[str] = None,
    ) -> PipelineResult:
        """
        Generate and persist the chapter for a journal entry.

        Never raises for pipeline failures: the outcome is in the returned
        result (COMPLETE, OFFLINE or FAILED) and in the published snapshots.

        Raises:
            ValueError: empty entry or unsupported genre (before any work starts)
        """
        if not entry.content or not entry.content.strip():
            raise ValueError("Cannot generate a story from an empty entry")
        genre = normalize_genre(genre or config.DEFAULT_GENRE)
        user_id = user_id or config.DEFAULT_USER_ID
        student_name = student_name or config.DEFAULT_STUDENT_NAME

        run = _Run(self.events, entry.id, replay=False)
        context = {"run_id": run.run_id, "journal_entry_id": entry.id, "genre": genre}

        try:
            if await self.persistence.get_node(entry.id) is not None:
                raise IntegrityError(f"Entry {entry.id} already has a chapter")

            if not self.monitor.is_connected:
                return await self._go_offline(run, entry, genre, user_id, student_name)

            run.publish(PipelineState.EXTRACTING_METADATA, "Analyzing journal entry", PROGRESS_EXTRACTING)
            try:
                metadata = await self.metadata_client.extract(entry.content)
            except NetworkError as e:
                if not e.not_connected:
                    raise
                return await self._go_offline(run, entry, genre, user_id, student_name)

            chapter, node = await self._generate_and_save(run, entry, metadata, genre, user_id, student_name)
        except asyncio.CancelledError:
            self._publish_cancelled(run, "Story generation was cancelled")
            raise
        except StoryEngineError as e:
            return self._fail(run, e, context)
        except Exception as e:
            story_logger.error("Unexpected pipeline error", error=repr(e), **context)
            return self._fail(run, UnknownError(str(e)), context)

        return PipelineResult(
            run_id=run.run_id,
            journal_entry_id=entry.id,
            state=PipelineState.COMPLETE,
            chapter=chapter,
            node=node,
        )

    async def generate_for_entry_id(
        self,
        entry_id: str,
        genre: Optional[str] = None,
        user_id: Optional[str] = None,
        student_name: Optional[str] = None,
    ) -> PipelineResult:
        """
        Look an entry up in the journal store and submit it.

        Raises:
            LookupError: no journal store configured or entry not found
        """
        if self.journal_store is None:
            raise LookupError("No journal store is configured")
        entry = await self.journal_store.get_entry(entry_id)
        if entry is None:
            raise LookupError(f"Journal entry {entry_id} not found")
        return await self.submit(entry, genre=genre, user_id=user_id, student_name=student_name)

    async def replay(self, request: OfflineRequest) -> PipelineResult:
        """
        Re-run a captured generateStory request (offline queue handler).

        Raises on any failure so the request stays queued. If the entry
        already has a node the run completes without generating.
        """
        if request.type != RequestType.GENERATE_STORY:
            raise DecodeError(f"Unsupported offline request type: {request.type}")
        entry, genre, user_id, student_name = self._unpack(request)

        run = _Run(self.events, entry.id, replay=True)
        context = {"run_id": run.run_id, "journal_entry_id": entry.id, "request_id": request.id}

        try:
            existing = await self.persistence.get_node(entry.id)
            if existing is not None:
                story_logger.info("Replay skipped, entry already has a chapter", **context)
                run.publish(
                    PipelineState.COMPLETE,
                    "Chapter ready",
                    PROGRESS_COMPLETE,
                    chapter_id=existing.chapter_id,
                    request_id=request.id,
                )
                return PipelineResult(
                    run_id=run.run_id,
                    journal_entry_id=entry.id,
                    state=PipelineState.COMPLETE,
                    chapter=await self.persistence.get_chapter(existing.chapter_id),
                    node=existing,
                    request_id=request.id,
                )

            run.publish(PipelineState.EXTRACTING_METADATA, "Analyzing journal entry", PROGRESS_EXTRACTING)
            metadata = await self.metadata_client.extract(entry.content)
            chapter, node = await self._generate_and_save(run, entry, metadata, genre, user_id, student_name)
        except asyncio.CancelledError:
            self._publish_cancelled(run, "Story replay was cancelled")
            raise
        except StoryEngineError as e:
            self._publish_failure(run, e)
            raise
        except Exception as e:
            error = UnknownError(str(e))
            self._publish_failure(run, error)
            raise error from e

        story_logger.info("Replayed offline story request", chapter_id=chapter.chapter_id, **context)
        return PipelineResult(
            run_id=run.run_id,
            journal_entry_id=entry.id,
            state=PipelineState.COMPLETE,
            chapter=chapter,
            node=node,
            request_id=request.id,
        )

    # =========================================================================
    # Stages
    # =========================================================================

    async def _generate_and_save(self, run: _Run, entry: JournalEntry, metadata, genre, user_id, student_name):
        run.publish(PipelineState.GENERATING_CHAPTER, "Recalling previous chapters", PROGRESS_RECALLING)

        # Held from the continuity read until the node is committed, so the
        # parent is always the latest node at insert time
        async with self.persistence.continuity_lock():
            arcs = await self.persistence.get_previous_story_arcs(CONTINUITY_WINDOW)

            run.publish(PipelineState.GENERATING_CHAPTER, "Writing chapter", PROGRESS_WRITING)
            response = await self.chapter_client.generate(
                metadata,
                user_id=user_id,
                genre=genre,
                previous_arcs=arcs,
                student_name=student_name,
            )

            run.publish(PipelineState.PERSISTING, "Saving chapter", PROGRESS_PERSISTING)
            created_at = utc_now()
            if arcs and created_at <= arcs[0].timestamp:
                # Clock moved backwards; keep the new node strictly latest
                created_at = arcs[0].timestamp + timedelta(microseconds=1)

            chapter = StoryChapter(
                chapter_id=response.chapter_id,
                text=response.text,
                cliffhanger=response.cliffhanger,
                originating_entry_id=entry.id,
                timestamp=created_at,
            )
            node = StoryNode(
                journal_entry_id=entry.id,
                chapter_id=response.chapter_id,
                metadata_snapshot=metadata,
                parent_id=arcs[0].chapter_id if arcs else None,
                created_at=created_at,
            )
            save = asyncio.ensure_future(self.persistence.save_generated_story(chapter, node))
            try:
                await asyncio.shield(save)
            except asyncio.CancelledError:
                # The lock stays held until the write settles
                await asyncio.wait([save])
                if not save.cancelled() and save.exception() is None:
                    run.publish(PipelineState.COMPLETE, "Chapter ready", PROGRESS_COMPLETE,
                                chapter_id=chapter.chapter_id)
                    story_logger.warning("Run cancelled after its chapter was saved",
                                         run_id=run.run_id, journal_entry_id=entry.id,
                                         chapter_id=chapter.chapter_id)
                raise

        run.publish(PipelineState.COMPLETE, "Chapter ready", PROGRESS_COMPLETE, chapter_id=chapter.chapter_id)
        return chapter, node

    async def _go_offline(self, run: _Run, entry: JournalEntry, genre, user_id, student_name) -> PipelineResult:
        request = OfflineRequest.generate_story(entry, genre=genre, user_id=user_id, student_name=student_name)
        await self.offline_queue.add_request(request)

        run.publish(
            PipelineState.OFFLINE,
            "Queued until you are back online",
            message=OFFLINE_MESSAGE,
            request_id=request.id,
        )
        story_logger.info("Entry queued for offline replay", run_id=run.run_id,
                          journal_entry_id=entry.id, request_id=request.id)
        return PipelineResult(
            run_id=run.run_id,
            journal_entry_id=entry.id,
            state=PipelineState.OFFLINE,
            request_id=request.id,
            message=OFFLINE_MESSAGE,
        )

    def _publish_failure(self, run: _Run, error: StoryEngineError):
        run.publish(
            PipelineState.FAILED,
            "Story generation failed",
            error_kind=error.kind,
            message=error.user_message,
        )

    def _publish_cancelled(self, run: _Run, message: str):
        # A cancel that lands after the commit already published COMPLETE
        if run.state != PipelineState.COMPLETE:
            self._publish_failure(run, UnknownError(message))

    def _fail(self, run: _Run, error: StoryEngineError, context: Dict[str, Any]) -> PipelineResult:
        failed_state = run.state
        self._publish_failure(run, error)
        self.error_reporter.report(error, dict(context, failed_state=failed_state.value))
        return PipelineResult(
            run_id=run.run_id,
            journal_entry_id=run.entry_id,
            state=PipelineState.FAILED,
            error=error,
            message=error.user_message,
        )

    @staticmethod
    def _unpack(request: OfflineRequest):
        payload = request.payload
        missing = [key for key in ("entry_id", "text") if not payload.get(key)]
        if missing:
            raise DecodeError(f"Offline request {request.id} is missing {', '.join(missing)}")

        entry_date = payload.get("entry_date")
        entry = JournalEntry(
            id=payload["entry_id"],
            content=payload["text"],
            date=parse_timestamp(entry_date) if entry_date else request.creation_date,
        )
        return (
            entry,
            normalize_genre(payload.get("genre") or config.DEFAULT_GENRE),
            payload.get("user_id") or config.DEFAULT_USER_ID,
            payload.get("student_name") or config.DEFAULT_STUDENT_NAME,
        )
