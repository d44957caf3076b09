"""
Shared fixtures: temp-file databases, a fake narrative engine served
through httpx.MockTransport, and a fully wired pipeline.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from storyloom.clients import ChapterGenerationClient, MetadataExtractionClient
from storyloom.database import StoryPersistenceManager
from storyloom.jobs.queue import OfflineRequestQueue
from storyloom.models import StoryChapter, StoryMetadata, StoryNode
from storyloom.network import NetworkMonitor
from storyloom.pipeline import InMemoryJournalStore, PipelineEventBus, StoryPipeline

BASE_URL = "http://engine.test"
T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeNarrativeEngine:
    """
    In-process stand-in for the narrative engine.

    Set ``metadata_error`` / ``chapter_error`` to an exception instance
    (raised by the transport) or an int (returned as HTTP status).
    """

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.metadata = {
            "sentiment": "positive",
            "themes": ["learning"],
            "entities": ["math class"],
            "keyPhrases": ["fractions"],
        }
        self.metadata_error = None
        self.chapter_error = None
        self._chapter_counter = 0

    def _fail(self, error):
        if isinstance(error, int):
            return httpx.Response(error, json={"error": "boom"})
        raise error

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append({
            "path": request.url.path,
            "headers": dict(request.headers),
            "json": body,
        })

        if request.url.path == "/api/metadata":
            if self.metadata_error is not None:
                return self._fail(self.metadata_error)
            return httpx.Response(200, json=self.metadata)

        if request.url.path == "/api/generate-chapter":
            if self.chapter_error is not None:
                return self._fail(self.chapter_error)
            self._chapter_counter += 1
            return httpx.Response(200, json={
                "chapterId": f"ch-{self._chapter_counter:03d}",
                "text": f"Chapter {self._chapter_counter} text",
                "cliffhanger": "But then the lights went out...",
                "studentName": body.get("studentName", ""),
                "feedback": "Nice work!",
            })

        return httpx.Response(404)

    def calls(self, path: str) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r["path"] == path]


def connect_error(message: str = "network is unreachable") -> httpx.ConnectError:
    return httpx.ConnectError(message)


def make_metadata(*themes: str, score: float = 0.0) -> StoryMetadata:
    return StoryMetadata(sentiment_score=score, themes=themes)


def make_story(index: int, parent_id: Optional[str] = None, created_at: Optional[datetime] = None,
               chapter_id: Optional[str] = None, themes=("adventure",)):
    created_at = created_at or T0 + timedelta(minutes=index)
    chapter_id = chapter_id or f"ch-{index:03d}"
    chapter = StoryChapter(
        chapter_id=chapter_id,
        text=f"text {index}",
        cliffhanger=f"cliffhanger {index}",
        originating_entry_id=f"entry-{index}",
        timestamp=created_at,
    )
    node = StoryNode(
        journal_entry_id=f"entry-{index}",
        chapter_id=chapter_id,
        metadata_snapshot=make_metadata(*themes),
        parent_id=parent_id,
        created_at=created_at,
    )
    return chapter, node


def drain_events(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def engine():
    return FakeNarrativeEngine()


@pytest.fixture
async def http_client(engine):
    client = httpx.AsyncClient(transport=httpx.MockTransport(engine.handler))
    yield client
    await client.aclose()


@pytest.fixture
def metadata_client(http_client):
    return MetadataExtractionClient(base_url=BASE_URL, api_key="test-key", http_client=http_client)


@pytest.fixture
def chapter_client(http_client):
    return ChapterGenerationClient(base_url=BASE_URL, api_key="test-key", http_client=http_client)


@pytest.fixture
async def persistence(tmp_path):
    manager = StoryPersistenceManager(str(tmp_path / "story_graph.db"))
    await manager.connect()
    yield manager
    await manager.close()


@pytest.fixture
async def offline_queue(tmp_path):
    queue = OfflineRequestQueue(str(tmp_path / "offline_requests.db"))
    await queue.initialize()
    yield queue
    await queue.close()


@pytest.fixture
def monitor():
    return NetworkMonitor(connected=True)


class RecordingErrorReporter:
    def __init__(self):
        self.reports = []

    def report(self, error, context):
        self.reports.append((error, context))


@pytest.fixture
def error_reporter():
    return RecordingErrorReporter()


@pytest.fixture
def event_bus():
    return PipelineEventBus()


@pytest.fixture
def journal_store():
    return InMemoryJournalStore()


@pytest.fixture
def pipeline(metadata_client, chapter_client, persistence, offline_queue, monitor,
             error_reporter, event_bus, journal_store):
    return StoryPipeline(
        metadata_client=metadata_client,
        chapter_client=chapter_client,
        persistence=persistence,
        offline_queue=offline_queue,
        monitor=monitor,
        error_reporter=error_reporter,
        event_bus=event_bus,
        journal_store=journal_store,
    )
