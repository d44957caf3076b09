"""
Composition root: builds one instance of each collaborator per process.

Routes reach the services through ``get_services`` (a FastAPI dependency
reading ``app.state.services``), so tests can hand the app fakes.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from storyloom.clients import ChapterGenerationClient, MetadataExtractionClient
from storyloom.config import config
from storyloom.database import StoryPersistenceManager
from storyloom.jobs.queue import OfflineRequestQueue
from storyloom.jobs.worker import OfflineReplayWorker
from storyloom.network import NetworkMonitor, ProbingNetworkMonitor
from storyloom.pipeline import InMemoryJournalStore, PipelineEventBus, StoryPipeline
from storyloom.utils.logging import api_logger


@dataclass
class Services:
    persistence: StoryPersistenceManager
    offline_queue: OfflineRequestQueue
    pipeline: StoryPipeline
    monitor: NetworkMonitor
    worker: OfflineReplayWorker
    journal_store: InMemoryJournalStore
    events: PipelineEventBus
    metadata_client: Optional[MetadataExtractionClient] = None
    chapter_client: Optional[ChapterGenerationClient] = None


async def build_services() -> Services:
    """Open storage and wire the pipeline together from config"""
    persistence = StoryPersistenceManager(config.story_db_path)
    await persistence.connect()

    offline_queue = OfflineRequestQueue(config.offline_queue_db_path)
    await offline_queue.initialize()

    metadata_client = MetadataExtractionClient()
    chapter_client = ChapterGenerationClient()
    monitor = ProbingNetworkMonitor()
    journal_store = InMemoryJournalStore()
    events = PipelineEventBus()

    pipeline = StoryPipeline(
        metadata_client=metadata_client,
        chapter_client=chapter_client,
        persistence=persistence,
        offline_queue=offline_queue,
        monitor=monitor,
        event_bus=events,
        journal_store=journal_store,
    )
    worker = OfflineReplayWorker(offline_queue, pipeline, monitor)

    return Services(
        persistence=persistence,
        offline_queue=offline_queue,
        pipeline=pipeline,
        monitor=monitor,
        worker=worker,
        journal_store=journal_store,
        events=events,
        metadata_client=metadata_client,
        chapter_client=chapter_client,
    )


async def start_services(services: Services):
    """Reconcile leftovers from a previous run, then start probing and replay"""
    removed = await services.persistence.remove_orphaned_chapters()
    if removed:
        api_logger.warning("Removed orphaned chapters at start-up", count=removed)

    if isinstance(services.monitor, ProbingNetworkMonitor):
        await services.monitor.check()
        services.monitor.start()
    services.worker.start()


async def stop_services(services: Services):
    await services.worker.shutdown()
    if isinstance(services.monitor, ProbingNetworkMonitor):
        await services.monitor.shutdown()
    for client in (services.metadata_client, services.chapter_client):
        if client is not None:
            await client.aclose()
    await services.offline_queue.close()
    await services.persistence.close()


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services are not ready")
    return services
