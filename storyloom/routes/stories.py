"""
Stories API Routes

Endpoints for submitting journal entries, reading the story graph and
managing the offline request queue.
"""

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from storyloom.api.services import Services, get_services
from storyloom.errors import StoryEngineError
from storyloom.models import JournalEntry, format_timestamp, utc_now
from storyloom.pipeline import PipelineEventBus, PipelineState
from storyloom.utils.logging import api_logger


router = APIRouter(prefix="/api/stories", tags=["stories"])


# HTTP status for each error kind
ERROR_STATUS = {
    "network": 502,
    "decode": 502,
    "integrity": 409,
    "storage": 507,
    "unknown": 500,
}


def status_for_error(error: StoryEngineError) -> int:
    return ERROR_STATUS.get(error.kind, 500)


# =============================================================================
# Request / Response Models
# =============================================================================

class GenerateStoryRequest(BaseModel):
    """Submit a journal entry for story generation."""
    entry_id: Optional[str] = None  # Existing entry, or id for the new one
    text: Optional[str] = None  # Entry content; omit to use a stored entry
    date: Optional[datetime] = None
    genre: Optional[str] = None
    user_id: Optional[str] = None
    student_name: Optional[str] = None


class GenerateStoryResponse(BaseModel):
    """Outcome of a generation run."""
    run_id: str
    journal_entry_id: str
    state: str
    chapter: Optional[Dict[str, Any]] = None
    node: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    request_id: Optional[str] = None
    message: Optional[str] = None


class QueueStatusResponse(BaseModel):
    """Offline queue contents and replay status."""
    pending: int
    is_processing: bool
    current_request: Optional[str] = None
    connected: bool
    requests: List[Dict[str, Any]]


# =============================================================================
# Generation
# =============================================================================

@router.post("/generate", response_model=GenerateStoryResponse)
async def generate_story(
    body: GenerateStoryRequest,
    response: Response,
    services: Services = Depends(get_services)
):
    """
    Generate the next chapter for a journal entry.

    Returns 200 with the chapter when complete, 202 when the entry was queued
    for offline replay, or an error status when the run failed.
    """
    try:
        if body.text is not None:
            entry = JournalEntry(
                id=body.entry_id or str(uuid.uuid4()),
                content=body.text,
                date=body.date or utc_now(),
            )
            services.journal_store.add_entry(entry)
            result = await services.pipeline.submit(
                entry,
                genre=body.genre,
                user_id=body.user_id,
                student_name=body.student_name,
            )
        elif body.entry_id:
            result = await services.pipeline.generate_for_entry_id(
                body.entry_id,
                genre=body.genre,
                user_id=body.user_id,
                student_name=body.student_name,
            )
        else:
            raise HTTPException(status_code=400, detail="Provide either text or entry_id")
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if result.state == PipelineState.OFFLINE:
        response.status_code = 202
    elif result.state == PipelineState.FAILED and result.error is not None:
        response.status_code = status_for_error(result.error)

    api_logger.info(
        "Generation request finished",
        journal_entry_id=result.journal_entry_id,
        state=result.state.value,
    )
    return GenerateStoryResponse(**result.to_dict())


# =============================================================================
# Journal + Run Progress
# =============================================================================

@router.get("/entries")
async def list_entries(services: Services = Depends(get_services)):
    """Journal entries held for generation, oldest first."""
    entries = await services.journal_store.list_entries()
    return {
        "entries": [
            {"id": entry.id, "content": entry.content, "date": format_timestamp(entry.date)}
            for entry in entries
        ],
        "total": len(entries),
    }


@router.get("/events/latest")
async def latest_snapshot(services: Services = Depends(get_services)):
    """Most recent pipeline snapshot, or null before the first run."""
    snapshot = services.events.latest
    if snapshot is None:
        return {"snapshot": None, "terminal": False}
    return {"snapshot": snapshot.to_dict(), "terminal": snapshot.state.is_terminal}


async def stream_snapshots(
    events: PipelineEventBus,
    queue: asyncio.Queue,
    journal_entry_id: Optional[str] = None,
) -> AsyncIterator[str]:
    """
    SSE frames for snapshots from ``queue``.

    With a journal entry id the stream ends after that entry's run reaches
    a terminal state. The queue is unsubscribed when the stream ends or the
    client goes away.
    """
    try:
        while True:
            snapshot = await queue.get()
            if journal_entry_id and snapshot.journal_entry_id != journal_entry_id:
                continue
            yield f"data: {json.dumps(snapshot.to_dict())}\n\n"
            if journal_entry_id and snapshot.state.is_terminal:
                return
    finally:
        events.unsubscribe(queue)


@router.get("/events")
async def stream_events(
    journal_entry_id: Optional[str] = Query(None, description="Follow one entry until its run finishes"),
    services: Services = Depends(get_services)
):
    """Server-sent pipeline snapshots as runs progress."""
    queue = services.events.subscribe(maxsize=100)
    return StreamingResponse(
        stream_snapshots(services.events, queue, journal_entry_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


# =============================================================================
# Story Graph
# =============================================================================

@router.get("/nodes")
async def list_nodes(
    min_sentiment: Optional[float] = Query(None, ge=-1.0, le=1.0),
    max_sentiment: Optional[float] = Query(None, ge=-1.0, le=1.0),
    search: str = Query("", description="Match against themes, entities and key phrases"),
    services: Services = Depends(get_services)
):
    """Story nodes in chronological order, optionally filtered."""
    nodes = await services.persistence.filtered_nodes(
        min_sentiment=min_sentiment,
        max_sentiment=max_sentiment,
        search_text=search,
    )
    return {"nodes": [node.to_dict() for node in nodes], "total": len(nodes)}


@router.get("/nodes/tree")
async def get_tree(services: Services = Depends(get_services)):
    """Nodes grouped by depth, roots first."""
    levels = await services.persistence.nodes_as_tree()
    return {"levels": [[node.to_dict() for node in level] for level in levels]}


@router.get("/nodes/{journal_entry_id}/ancestry")
async def get_ancestry(journal_entry_id: str, services: Services = Depends(get_services)):
    ancestry = await services.persistence.get_ancestry(journal_entry_id)
    if not ancestry:
        raise HTTPException(status_code=404, detail="Story node not found")
    return {"ancestry": [node.to_dict() for node in ancestry]}


@router.get("/chapters/{chapter_id}")
async def get_chapter(chapter_id: str, services: Services = Depends(get_services)):
    chapter = await services.persistence.get_chapter(chapter_id)
    if chapter is None:
        raise HTTPException(status_code=404, detail="Chapter not found")
    return chapter.to_dict()


@router.get("/arcs")
async def get_arcs(
    limit: int = Query(3, ge=1, le=50),
    services: Services = Depends(get_services)
):
    """Most recent arcs, newest first."""
    arcs = await services.persistence.get_previous_story_arcs(limit)
    return {"arcs": [arc.to_dict() for arc in arcs]}


@router.get("/export")
async def export_graph(services: Services = Depends(get_services)):
    """Full dump of chapters and nodes."""
    return await services.persistence.export_graph()


# =============================================================================
# Offline Queue
# =============================================================================

@router.get("/queue", response_model=QueueStatusResponse)
async def get_queue_status(services: Services = Depends(get_services)):
    requests = await services.offline_queue.list_requests()
    return QueueStatusResponse(
        pending=len(requests),
        is_processing=services.worker.is_processing,
        current_request=services.worker.current_request,
        connected=services.monitor.is_connected,
        requests=[request.to_dict() for request in requests],
    )


@router.post("/queue/drain")
async def drain_queue(services: Services = Depends(get_services)):
    """Replay queued requests now (no-op while disconnected)."""
    report = await services.worker.process_queue()
    return report.to_dict()


@router.post("/queue/{request_id}/retry")
async def retry_request(request_id: str, services: Services = Depends(get_services)):
    """Reset a request's attempt count and replay the queue."""
    if not await services.offline_queue.reset_attempts(request_id):
        raise HTTPException(status_code=404, detail="Offline request not found")
    report = await services.worker.process_queue()
    return {"request_id": request_id, "drain": report.to_dict()}


@router.delete("/queue/{request_id}")
async def remove_request(request_id: str, services: Services = Depends(get_services)):
    if not await services.offline_queue.remove_request(request_id):
        raise HTTPException(status_code=404, detail="Offline request not found")
    return {"request_id": request_id, "removed": True}
