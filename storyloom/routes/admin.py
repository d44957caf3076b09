"""
Admin API Routes

Read access to the in-memory log buffer.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from storyloom.utils.logging import LogLevel, get_log_buffer

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ===== Logs =====

@router.get("/logs")
async def get_logs(
    limit: int = Query(100, ge=1, le=500),
    level: Optional[str] = Query(None, description="Filter by level (debug, info, warning, error, critical)"),
    source: Optional[str] = Query(None, description="Filter by source"),
    journal_entry_id: Optional[str] = Query(None, description="Only entries logged for this journal entry"),
    request_id: Optional[str] = Query(None, description="Only entries logged for this offline request"),
    run_id: Optional[str] = Query(None, description="Only entries logged by this pipeline run"),
):
    """Get recent log entries from the in-memory buffer."""
    log_buffer = get_log_buffer()

    level_filter = None
    if level:
        try:
            level_filter = LogLevel(level.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid log level: {level}")

    logs = log_buffer.get_recent(
        limit=limit,
        level=level_filter,
        source=source,
        journal_entry_id=journal_entry_id,
        request_id=request_id,
        run_id=run_id,
    )
    stats = log_buffer.get_stats()

    return {
        "logs": logs,
        "stats": stats
    }


@router.get("/logs/errors")
async def get_error_logs(limit: int = Query(50, ge=1, le=200)):
    """Get recent error and critical log entries."""
    return {"errors": get_log_buffer().get_errors(limit=limit)}


@router.get("/logs/stats")
async def get_log_stats():
    return get_log_buffer().get_stats()
