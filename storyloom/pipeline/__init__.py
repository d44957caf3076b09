"""
Story generation pipeline.

- StoryPipeline: orchestrates extraction, generation and persistence
- PipelineEventBus: pushes PipelineSnapshot transitions to observers
- JournalStore: read-only entry lookup boundary
"""

from storyloom.pipeline.events import PipelineEventBus, PipelineSnapshot, PipelineState
from storyloom.pipeline.journal import InMemoryJournalStore, JournalStore
from storyloom.pipeline.orchestrator import (
    ErrorReporter,
    LoggingErrorReporter,
    PipelineResult,
    StoryPipeline,
)

__all__ = [
    "PipelineEventBus",
    "PipelineSnapshot",
    "PipelineState",
    "InMemoryJournalStore",
    "JournalStore",
    "ErrorReporter",
    "LoggingErrorReporter",
    "PipelineResult",
    "StoryPipeline",
]
