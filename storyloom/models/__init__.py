"""Data model for the story graph and the narrative engine wire format."""

from storyloom.models.story import (
    StoryMetadata,
    StoryChapter,
    StoryNode,
    PreviousArc,
    JournalEntry,
    utc_now,
    format_timestamp,
    parse_timestamp,
    sentiment_to_score,
)
from storyloom.models.wire import (
    MetadataRequest,
    MetadataResponse,
    ChapterGenerationRequest,
    ChapterResponse,
)
from storyloom.models.genres import GENRES, normalize_genre

__all__ = [
    "StoryMetadata",
    "StoryChapter",
    "StoryNode",
    "PreviousArc",
    "JournalEntry",
    "utc_now",
    "format_timestamp",
    "parse_timestamp",
    "sentiment_to_score",
    "MetadataRequest",
    "MetadataResponse",
    "ChapterGenerationRequest",
    "ChapterResponse",
    "GENRES",
    "normalize_genre",
]
