"""
Narrative engine clients.

- MetadataExtractionClient: entry text -> StoryMetadata
- ChapterGenerationClient: metadata + genre + continuity -> ChapterResponse
"""

from storyloom.clients.base import NarrativeEngineClient
from storyloom.clients.metadata import MetadataExtractionClient
from storyloom.clients.chapters import ChapterGenerationClient, CONTINUITY_WINDOW

__all__ = [
    "NarrativeEngineClient",
    "MetadataExtractionClient",
    "ChapterGenerationClient",
    "CONTINUITY_WINDOW",
]
