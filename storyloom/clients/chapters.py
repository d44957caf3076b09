"""
ChapterGenerationClient: asks the narrative engine for the next chapter.

The continuity window is fixed at CONTINUITY_WINDOW arcs. Sending more
would grow the remote prompt without bound, so the cap is a constant
rather than a setting.
"""

from typing import Optional, Sequence

from storyloom.clients.base import NarrativeEngineClient
from storyloom.config import config
from storyloom.models import (
    ChapterGenerationRequest,
    ChapterResponse,
    MetadataResponse,
    PreviousArc,
    StoryMetadata,
)

GENERATE_CHAPTER_PATH = "/api/generate-chapter"

# Hard cap on previous arcs sent as context (most recent first)
CONTINUITY_WINDOW = 3


class ChapterGenerationClient(NarrativeEngineClient):
    """Client for the chapter generation endpoint."""

    def build_request(
        self,
        metadata: StoryMetadata,
        user_id: str,
        genre: str,
        previous_arcs: Sequence[PreviousArc] = (),
        student_name: Optional[str] = None,
    ) -> ChapterGenerationRequest:
        arcs = list(previous_arcs)[:CONTINUITY_WINDOW]
        return ChapterGenerationRequest(
            metadata=MetadataResponse.from_story_metadata(metadata),
            user_id=user_id,
            genre=genre,
            student_name=student_name or config.DEFAULT_STUDENT_NAME,
            previous_arcs=[arc.to_context_string() for arc in arcs] or None,
        )

    async def generate(
        self,
        metadata: StoryMetadata,
        user_id: str,
        genre: str,
        previous_arcs: Sequence[PreviousArc] = (),
        student_name: Optional[str] = None,
    ) -> ChapterResponse:
        """
        Generate a chapter for the given metadata and continuity context.

        Args:
            metadata: Metadata extracted from the journal entry
            user_id: Caller identifier
            genre: Genre key
            previous_arcs: Most-recent-first arcs; truncated to CONTINUITY_WINDOW
            student_name: Name the chapter addresses

        Raises:
            NetworkError: no connectivity, timeout or non-2xx answer
            DecodeError: malformed response body
        """
        request = self.build_request(metadata, user_id, genre, previous_arcs, student_name)
        return await self._post(
            GENERATE_CHAPTER_PATH,
            request.model_dump(by_alias=True, exclude_none=True),
            ChapterResponse,
            # Generation is slower than extraction
            timeout=self.timeout * 2,
        )
