"""
MetadataExtractionClient: turns raw journal text into StoryMetadata.

Successful extractions are cached in memory, keyed by a hash of the text,
so re-submitting the same entry does not repeat the remote call.
"""

import hashlib
import time
from typing import Dict, Optional, Tuple

from storyloom.clients.base import NarrativeEngineClient
from storyloom.config import config
from storyloom.models import MetadataRequest, MetadataResponse, StoryMetadata

METADATA_PATH = "/api/metadata"


class MetadataExtractionClient(NarrativeEngineClient):
    """Client for the metadata extraction endpoint."""

    def __init__(self, *args, cache_ttl_seconds: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.cache_ttl = (
            config.METADATA_CACHE_TTL_SECONDS if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self._cache: Dict[str, Tuple[float, StoryMetadata]] = {}

    @staticmethod
    def _cache_key(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def _cached(self, key: str) -> Optional[StoryMetadata]:
        if self.cache_ttl <= 0:
            return None
        hit = self._cache.get(key)
        if hit is None:
            return None
        stored_at, metadata = hit
        if time.monotonic() - stored_at > self.cache_ttl:
            del self._cache[key]
            return None
        return metadata

    async def extract(self, text: str) -> StoryMetadata:
        """
        Extract sentiment, themes, entities and key phrases from entry text.

        Raises:
            ValueError: if text is empty
            NetworkError: no connectivity, timeout or non-2xx answer
            DecodeError: malformed response body
        """
        if not text or not text.strip():
            raise ValueError("Cannot extract metadata from an empty entry")

        key = self._cache_key(text)
        cached = self._cached(key)
        if cached is not None:
            return cached

        response = await self._post(
            METADATA_PATH,
            MetadataRequest(text=text).model_dump(),
            MetadataResponse,
        )
        metadata = response.to_story_metadata()

        if self.cache_ttl > 0:
            self._cache[key] = (time.monotonic(), metadata)
        return metadata

    def clear_cache(self):
        self._cache.clear()
