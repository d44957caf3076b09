"""
Tests for the narrative engine clients against a MockTransport engine.
"""

import httpx
import pytest

from storyloom.clients import CONTINUITY_WINDOW, ChapterGenerationClient, MetadataExtractionClient
from storyloom.errors import DecodeError, NetworkError
from storyloom.models import PreviousArc, StoryMetadata

from tests.conftest import BASE_URL, T0, connect_error


def arcs(count):
    return [PreviousArc(f"ch-{i}", ("theme",), 0.0, T0) for i in range(count)]


# =============================================================================
# Metadata extraction
# =============================================================================

class TestMetadataExtraction:

    async def test_extract_maps_response(self, metadata_client, engine):
        metadata = await metadata_client.extract("I learned fractions today")

        assert metadata.sentiment_score == 0.8
        assert metadata.themes == ("learning",)
        assert metadata.key_phrases == ("fractions",)

        call = engine.calls("/api/metadata")[0]
        assert call["json"] == {"text": "I learned fractions today"}
        assert call["headers"]["x-api-key"] == "test-key"

    async def test_empty_text_is_rejected_before_io(self, metadata_client, engine):
        with pytest.raises(ValueError):
            await metadata_client.extract("   ")
        assert engine.requests == []

    async def test_repeated_text_is_served_from_cache(self, metadata_client, engine):
        await metadata_client.extract("same entry")
        await metadata_client.extract("same entry")
        assert len(engine.calls("/api/metadata")) == 1

        metadata_client.clear_cache()
        await metadata_client.extract("same entry")
        assert len(engine.calls("/api/metadata")) == 2

    async def test_cache_can_be_disabled(self, http_client, engine):
        client = MetadataExtractionClient(base_url=BASE_URL, http_client=http_client, cache_ttl_seconds=0)
        await client.extract("entry")
        await client.extract("entry")
        assert len(engine.calls("/api/metadata")) == 2

    async def test_connect_failure_is_not_connected(self, metadata_client, engine):
        engine.metadata_error = connect_error()
        with pytest.raises(NetworkError) as exc_info:
            await metadata_client.extract("entry")
        assert exc_info.value.not_connected is True

    async def test_timeout_is_network_error(self, metadata_client, engine):
        engine.metadata_error = httpx.ReadTimeout("slow")
        with pytest.raises(NetworkError) as exc_info:
            await metadata_client.extract("entry")
        assert exc_info.value.timed_out is True
        assert exc_info.value.not_connected is False

    async def test_error_status_is_network_error(self, metadata_client, engine):
        engine.metadata_error = 503
        with pytest.raises(NetworkError) as exc_info:
            await metadata_client.extract("entry")
        assert exc_info.value.status_code == 503

    async def test_malformed_body_is_decode_error(self, metadata_client, engine):
        engine.metadata = {"themes": ["no sentiment"]}
        with pytest.raises(DecodeError):
            await metadata_client.extract("entry")

    async def test_non_json_body_is_decode_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        async with httpx.AsyncClient(transport=transport) as raw:
            client = MetadataExtractionClient(base_url=BASE_URL, http_client=raw)
            with pytest.raises(DecodeError):
                await client.extract("entry")

    async def test_failures_are_not_cached(self, metadata_client, engine):
        engine.metadata_error = 500
        with pytest.raises(NetworkError):
            await metadata_client.extract("entry")

        engine.metadata_error = None
        metadata = await metadata_client.extract("entry")
        assert metadata.themes == ("learning",)


# =============================================================================
# Chapter generation
# =============================================================================

class TestChapterGeneration:

    async def test_generate_sends_camel_case_request(self, chapter_client, engine):
        metadata = StoryMetadata.from_label("positive", themes=["learning"])
        response = await chapter_client.generate(
            metadata, user_id="u-1", genre="mystery", previous_arcs=arcs(1), student_name="Ada"
        )

        assert response.chapter_id == "ch-001"
        body = engine.calls("/api/generate-chapter")[0]["json"]
        assert body["userId"] == "u-1"
        assert body["genre"] == "mystery"
        assert body["studentName"] == "Ada"
        assert body["metadata"]["sentiment"] == "positive"
        assert body["metadata"]["themes"] == ["learning"]
        assert len(body["previousArcs"]) == 1
        assert "ch-0" in body["previousArcs"][0]

    async def test_previous_arcs_omitted_when_empty(self, chapter_client, engine):
        await chapter_client.generate(StoryMetadata(), user_id="u", genre="fantasy")
        body = engine.calls("/api/generate-chapter")[0]["json"]
        assert "previousArcs" not in body

    async def test_previous_arcs_truncated_to_window(self, chapter_client, engine):
        await chapter_client.generate(StoryMetadata(), user_id="u", genre="fantasy", previous_arcs=arcs(7))
        body = engine.calls("/api/generate-chapter")[0]["json"]
        assert len(body["previousArcs"]) == CONTINUITY_WINDOW
        # Most recent first is preserved
        assert body["previousArcs"][0].startswith("chapter ch-0 ")

    async def test_default_student_name(self, chapter_client, engine):
        request = chapter_client.build_request(StoryMetadata(), "u", "fantasy")
        assert request.student_name == "You"

    async def test_generation_gets_longer_timeout(self):
        seen = {}

        def handler(request):
            seen["timeout"] = request.extensions["timeout"]
            return httpx.Response(200, json={"chapterId": "c", "text": "t", "cliffhanger": "..."})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as raw:
            client = ChapterGenerationClient(base_url=BASE_URL, timeout=10, http_client=raw)
            await client.generate(StoryMetadata(), user_id="u", genre="fantasy")
        assert seen["timeout"]["read"] == 20

    async def test_missing_chapter_id_is_decode_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"text": "t"}))
        async with httpx.AsyncClient(transport=transport) as raw:
            client = ChapterGenerationClient(base_url=BASE_URL, http_client=raw)
            with pytest.raises(DecodeError):
                await client.generate(StoryMetadata(), user_id="u", genre="fantasy")

    async def test_missing_cliffhanger_is_decode_error(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"chapterId": "c", "text": "t"})
        )
        async with httpx.AsyncClient(transport=transport) as raw:
            client = ChapterGenerationClient(base_url=BASE_URL, http_client=raw)
            with pytest.raises(DecodeError):
                await client.generate(StoryMetadata(), user_id="u", genre="fantasy")

    async def test_no_api_key_header_when_unset(self, http_client, engine):
        client = ChapterGenerationClient(base_url=BASE_URL, api_key="", http_client=http_client)
        await client.generate(StoryMetadata(), user_id="u", genre="fantasy")
        assert "x-api-key" not in engine.calls("/api/generate-chapter")[0]["headers"]
