"""
Wire models for the narrative engine endpoints.

Field names follow the engine's camelCase JSON. Snake_case keys are
accepted on decode as well.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from storyloom.models.story import StoryMetadata


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MetadataRequest(WireModel):
    text: str


class MetadataResponse(WireModel):
    sentiment: str
    themes: List[str] = Field(default_factory=list)
    entities: List[str] = Field(default_factory=list)
    key_phrases: List[str] = Field(default_factory=list, alias="keyPhrases")

    def to_story_metadata(self) -> StoryMetadata:
        return StoryMetadata.from_label(
            self.sentiment,
            themes=self.themes,
            entities=self.entities,
            key_phrases=self.key_phrases,
        )

    @classmethod
    def from_story_metadata(cls, metadata: StoryMetadata) -> "MetadataResponse":
        return cls(
            sentiment=metadata.sentiment_label or f"{metadata.sentiment_score:.2f}",
            themes=list(metadata.themes),
            entities=list(metadata.entities),
            key_phrases=list(metadata.key_phrases),
        )


class ChapterGenerationRequest(WireModel):
    metadata: MetadataResponse
    user_id: str = Field(alias="userId")
    genre: str
    student_name: str = Field(alias="studentName")
    previous_arcs: Optional[List[str]] = Field(default=None, alias="previousArcs")


class ChapterResponse(WireModel):
    chapter_id: str = Field(alias="chapterId", min_length=1)
    text: str = Field(min_length=1)
    cliffhanger: str
    student_name: str = Field(default="", alias="studentName")
    feedback: str = ""
