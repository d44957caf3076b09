"""
Story graph data model: metadata snapshots, chapters, nodes and arcs.

All records are immutable. Timestamps are timezone-aware UTC and are
serialized with fixed microsecond precision so that string order equals
chronological order in storage.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple


# Score assigned to each sentiment label the extraction endpoint may return
SENTIMENT_SCORES = {
    "very positive": 1.0,
    "positive": 0.8,
    "hopeful": 0.6,
    "mixed": 0.0,
    "neutral": 0.0,
    "tense": -0.4,
    "negative": -0.8,
    "very negative": -1.0,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as sortable UTC ISO-8601 text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sentiment_to_score(label: Optional[str]) -> float:
    """
    Map a sentiment label (or numeric string) to a score in -1.0..1.0.

    Unknown labels map to 0.0.
    """
    if label is None:
        return 0.0
    normalized = label.strip().lower()
    if normalized in SENTIMENT_SCORES:
        return SENTIMENT_SCORES[normalized]
    try:
        score = float(normalized)
    except ValueError:
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(-1.0, min(1.0, score))


def _unique(values: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """De-duplicate while keeping first-seen order."""
    seen = []
    for value in values or ():
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)


@dataclass(frozen=True)
class StoryMetadata:
    """Structured metadata extracted from a journal entry."""
    sentiment_score: float = 0.0
    themes: Tuple[str, ...] = ()
    entities: Tuple[str, ...] = ()
    key_phrases: Tuple[str, ...] = ()
    sentiment_label: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "sentiment_score", max(-1.0, min(1.0, float(self.sentiment_score))))
        object.__setattr__(self, "themes", _unique(self.themes))
        object.__setattr__(self, "entities", _unique(self.entities))
        object.__setattr__(self, "key_phrases", _unique(self.key_phrases))

    @classmethod
    def from_label(
        cls,
        sentiment: Optional[str],
        themes: Iterable[str] = (),
        entities: Iterable[str] = (),
        key_phrases: Iterable[str] = (),
    ) -> "StoryMetadata":
        return cls(
            sentiment_score=sentiment_to_score(sentiment),
            themes=tuple(themes),
            entities=tuple(entities),
            key_phrases=tuple(key_phrases),
            sentiment_label=sentiment,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sentiment_score": self.sentiment_score,
            "sentiment_label": self.sentiment_label,
            "themes": list(self.themes),
            "entities": list(self.entities),
            "key_phrases": list(self.key_phrases),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryMetadata":
        return cls(
            sentiment_score=data.get("sentiment_score", 0.0),
            themes=tuple(data.get("themes") or ()),
            entities=tuple(data.get("entities") or ()),
            key_phrases=tuple(data.get("key_phrases") or ()),
            sentiment_label=data.get("sentiment_label"),
        )


@dataclass(frozen=True)
class StoryChapter:
    """A generated chapter. Owned by the story graph once saved."""
    chapter_id: str
    text: str
    cliffhanger: str
    originating_entry_id: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapter_id": self.chapter_id,
            "text": self.text,
            "cliffhanger": self.cliffhanger,
            "originating_entry_id": self.originating_entry_id,
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass(frozen=True)
class StoryNode:
    """One journal entry linked to its chapter, with an optional parent chapter."""
    journal_entry_id: str
    chapter_id: str
    metadata_snapshot: StoryMetadata
    parent_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "journal_entry_id": self.journal_entry_id,
            "chapter_id": self.chapter_id,
            "parent_id": self.parent_id,
            "metadata_snapshot": self.metadata_snapshot.to_dict(),
            "created_at": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class PreviousArc:
    """Continuity projection of an earlier node, used only as generation context."""
    chapter_id: str
    themes: Tuple[str, ...]
    sentiment: float
    timestamp: datetime

    @classmethod
    def from_node(cls, node: StoryNode) -> "PreviousArc":
        return cls(
            chapter_id=node.chapter_id,
            themes=node.metadata_snapshot.themes,
            sentiment=node.metadata_snapshot.sentiment_score,
            timestamp=node.created_at,
        )

    def to_context_string(self) -> str:
        themes = ", ".join(self.themes) if self.themes else "none"
        return (
            f"chapter {self.chapter_id} ({format_timestamp(self.timestamp)}): "
            f"themes: {themes}; sentiment: {self.sentiment:+.2f}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapter_id": self.chapter_id,
            "themes": list(self.themes),
            "sentiment": self.sentiment,
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass(frozen=True)
class JournalEntry:
    """The slice of a journal entry this core reads."""
    id: str
    content: str
    date: datetime = field(default_factory=utc_now)
