"""
Tests for StoryPersistenceManager: CRUD, linkage integrity, continuity
ordering, graph views and orphan reconciliation.
"""

from datetime import timedelta

import pytest

from storyloom.database import StoryPersistenceManager
from storyloom.errors import IntegrityError, PersistenceError
from storyloom.models import StoryChapter, StoryMetadata, StoryNode

from tests.conftest import T0, make_story


# =============================================================================
# Chapters
# =============================================================================

class TestSaveChapter:

    async def test_save_is_idempotent_last_write_wins(self, persistence):
        first = StoryChapter("ch-1", "first text", "hook", "entry-1", T0)
        second = StoryChapter("ch-1", "second text", "new hook", "entry-1", T0)

        await persistence.save_chapter(first)
        await persistence.save_chapter(first)
        await persistence.save_chapter(second)

        stored = await persistence.get_chapter("ch-1")
        assert stored == second
        assert (await persistence.counts())["chapters"] == 1

    async def test_missing_chapter_is_none(self, persistence):
        assert await persistence.get_chapter("nope") is None

    async def test_requires_connection(self, tmp_path):
        manager = StoryPersistenceManager(str(tmp_path / "unopened.db"))
        with pytest.raises(PersistenceError):
            await manager.get_chapter("ch-1")

    async def test_data_survives_reconnect(self, tmp_path):
        path = str(tmp_path / "nested" / "graph.db")
        manager = StoryPersistenceManager(path)
        await manager.connect()
        chapter, node = make_story(1)
        await manager.save_generated_story(chapter, node)
        await manager.close()

        reopened = StoryPersistenceManager(path)
        await reopened.connect()
        try:
            assert await reopened.get_chapter("ch-001") == chapter
            assert await reopened.get_node("entry-1") == node
        finally:
            await reopened.close()


# =============================================================================
# Nodes
# =============================================================================

class TestSaveStoryNode:

    async def test_node_requires_existing_chapter(self, persistence):
        _, node = make_story(1)
        with pytest.raises(IntegrityError):
            await persistence.save_story_node(node)
        assert await persistence.get_all_story_nodes() == []

    async def test_node_after_chapter_succeeds(self, persistence):
        chapter, node = make_story(1)
        await persistence.save_chapter(chapter)
        await persistence.save_story_node(node)
        assert await persistence.get_node("entry-1") == node

    async def test_dangling_parent_is_rejected(self, persistence):
        chapter, node = make_story(1, parent_id="ghost")
        await persistence.save_chapter(chapter)
        with pytest.raises(IntegrityError):
            await persistence.save_story_node(node)

    async def test_second_node_for_same_entry_is_rejected(self, persistence):
        chapter, node = make_story(1)
        await persistence.save_generated_story(chapter, node)

        other_chapter = StoryChapter("ch-other", "t", "c", "entry-1", T0)
        await persistence.save_chapter(other_chapter)
        duplicate = StoryNode("entry-1", "ch-other", StoryMetadata(), created_at=T0)
        with pytest.raises(IntegrityError):
            await persistence.save_story_node(duplicate)

    async def test_chapter_cannot_back_two_entries(self, persistence):
        chapter, node = make_story(1)
        await persistence.save_generated_story(chapter, node)

        second = StoryNode("entry-2", chapter.chapter_id, StoryMetadata(), created_at=T0)
        with pytest.raises(IntegrityError):
            await persistence.save_story_node(second)

    async def test_metadata_snapshot_round_trips(self, persistence):
        metadata = StoryMetadata.from_label(
            "positive", themes=["learning"], entities=["Ms. Ito"], key_phrases=["fractions"]
        )
        chapter = StoryChapter("ch-1", "t", "c", "entry-1", T0)
        node = StoryNode("entry-1", "ch-1", metadata, created_at=T0)
        await persistence.save_generated_story(chapter, node)

        stored = await persistence.get_node("entry-1")
        assert stored.metadata_snapshot == metadata


# =============================================================================
# Atomic save
# =============================================================================

class TestSaveGeneratedStory:

    async def test_saves_chapter_and_node_together(self, persistence):
        chapter, node = make_story(1)
        await persistence.save_generated_story(chapter, node)
        assert await persistence.get_chapter("ch-001") == chapter
        assert await persistence.get_node("entry-1") == node

    async def test_failed_node_leaves_no_chapter(self, persistence):
        chapter, node = make_story(1, parent_id="ghost")
        with pytest.raises(IntegrityError):
            await persistence.save_generated_story(chapter, node)

        assert await persistence.get_chapter("ch-001") is None
        assert await persistence.counts() == {"chapters": 0, "nodes": 0}

    async def test_mismatched_chapter_is_rejected(self, persistence):
        chapter, _ = make_story(1)
        _, node = make_story(2)
        with pytest.raises(IntegrityError):
            await persistence.save_generated_story(chapter, node)
        assert await persistence.counts() == {"chapters": 0, "nodes": 0}


# =============================================================================
# Continuity
# =============================================================================

class TestContinuity:

    async def test_arcs_are_most_recent_first_by_timestamp(self, persistence):
        # Insert out of chronological order
        for index in (2, 0, 3, 1):
            chapter, node = make_story(index)
            await persistence.save_generated_story(chapter, node)

        arcs = await persistence.get_previous_story_arcs(3)
        assert [arc.chapter_id for arc in arcs] == ["ch-003", "ch-002", "ch-001"]

    async def test_equal_timestamps_break_ties_by_chapter_id(self, persistence):
        for chapter_id in ("ch-b", "ch-c", "ch-a"):
            chapter, node = make_story(0, chapter_id=chapter_id, created_at=T0)
            node = StoryNode(f"entry-{chapter_id}", chapter_id, node.metadata_snapshot, created_at=T0)
            await persistence.save_generated_story(chapter, node)

        arcs = await persistence.get_previous_story_arcs(3)
        assert [arc.chapter_id for arc in arcs] == ["ch-c", "ch-b", "ch-a"]

    async def test_fewer_nodes_than_limit(self, persistence):
        chapter, node = make_story(1)
        await persistence.save_generated_story(chapter, node)
        assert len(await persistence.get_previous_story_arcs(3)) == 1

    async def test_zero_limit_and_empty_graph(self, persistence):
        assert await persistence.get_previous_story_arcs(3) == []
        chapter, node = make_story(1)
        await persistence.save_generated_story(chapter, node)
        assert await persistence.get_previous_story_arcs(0) == []

    async def test_before_excludes_later_nodes(self, persistence):
        for index in range(4):
            chapter, node = make_story(index)
            await persistence.save_generated_story(chapter, node)

        arcs = await persistence.get_previous_story_arcs(3, before=T0 + timedelta(minutes=1))
        assert [arc.chapter_id for arc in arcs] == ["ch-001", "ch-000"]

        latest = await persistence.get_latest_node()
        assert latest.chapter_id == "ch-003"

    async def test_arcs_carry_node_metadata(self, persistence):
        chapter, node = make_story(1, themes=("courage", "friends"))
        await persistence.save_generated_story(chapter, node)
        arc = (await persistence.get_previous_story_arcs(1))[0]
        assert arc.themes == ("courage", "friends")
        assert arc.timestamp == node.created_at


# =============================================================================
# Graph views
# =============================================================================

@pytest.fixture
async def branching_graph(persistence):
    """
    ch-000 <- ch-001 <- ch-003
           <- ch-002
    """
    stories = [
        make_story(0),
        make_story(1, parent_id="ch-000"),
        make_story(2, parent_id="ch-000"),
        make_story(3, parent_id="ch-001"),
    ]
    for chapter, node in stories:
        await persistence.save_generated_story(chapter, node)
    return persistence


class TestGraphViews:

    async def test_all_nodes_are_chronological(self, branching_graph):
        nodes = await branching_graph.get_all_story_nodes()
        assert [n.chapter_id for n in nodes] == ["ch-000", "ch-001", "ch-002", "ch-003"]
        assert await branching_graph.chronological_nodes() == nodes

    async def test_tree_levels(self, branching_graph):
        levels = await branching_graph.nodes_as_tree()
        assert [[n.chapter_id for n in level] for level in levels] == [
            ["ch-000"],
            ["ch-001", "ch-002"],
            ["ch-003"],
        ]

    async def test_ancestry_walks_to_root(self, branching_graph):
        ancestry = await branching_graph.get_ancestry("entry-3")
        assert [n.chapter_id for n in ancestry] == ["ch-003", "ch-001", "ch-000"]

    async def test_ancestry_of_unknown_entry_is_empty(self, branching_graph):
        assert await branching_graph.get_ancestry("missing") == []

    async def test_filter_by_sentiment_and_text(self, persistence):
        for index, (score, themes) in enumerate([(0.8, ("joy",)), (-0.8, ("loss",)), (0.0, ("School trip",))]):
            chapter, node = make_story(index)
            node = StoryNode(node.journal_entry_id, node.chapter_id,
                             StoryMetadata(sentiment_score=score, themes=themes), created_at=node.created_at)
            await persistence.save_generated_story(chapter, node)

        positive = await persistence.filtered_nodes(min_sentiment=0.5)
        assert [n.chapter_id for n in positive] == ["ch-000"]

        not_positive = await persistence.filtered_nodes(max_sentiment=0.0)
        assert [n.chapter_id for n in not_positive] == ["ch-001", "ch-002"]

        school = await persistence.filtered_nodes(search_text="school")
        assert [n.chapter_id for n in school] == ["ch-002"]

    async def test_export_contains_everything(self, branching_graph):
        export = await branching_graph.export_graph()
        assert len(export["chapters"]) == 4
        assert len(export["nodes"]) == 4
        assert export["nodes"][1]["parent_id"] == "ch-000"


# =============================================================================
# Reconciliation
# =============================================================================

class TestOrphanedChapters:

    async def test_find_and_remove_orphans(self, persistence):
        linked_chapter, linked_node = make_story(1)
        await persistence.save_generated_story(linked_chapter, linked_node)
        orphan = StoryChapter("ch-orphan", "t", "c", "entry-x", T0)
        await persistence.save_chapter(orphan)

        orphans = await persistence.find_orphaned_chapters()
        assert [c.chapter_id for c in orphans] == ["ch-orphan"]

        assert await persistence.remove_orphaned_chapters() == 1
        assert await persistence.get_chapter("ch-orphan") is None
        assert await persistence.get_chapter("ch-001") == linked_chapter

    async def test_recent_orphans_can_be_kept(self, persistence):
        await persistence.save_chapter(StoryChapter("ch-new", "t", "c", "entry-x"))
        assert await persistence.remove_orphaned_chapters(older_than=timedelta(hours=1)) == 0
        assert await persistence.get_chapter("ch-new") is not None
