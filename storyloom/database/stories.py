"""
Story graph persistence.

Owns the durable arena of StoryChapter and StoryNode records (aiosqlite),
enforces parent linkage, and answers continuity queries.

Ordering rule used everywhere: ``created_at`` then ``chapter_id``
(lexicographic). Insertion order is never meaningful.
"""

import asyncio
import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from storyloom.errors import IntegrityError, PersistenceError
from storyloom.models import (
    PreviousArc,
    StoryChapter,
    StoryMetadata,
    StoryNode,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from storyloom.utils.logging import get_logger

logger = get_logger("story_graph")


class StoryPersistenceManager:
    """
    Durable CRUD over chapters and nodes plus derived graph queries.

    Usage:
        manager = StoryPersistenceManager("story_graph.db")
        await manager.connect()

        async with manager.continuity_lock():
            arcs = await manager.get_previous_story_arcs(3)
            ...
            await manager.save_generated_story(chapter, node)
    """

    def __init__(self, db_path: str = "story_graph.db"):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._continuity_lock = asyncio.Lock()

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self):
        """Connect to database and create tables if needed"""
        db_file = Path(self.db_path)
        db_dir = db_file.parent
        if db_dir and str(db_dir) != "." and not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA foreign_keys = ON")
            await self._create_tables()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open story database {self.db_path}: {e}") from e

    async def _create_tables(self):
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS story_chapters (
                chapter_id TEXT PRIMARY KEY,
                text TEXT NOT NULL,
                cliffhanger TEXT NOT NULL,
                originating_entry_id TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS story_nodes (
                journal_entry_id TEXT PRIMARY KEY,
                chapter_id TEXT NOT NULL UNIQUE REFERENCES story_chapters(chapter_id),
                parent_id TEXT REFERENCES story_chapters(chapter_id),
                metadata_snapshot TEXT NOT NULL,  -- JSON
                created_at TEXT NOT NULL
            )
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_nodes_created
            ON story_nodes(created_at, chapter_id)
        """)

        await self._conn.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise PersistenceError("Story database is not connected")
        return self._conn

    def continuity_lock(self) -> asyncio.Lock:
        """
        Single writer lock for the "read latest arcs, then insert node"
        sequence. Hold it with ``async with``.
        """
        return self._continuity_lock

    async def close(self):
        """Close database connection"""
        if self._conn:
            await self._conn.close()
            self._conn = None

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _row_to_chapter(row) -> StoryChapter:
        return StoryChapter(
            chapter_id=row["chapter_id"],
            text=row["text"],
            cliffhanger=row["cliffhanger"],
            originating_entry_id=row["originating_entry_id"],
            timestamp=parse_timestamp(row["timestamp"]),
        )

    @staticmethod
    def _row_to_node(row) -> StoryNode:
        return StoryNode(
            journal_entry_id=row["journal_entry_id"],
            chapter_id=row["chapter_id"],
            parent_id=row["parent_id"],
            metadata_snapshot=StoryMetadata.from_dict(json.loads(row["metadata_snapshot"])),
            created_at=parse_timestamp(row["created_at"]),
        )

    async def _fetchall(self, query: str, params: tuple = ()) -> List[Any]:
        try:
            cursor = await self.conn.execute(query, params)
            return await cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Story database read failed: {e}") from e

    async def _fetchone(self, query: str, params: tuple = ()):
        try:
            cursor = await self.conn.execute(query, params)
            return await cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Story database read failed: {e}") from e

    # =========================================================================
    # Writes
    # =========================================================================

    async def _upsert_chapter(self, chapter: StoryChapter):
        await self.conn.execute("""
            INSERT INTO story_chapters
            (chapter_id, text, cliffhanger, originating_entry_id, timestamp)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(chapter_id) DO UPDATE SET
                text = excluded.text,
                cliffhanger = excluded.cliffhanger,
                originating_entry_id = excluded.originating_entry_id,
                timestamp = excluded.timestamp
        """, (
            chapter.chapter_id,
            chapter.text,
            chapter.cliffhanger,
            chapter.originating_entry_id,
            format_timestamp(chapter.timestamp),
        ))

    async def _insert_node(self, node: StoryNode):
        """Validate linkage and insert. Caller owns the transaction."""
        if await self._fetchone(
            "SELECT 1 FROM story_chapters WHERE chapter_id = ?", (node.chapter_id,)
        ) is None:
            raise IntegrityError(
                f"Node for entry {node.journal_entry_id} references missing chapter {node.chapter_id}"
            )

        if node.parent_id is not None and await self._fetchone(
            "SELECT 1 FROM story_chapters WHERE chapter_id = ?", (node.parent_id,)
        ) is None:
            raise IntegrityError(
                f"Node for entry {node.journal_entry_id} references missing parent chapter {node.parent_id}"
            )

        if await self._fetchone(
            "SELECT 1 FROM story_nodes WHERE journal_entry_id = ?", (node.journal_entry_id,)
        ) is not None:
            raise IntegrityError(f"Entry {node.journal_entry_id} already has a story node")

        linked = await self._fetchone(
            "SELECT journal_entry_id FROM story_nodes WHERE chapter_id = ?", (node.chapter_id,)
        )
        if linked is not None:
            raise IntegrityError(
                f"Chapter {node.chapter_id} is already linked to entry {linked['journal_entry_id']}"
            )

        await self.conn.execute("""
            INSERT INTO story_nodes
            (journal_entry_id, chapter_id, parent_id, metadata_snapshot, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            node.journal_entry_id,
            node.chapter_id,
            node.parent_id,
            json.dumps(node.metadata_snapshot.to_dict()),
            format_timestamp(node.created_at),
        ))

    async def _rollback(self):
        if self._conn is None:
            return
        try:
            await self._conn.rollback()
        except sqlite3.Error as e:
            logger.error("Rollback failed", error=str(e))

    async def save_chapter(self, chapter: StoryChapter):
        """
        Save a chapter. Idempotent by chapter_id: re-saving overwrites
        (last write wins), since offline replays may resubmit the same chapter.
        """
        async with self._write_lock:
            try:
                await self._upsert_chapter(chapter)
                await self.conn.commit()
            except sqlite3.Error as e:
                await self._rollback()
                raise PersistenceError(f"Failed to save chapter {chapter.chapter_id}: {e}") from e

    async def save_story_node(self, node: StoryNode):
        """
        Save a node whose chapter was saved earlier.

        Raises:
            IntegrityError: chapter or parent missing, or entry already linked
            PersistenceError: storage failure
        """
        async with self._write_lock:
            try:
                await self._insert_node(node)
                await self.conn.commit()
            except (IntegrityError, PersistenceError):
                await self._rollback()
                raise
            except sqlite3.IntegrityError as e:
                await self._rollback()
                raise IntegrityError(f"Node for entry {node.journal_entry_id} rejected: {e}") from e
            except sqlite3.Error as e:
                await self._rollback()
                raise PersistenceError(f"Failed to save node for entry {node.journal_entry_id}: {e}") from e

    async def save_generated_story(self, chapter: StoryChapter, node: StoryNode):
        """
        Save a chapter and its node in a single transaction.

        Either both rows are committed or neither is, so a failed node insert
        never leaves an orphaned chapter behind.
        """
        if node.chapter_id != chapter.chapter_id:
            raise IntegrityError(
                f"Node references chapter {node.chapter_id} but chapter {chapter.chapter_id} was supplied"
            )

        async with self._write_lock:
            try:
                await self._upsert_chapter(chapter)
                await self._insert_node(node)
                await self.conn.commit()
            except (IntegrityError, PersistenceError):
                await self._rollback()
                raise
            except sqlite3.IntegrityError as e:
                await self._rollback()
                raise IntegrityError(f"Story for entry {node.journal_entry_id} rejected: {e}") from e
            except sqlite3.Error as e:
                await self._rollback()
                raise PersistenceError(f"Failed to save story for entry {node.journal_entry_id}: {e}") from e

        logger.info(
            "Saved story node",
            journal_entry_id=node.journal_entry_id,
            chapter_id=chapter.chapter_id,
            parent_id=node.parent_id,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_chapter(self, chapter_id: str) -> Optional[StoryChapter]:
        row = await self._fetchone(
            "SELECT * FROM story_chapters WHERE chapter_id = ?", (chapter_id,)
        )
        return self._row_to_chapter(row) if row else None

    async def get_node(self, journal_entry_id: str) -> Optional[StoryNode]:
        row = await self._fetchone(
            "SELECT * FROM story_nodes WHERE journal_entry_id = ?", (journal_entry_id,)
        )
        return self._row_to_node(row) if row else None

    async def get_all_story_nodes(self) -> List[StoryNode]:
        """All nodes in chronological order (oldest first)."""
        rows = await self._fetchall(
            "SELECT * FROM story_nodes ORDER BY created_at ASC, chapter_id ASC"
        )
        return [self._row_to_node(row) for row in rows]

    async def chronological_nodes(self) -> List[StoryNode]:
        return await self.get_all_story_nodes()

    async def _recent_nodes(self, limit: int, before: Optional[datetime] = None) -> List[StoryNode]:
        if limit <= 0:
            return []
        if before is None:
            rows = await self._fetchall("""
                SELECT * FROM story_nodes
                ORDER BY created_at DESC, chapter_id DESC
                LIMIT ?
            """, (limit,))
        else:
            rows = await self._fetchall("""
                SELECT * FROM story_nodes
                WHERE created_at <= ?
                ORDER BY created_at DESC, chapter_id DESC
                LIMIT ?
            """, (format_timestamp(before), limit))
        return [self._row_to_node(row) for row in rows]

    async def get_previous_story_arcs(
        self,
        limit: int = 3,
        before: Optional[datetime] = None
    ) -> List[PreviousArc]:
        """
        The ``limit`` most recent nodes projected to arcs, most recent first.

        Args:
            limit: Maximum number of arcs
            before: Only consider nodes created at or before this instant
        """
        return [PreviousArc.from_node(node) for node in await self._recent_nodes(limit, before)]

    async def get_latest_node(self, before: Optional[datetime] = None) -> Optional[StoryNode]:
        nodes = await self._recent_nodes(1, before)
        return nodes[0] if nodes else None

    async def counts(self) -> Dict[str, int]:
        chapters = await self._fetchone("SELECT COUNT(*) AS n FROM story_chapters")
        nodes = await self._fetchone("SELECT COUNT(*) AS n FROM story_nodes")
        return {"chapters": chapters["n"], "nodes": nodes["n"]}

    # =========================================================================
    # Graph views
    # =========================================================================

    async def nodes_as_tree(self) -> List[List[StoryNode]]:
        """
        Nodes grouped by depth: roots first, then their children, and so on.

        A node whose parent chapter has no node is treated as a root.
        """
        nodes = await self.get_all_story_nodes()
        chapter_ids = {node.chapter_id for node in nodes}

        levels: List[List[StoryNode]] = []
        current = [n for n in nodes if n.parent_id is None or n.parent_id not in chapter_ids]
        placed = set()
        while current:
            levels.append(current)
            placed.update(n.journal_entry_id for n in current)
            parent_ids = {n.chapter_id for n in current}
            current = [
                n for n in nodes
                if n.parent_id in parent_ids and n.journal_entry_id not in placed
            ]
        return levels

    async def get_ancestry(self, journal_entry_id: str) -> List[StoryNode]:
        """The node for an entry followed by its parents up to the root."""
        nodes = await self.get_all_story_nodes()
        by_entry = {n.journal_entry_id: n for n in nodes}
        by_chapter = {n.chapter_id: n for n in nodes}

        node = by_entry.get(journal_entry_id)
        ancestry: List[StoryNode] = []
        seen = set()
        while node is not None and node.chapter_id not in seen:
            ancestry.append(node)
            seen.add(node.chapter_id)
            node = by_chapter.get(node.parent_id) if node.parent_id else None
        return ancestry

    async def filtered_nodes(
        self,
        min_sentiment: Optional[float] = None,
        max_sentiment: Optional[float] = None,
        search_text: str = ""
    ) -> List[StoryNode]:
        """Filter nodes by sentiment range and/or text in themes, entities or key phrases."""
        needle = search_text.strip().lower()
        results = []
        for node in await self.get_all_story_nodes():
            metadata = node.metadata_snapshot
            if min_sentiment is not None and metadata.sentiment_score < min_sentiment:
                continue
            if max_sentiment is not None and metadata.sentiment_score > max_sentiment:
                continue
            if needle:
                haystack = metadata.themes + metadata.entities + metadata.key_phrases
                if not any(needle in value.lower() for value in haystack):
                    continue
            results.append(node)
        return results

    async def export_graph(self) -> Dict[str, Any]:
        """JSON-ready dump of every chapter and node."""
        chapter_rows = await self._fetchall(
            "SELECT * FROM story_chapters ORDER BY timestamp ASC, chapter_id ASC"
        )
        nodes = await self.get_all_story_nodes()
        return {
            "exported_at": format_timestamp(utc_now()),
            "chapters": [self._row_to_chapter(row).to_dict() for row in chapter_rows],
            "nodes": [node.to_dict() for node in nodes],
        }

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def find_orphaned_chapters(self) -> List[StoryChapter]:
        """Chapters that no node references (left by standalone save_chapter calls)."""
        rows = await self._fetchall("""
            SELECT c.* FROM story_chapters c
            WHERE NOT EXISTS (SELECT 1 FROM story_nodes n WHERE n.chapter_id = c.chapter_id)
              AND NOT EXISTS (SELECT 1 FROM story_nodes p WHERE p.parent_id = c.chapter_id)
            ORDER BY c.timestamp ASC, c.chapter_id ASC
        """)
        return [self._row_to_chapter(row) for row in rows]

    async def remove_orphaned_chapters(self, older_than: Optional[timedelta] = None) -> int:
        """
        Delete orphaned chapters.

        Args:
            older_than: Only remove orphans whose timestamp is older than this age

        Returns:
            Number of chapters removed
        """
        orphans = await self.find_orphaned_chapters()
        if older_than is not None:
            cutoff = utc_now() - older_than
            orphans = [c for c in orphans if c.timestamp < cutoff]
        if not orphans:
            return 0

        async with self._write_lock:
            try:
                await self.conn.executemany("""
                    DELETE FROM story_chapters
                    WHERE chapter_id = ?
                      AND NOT EXISTS (SELECT 1 FROM story_nodes n WHERE n.chapter_id = story_chapters.chapter_id)
                """, [(c.chapter_id,) for c in orphans])
                await self.conn.commit()
            except sqlite3.Error as e:
                await self._rollback()
                raise PersistenceError(f"Failed to remove orphaned chapters: {e}") from e

        logger.warning(
            "Removed orphaned chapters",
            count=len(orphans),
            chapter_ids=[c.chapter_id for c in orphans],
        )
        return len(orphans)
