"""
Database schema for the offline request log.
Uses aiosqlite for async SQLite operations.
"""

import aiosqlite
import json
from pathlib import Path
from typing import Optional, Dict, Any, List

from storyloom.models import format_timestamp, utc_now


class OfflineRequestDatabase:
    """Handles offline request log database operations"""

    def __init__(self, db_path: str = "offline_requests.db"):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Connect to database and create tables if needed"""
        db_file = Path(self.db_path)
        db_dir = db_file.parent
        if db_dir and str(db_dir) != "." and not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        await self._create_tables()

    async def _create_tables(self):
        """Create required tables"""
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS offline_requests (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,  -- FIFO order
                request_id TEXT UNIQUE NOT NULL,
                type TEXT NOT NULL,

                -- Input data (JSON object of strings)
                payload TEXT NOT NULL,

                -- Replay bookkeeping
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                last_attempt_at TEXT,

                creation_date TEXT NOT NULL
            )
        """)

        await self._conn.commit()

    @staticmethod
    def _row_to_dict(row) -> Dict[str, Any]:
        return {
            "seq": row[0],
            "request_id": row[1],
            "type": row[2],
            "payload": json.loads(row[3]),
            "attempt_count": row[4],
            "last_error": row[5],
            "last_attempt_at": row[6],
            "creation_date": row[7],
        }

    _COLUMNS = """
        seq, request_id, type, payload, attempt_count,
        last_error, last_attempt_at, creation_date
    """

    async def insert_request(
        self,
        request_id: str,
        request_type: str,
        payload: Dict[str, str],
        creation_date: str,
        attempt_count: int = 0
    ) -> int:
        """
        Append a request to the log.

        Returns the sequence number (FIFO position).
        """
        cursor = await self._conn.execute("""
            INSERT INTO offline_requests
            (request_id, type, payload, attempt_count, creation_date)
            VALUES (?, ?, ?, ?, ?)
        """, (
            request_id,
            request_type,
            json.dumps(payload),
            attempt_count,
            creation_date
        ))
        await self._conn.commit()
        return cursor.lastrowid

    async def get_requests(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Get queued requests in enqueue order (FIFO)"""
        if limit is None:
            cursor = await self._conn.execute(f"""
                SELECT {self._COLUMNS}
                FROM offline_requests
                ORDER BY seq ASC
            """)
        else:
            cursor = await self._conn.execute(f"""
                SELECT {self._COLUMNS}
                FROM offline_requests
                ORDER BY seq ASC
                LIMIT ?
            """, (limit,))

        rows = await cursor.fetchall()
        return [self._row_to_dict(row) for row in rows]

    async def get_next_after(self, seq: int) -> Optional[Dict[str, Any]]:
        """Get the oldest request queued after the given sequence number"""
        cursor = await self._conn.execute(f"""
            SELECT {self._COLUMNS}
            FROM offline_requests
            WHERE seq > ?
            ORDER BY seq ASC
            LIMIT 1
        """, (seq,))

        row = await cursor.fetchone()
        return self._row_to_dict(row) if row else None

    async def get_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        """Get a request by its request_id"""
        cursor = await self._conn.execute(f"""
            SELECT {self._COLUMNS}
            FROM offline_requests
            WHERE request_id = ?
        """, (request_id,))

        row = await cursor.fetchone()
        return self._row_to_dict(row) if row else None

    async def record_attempt(self, request_id: str) -> int:
        """Increment the attempt counter before a replay. Returns the new count."""
        await self._conn.execute("""
            UPDATE offline_requests
            SET attempt_count = attempt_count + 1,
                last_attempt_at = ?
            WHERE request_id = ?
        """, (format_timestamp(utc_now()), request_id))
        await self._conn.commit()

        cursor = await self._conn.execute(
            "SELECT attempt_count FROM offline_requests WHERE request_id = ?",
            (request_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def record_failure(self, request_id: str, error_message: str):
        """Store the error of the last failed replay"""
        await self._conn.execute("""
            UPDATE offline_requests
            SET last_error = ?
            WHERE request_id = ?
        """, (error_message, request_id))
        await self._conn.commit()

    async def reset_attempts(self, request_id: str) -> bool:
        """Clear attempt bookkeeping. Returns False if the request is unknown."""
        cursor = await self._conn.execute("""
            UPDATE offline_requests
            SET attempt_count = 0,
                last_error = NULL,
                last_attempt_at = NULL
            WHERE request_id = ?
        """, (request_id,))
        await self._conn.commit()
        return cursor.rowcount > 0

    async def delete_request(self, request_id: str) -> bool:
        cursor = await self._conn.execute(
            "DELETE FROM offline_requests WHERE request_id = ?",
            (request_id,)
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def count(self) -> int:
        cursor = await self._conn.execute("SELECT COUNT(*) FROM offline_requests")
        row = await cursor.fetchone()
        return row[0]

    async def close(self):
        """Close database connection"""
        if self._conn:
            await self._conn.close()
            self._conn = None
