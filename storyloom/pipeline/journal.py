"""
Read-only view of the journal entry store.

The pipeline only needs to look entries up by id; the in-memory store backs
the HTTP surface and the tests.
"""

from typing import Dict, List, Optional, Protocol

from storyloom.models import JournalEntry


class JournalStore(Protocol):
    async def get_entry(self, entry_id: str) -> Optional[JournalEntry]:
        ...


class InMemoryJournalStore:
    """Journal entries kept in a dict, keyed by id."""

    def __init__(self, entries: Optional[List[JournalEntry]] = None):
        self._entries: Dict[str, JournalEntry] = {}
        for entry in entries or []:
            self.add_entry(entry)

    def add_entry(self, entry: JournalEntry):
        self._entries[entry.id] = entry

    async def get_entry(self, entry_id: str) -> Optional[JournalEntry]:
        return self._entries.get(entry_id)

    async def list_entries(self) -> List[JournalEntry]:
        return sorted(self._entries.values(), key=lambda e: (e.date, e.id))
