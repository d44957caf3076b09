"""
Storyloom storage layer.

StoryPersistenceManager owns the durable story graph (chapters + nodes).
"""

from .stories import StoryPersistenceManager

__all__ = [
    "StoryPersistenceManager",
]
