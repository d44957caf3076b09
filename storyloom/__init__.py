"""
Storyloom: turns journal entries into a persisted chain of story chapters,
tolerating network loss through a durable offline queue.
"""

__version__ = "1.0.0"
