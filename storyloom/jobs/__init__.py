"""
Offline request queue.

Captures story generation requests made without connectivity and replays
them in order once the connection returns (see storyloom.jobs.worker).
"""

from storyloom.jobs.database import OfflineRequestDatabase
from storyloom.jobs.queue import (
    DrainReport,
    OfflineRequest,
    OfflineRequestQueue,
    RequestType,
)

__all__ = [
    "OfflineRequestDatabase",
    "DrainReport",
    "OfflineRequest",
    "OfflineRequestQueue",
    "RequestType",
]
