"""
Error taxonomy shared by the clients, the story graph and the pipeline.

Every error carries a ``kind`` (stable string used in snapshots and API
responses) and a ``user_message`` suitable for showing to the writer.
"""

from typing import Optional


class StoryEngineError(Exception):
    """Base class for all Storyloom errors."""

    kind = "unknown"
    user_message = "Something went wrong while creating your story. Please try again."


class NetworkError(StoryEngineError):
    """
    A remote call did not produce a usable HTTP response.

    ``not_connected`` marks the no-connectivity case, which the pipeline
    turns into an offline enqueue instead of a hard failure.
    """

    kind = "network"
    user_message = "We couldn't reach the story server. Check your connection and try again."

    def __init__(
        self,
        message: str,
        *,
        not_connected: bool = False,
        status_code: Optional[int] = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.not_connected = not_connected
        self.status_code = status_code
        self.timed_out = timed_out


class DecodeError(StoryEngineError):
    """The remote endpoint answered with a malformed body."""

    kind = "decode"
    user_message = "The story server sent an unexpected response. Please try again later."


class IntegrityError(StoryEngineError):
    """A story node would reference a chapter that does not exist, or already exists."""

    kind = "integrity"
    user_message = "Your story could not be linked to its chapter. Please try again."


class PersistenceError(StoryEngineError):
    """The local story storage failed (disk full, locked database, ...)."""

    kind = "storage"
    user_message = "Your chapter couldn't be saved on this device. Free up space and try again."


class UnknownError(StoryEngineError):
    """Catch-all wrapper for unexpected exceptions."""

    kind = "unknown"


OFFLINE_MESSAGE = "You are offline. Your entry is queued and its chapter will be written once you reconnect."
