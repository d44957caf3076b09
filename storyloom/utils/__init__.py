"""Utility modules for Storyloom."""

from storyloom.utils.logging import (
    configure_logging,
    get_logger,
    get_log_buffer,
    LogLevel,
    LogEntry,
    LogBuffer,
    AppLogger,
    story_logger,
    queue_logger,
    network_logger,
    api_logger,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "get_log_buffer",
    "LogLevel",
    "LogEntry",
    "LogBuffer",
    "AppLogger",
    "story_logger",
    "queue_logger",
    "network_logger",
    "api_logger",
]
