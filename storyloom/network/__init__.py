"""Connectivity monitoring."""

from storyloom.network.monitor import NetworkMonitor, ProbingNetworkMonitor, ReconnectListener

__all__ = [
    "NetworkMonitor",
    "ProbingNetworkMonitor",
    "ReconnectListener",
]
