"""Chain backends: live relay and in-memory fork."""

from .client import ChainClient, LiveClient
from .fork import ForkManager, ForkedClient, ForkSession, Mode

__all__ = ["ChainClient", "LiveClient", "ForkManager", "ForkedClient", "ForkSession", "Mode"]
