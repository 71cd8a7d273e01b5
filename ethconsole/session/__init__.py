"""Session module."""

from .controller import SessionContext, SessionController
from .poll import CancellationToken, PollLoopController, PollSession

__all__ = [
    "CancellationToken",
    "PollLoopController",
    "PollSession",
    "SessionContext",
    "SessionController",
]
