"""RPC module."""

from .bridge import TransportBridge, TransportError, RPCError
from .native import NativeExecutor, HttpNativeExecutor, NativeExecutorError

__all__ = [
    "TransportBridge",
    "TransportError",
    "RPCError",
    "NativeExecutor",
    "HttpNativeExecutor",
    "NativeExecutorError",
]
