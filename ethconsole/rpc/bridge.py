"""
Transport bridge: correlated JSON-RPC calls across the trust boundary.

Every call is wrapped in a fresh RequestEnvelope, handed to the native
executor, and the BridgedResponse is unwrapped. Error payloads are raised
verbatim as RPCError; nothing is retried.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from ethconsole.common.types import BridgedResponse, RequestEnvelope

if TYPE_CHECKING:
    from ethconsole.rpc.native import NativeExecutor

logger = logging.getLogger(__name__)


PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
EXECUTION_ERROR = 3


class TransportError(Exception):
    """The native round trip failed or returned an error payload."""


class RPCError(TransportError):
    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_payload(cls, payload: dict) -> RPCError:
        return cls(
            payload.get("code", INTERNAL_ERROR),
            payload.get("message", ""),
            payload.get("data"),
        )

    def to_dict(self) -> dict:
        error = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class TransportBridge:
    """Forwards chain RPC calls to the native executor."""

    def __init__(self, executor: NativeExecutor) -> None:
        self.executor = executor
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self, rpc_url: str, consensus_rpc: str, chain_id: int) -> str:
        return await self.executor.start(rpc_url, consensus_rpc, chain_id)

    async def send(self, method: str, params: Optional[Any] = None) -> Any:
        envelope = RequestEnvelope(method=method, params=params if params is not None else [])
        if envelope.id in self._in_flight:
            raise TransportError(f"Duplicate in-flight request id {envelope.id}")

        self._in_flight.add(envelope.id)
        try:
            try:
                raw = await self.executor.request(envelope)
            except TransportError:
                raise
            except Exception as e:
                raise TransportError(f"{method} failed: {e}") from e
            try:
                response = BridgedResponse.from_dict(raw)
            except ValueError as e:
                raise TransportError(f"{method}: {e}") from e
        finally:
            self._in_flight.discard(envelope.id)

        if response.id is not None and response.id != envelope.id:
            raise TransportError(
                f"{method}: response id {response.id!r} does not match request {envelope.id!r}"
            )
        if response.is_error:
            logger.debug("%s returned error %s", method, response.error)
            raise RPCError.from_payload(response.error)
        return response.result


# ---------------------------------------------------------------------------
# Hex helpers
# ---------------------------------------------------------------------------

def hex_to_int(value: str) -> int:
    return int(value, 16)


def int_to_hex(value: int) -> str:
    return hex(value)


def bytes_to_hex(value: bytes) -> str:
    return "0x" + value.hex()


def hex_to_bytes(value: str) -> bytes:
    if value.startswith("0x") or value.startswith("0X"):
        value = value[2:]
    if len(value) % 2:
        value = "0" + value
    return bytes.fromhex(value)
