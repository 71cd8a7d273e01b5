"""
Chain clients.

A ChainClient answers EIP-1193 style ``request(method, params)`` calls and
offers typed helpers on top. LiveClient relays everything through the
transport bridge; the forked client lives in ``ethconsole.chain.fork``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ethconsole.common.types import normalize_address
from ethconsole.rpc.bridge import TransportBridge, TransportError, hex_to_bytes, hex_to_int, int_to_hex


def _data(method: str, value: Any) -> bytes:
    if not isinstance(value, str):
        raise TransportError(f"{method} returned {value!r}, expected hex data")
    try:
        return hex_to_bytes(value)
    except ValueError as e:
        raise TransportError(f"{method} returned malformed hex: {e}") from e


class ChainClient(ABC):
    mode: str = ""

    @abstractmethod
    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        """Answer one JSON-RPC method call."""

    async def chain_id(self) -> int:
        return hex_to_int(await self.request("eth_chainId", []))

    async def block_number(self) -> int:
        return hex_to_int(await self.request("eth_blockNumber", []))

    async def get_block(self, tag: str | int = "latest", full: bool = False) -> Optional[dict]:
        if isinstance(tag, int):
            tag = int_to_hex(tag)
        return await self.request("eth_getBlockByNumber", [tag, full])

    async def get_code(self, address: str, block: str = "latest") -> bytes:
        return _data("eth_getCode", await self.request("eth_getCode", [normalize_address(address), block]))

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return hex_to_int(await self.request("eth_getBalance", [normalize_address(address), block]))

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        return hex_to_int(
            await self.request("eth_getTransactionCount", [normalize_address(address), block])
        )

    async def get_storage_at(self, address: str, slot: int, block: str = "latest") -> bytes:
        raw = await self.request(
            "eth_getStorageAt", [normalize_address(address), int_to_hex(slot), block]
        )
        return _data("eth_getStorageAt", raw).rjust(32, b"\x00")

    async def call(self, tx: dict, block: str = "latest") -> bytes:
        return _data("eth_call", await self.request("eth_call", [tx, block]))


class LiveClient(ChainClient):
    """Backend that reads the live chain through the transport bridge."""

    mode = "live"

    def __init__(self, bridge: TransportBridge) -> None:
        self.bridge = bridge

    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        return await self.bridge.send(method, params)
