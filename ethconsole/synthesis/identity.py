"""Contract identity probe: reads ``name()`` through the active backend."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from ethconsole.chain.client import ChainClient
from ethconsole.common.types import UNKNOWN_CONTRACT, AbiDescriptor
from ethconsole.rpc.bridge import TransportError
from ethconsole.synthesis.errors import IdentityProbeFailure

logger = logging.getLogger(__name__)


NAME_SELECTOR = "0x06fdde03"


def has_name_function(abi: AbiDescriptor) -> bool:
    if abi.find_function("name", arity=0) is not None:
        return True
    item = abi.by_selector(NAME_SELECTOR)
    return item is not None and item.type == "function"


def decode_name(data: bytes) -> str:
    """Decode a ``string`` return value, falling back to ``bytes32``."""
    if not data:
        raise IdentityProbeFailure("name() returned no data")
    try:
        (value,) = decode(["string"], data)
    except (DecodingError, OverflowError, ValueError):
        if len(data) != 32:
            raise IdentityProbeFailure(f"Cannot decode name() return of {len(data)} bytes")
        value = data.rstrip(b"\x00").decode("utf-8", errors="replace")
    value = value.strip("\x00").strip()
    if not value:
        raise IdentityProbeFailure("name() is empty")
    return value


class IdentityProbe:
    def __init__(self, current_client: Callable[[], ChainClient]) -> None:
        self.current_client = current_client

    async def _read_name(self, address: str) -> str:
        try:
            data = await self.current_client().call({"to": address, "data": NAME_SELECTOR})
        except TransportError as e:
            raise IdentityProbeFailure(f"name() call failed: {e}") from e
        return decode_name(data)

    async def probe(self, address: str, abi: Optional[AbiDescriptor]) -> str:
        """Human-readable label for ``address``; ``Unknown Contract`` on any failure."""
        if not abi or not has_name_function(abi):
            return UNKNOWN_CONTRACT
        try:
            return await self._read_name(address)
        except IdentityProbeFailure as e:
            logger.debug("Identity probe for %s failed: %s", address, e)
            return UNKNOWN_CONTRACT
