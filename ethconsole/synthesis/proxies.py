"""
Proxy detection and implementation-chain following.

Recognised patterns:
  - EIP-1167 minimal proxy (implementation embedded in the runtime code)
  - EIP-1967 implementation slot and beacon slot
  - EIP-1822 UUPS ``PROXIABLE`` slot
  - OpenZeppelin legacy ``org.zeppelinos.proxy.implementation`` slot
  - Gnosis Safe ``masterCopy`` at storage slot 0
  - EIP-2535 diamond (detected only)
  - any other DELEGATECALL forwarder (detected only)

Every read goes through the backend returned by ``current_client()`` at the
moment of the read, so a fork toggle mid-resolution is honoured.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ethconsole.chain.client import ChainClient
from ethconsole.common.types import ZERO_ADDRESS, ProxyHop, normalize_address
from ethconsole.rpc.bridge import TransportError
from ethconsole.synthesis.bytecode import BytecodeAnalysis, analyze_bytecode

logger = logging.getLogger(__name__)


EIP1167_PREFIX = bytes.fromhex("363d3d373d3d3d363d73")
EIP1167_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")

EIP1967_IMPLEMENTATION_SLOT = "0x360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc"
EIP1967_BEACON_SLOT = "0xa3f0ad74e5423aebfd80d3ef4346578335a9a72aeaee59ff6cb3582b35133d50"
EIP1822_PROXIABLE_SLOT = "0xc5f16f0fcc639fa48a6947836d9850f504798523bf8c9a3a87d5876cf622bcf7"
OZ_LEGACY_IMPLEMENTATION_SLOT = "0x7050c9e0f4ca769c69bd3a8ef740bc37934f8e2c036e5a723fd8ee048ed3f8c3"

BEACON_IMPLEMENTATION_SELECTOR = "0x5c60da1b"   # implementation()
GNOSIS_MASTER_COPY_SELECTOR = "0xa619486e"      # masterCopy()
DIAMOND_FACET_ADDRESS_SELECTOR = "0xcdffacc6"   # facetAddress(bytes4)

# (kind, slot) checked in order when the code delegates
SLOT_PROXIES = (
    ("eip1967", EIP1967_IMPLEMENTATION_SLOT),
    ("eip1822", EIP1822_PROXIABLE_SLOT),
    ("oz-legacy", OZ_LEGACY_IMPLEMENTATION_SLOT),
)


def minimal_proxy_target(code: bytes) -> Optional[str]:
    """Implementation address of an EIP-1167 clone, or None."""
    expected = len(EIP1167_PREFIX) + 20 + len(EIP1167_SUFFIX)
    if len(code) != expected:
        return None
    if not code.startswith(EIP1167_PREFIX) or not code.endswith(EIP1167_SUFFIX):
        return None
    start = len(EIP1167_PREFIX)
    return "0x" + code[start:start + 20].hex()


def _word_to_address(word: bytes) -> Optional[str]:
    word = word.rjust(32, b"\x00")
    address = "0x" + word[-20:].hex()
    return None if address == ZERO_ADDRESS else address


class ProxyResolver:
    """Detects proxy kinds and follows implementation chains."""

    def __init__(
        self,
        current_client: Callable[[], ChainClient],
        max_instructions: int = 100_000,
    ) -> None:
        self.current_client = current_client
        self.max_instructions = max_instructions

    async def _read_slot(self, address: str, slot: str) -> Optional[str]:
        word = await self.current_client().get_storage_at(address, int(slot, 16))
        return _word_to_address(word)

    async def _beacon_implementation(self, beacon: str) -> Optional[str]:
        out = await self.current_client().call(
            {"to": beacon, "data": BEACON_IMPLEMENTATION_SELECTOR}
        )
        if len(out) < 32:
            return None
        return _word_to_address(out[:32])

    async def detect(
        self,
        address: str,
        code: Optional[bytes] = None,
        analysis: Optional[BytecodeAnalysis] = None,
    ) -> Optional[ProxyHop]:
        """Classify ``address``; returns None when it is not a proxy."""
        address = normalize_address(address)
        if code is None:
            code = await self.current_client().get_code(address)
        if not code:
            return None

        target = minimal_proxy_target(code)
        if target is not None:
            return ProxyHop(address, "eip1167", target)

        if analysis is None:
            analysis = analyze_bytecode(code, self.max_instructions)
        if not analysis.has_delegatecall:
            return None

        try:
            for kind, slot in SLOT_PROXIES:
                implementation = await self._read_slot(address, slot)
                if implementation is not None:
                    return ProxyHop(address, kind, implementation)

            beacon = await self._read_slot(address, EIP1967_BEACON_SLOT)
            if beacon is not None:
                try:
                    implementation = await self._beacon_implementation(beacon)
                except TransportError as e:
                    logger.debug("Beacon %s of %s did not answer: %s", beacon, address, e)
                    implementation = None
                return ProxyHop(address, "eip1967-beacon", implementation)

            if GNOSIS_MASTER_COPY_SELECTOR in analysis.push4_values:
                implementation = await self._read_slot(address, "0x0")
                if implementation is not None:
                    return ProxyHop(address, "gnosis-safe", implementation)
        except TransportError as e:
            logger.debug("Proxy slot read failed for %s: %s", address, e)

        if DIAMOND_FACET_ADDRESS_SELECTOR in analysis.push4_values:
            return ProxyHop(address, "eip2535")
        return ProxyHop(address, "delegatecall")

    async def follow(
        self,
        address: str,
        max_hops: int = 8,
        code: Optional[bytes] = None,
        analysis: Optional[BytecodeAnalysis] = None,
    ) -> list[ProxyHop]:
        """Walk proxy -> implementation until a non-proxy, a cycle or ``max_hops``.

        ``code``/``analysis`` describe ``address`` when the caller already has
        them. A read failure ends the walk; the hops found so far are kept.
        """
        hops: list[ProxyHop] = []
        visited: set[str] = set()
        current: Optional[str] = normalize_address(address)

        while current is not None and len(hops) < max_hops:
            if current in visited:
                logger.debug("Proxy cycle detected at %s", current)
                break
            visited.add(current)
            try:
                hop = await self.detect(current, code, analysis)
            except TransportError as e:
                logger.debug("Proxy walk stopped at %s: %s", current, e)
                break
            if hop is None:
                break
            hops.append(hop)
            current = hop.implementation
            code = analysis = None

        return hops
