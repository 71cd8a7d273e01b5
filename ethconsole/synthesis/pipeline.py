"""
Interface synthesis pipeline.

resolve_interface runs the recovery stages in order:

  0. deployed code (empty code -> externally owned account, nothing to do)
  1. verified-source ABI loaders
  2. bytecode heuristics, optionally named through a signature database
  3. proxy detection and, when enabled, implementation-chain following
  4. identity probe (``name()``)

Each stage degrades the result on failure instead of raising. The pipeline
then hands non-empty interfaces to the surface generator.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ethconsole.chain.client import ChainClient
from ethconsole.common.types import (
    EMPTY_ABI,
    AbiDescriptor,
    GeneratedSurface,
    ProxyHop,
    ResolvedInterface,
    normalize_address,
)
from ethconsole.rpc.bridge import TransportError
from ethconsole.synthesis.bytecode import BytecodeAnalysis, abi_from_bytecode, analyze_bytecode
from ethconsole.synthesis.errors import GenerationError, SynthesisError
from ethconsole.synthesis.generation import SurfaceCache, SurfaceGenerator
from ethconsole.synthesis.identity import IdentityProbe
from ethconsole.synthesis.loaders import AbiLoader, SignatureLookup
from ethconsole.synthesis.proxies import ProxyResolver

logger = logging.getLogger(__name__)


class InterfaceResolver:
    def __init__(
        self,
        current_client: Callable[[], ChainClient],
        loader: Optional[AbiLoader] = None,
        signatures: Optional[SignatureLookup] = None,
        follow_proxies: bool = False,
        max_proxy_hops: int = 8,
        max_instructions: int = 100_000,
    ) -> None:
        self.current_client = current_client
        self.loader = loader
        self.signatures = signatures
        self.follow_proxies = follow_proxies
        self.max_proxy_hops = max_proxy_hops
        self.max_instructions = max_instructions
        self.proxies = ProxyResolver(current_client, max_instructions)
        self.identity = IdentityProbe(current_client)

    async def _verified_abi(self, address: str) -> Optional[AbiDescriptor]:
        if self.loader is None:
            return None
        try:
            return await self.loader.load(address)
        except SynthesisError as e:
            logger.debug("Verified ABI lookup for %s failed: %s", address, e)
            return None

    async def _heuristic_abi(self, analysis: BytecodeAnalysis) -> AbiDescriptor:
        names: dict[str, str] = {}
        if self.signatures is not None and (analysis.selectors or analysis.event_topics):
            try:
                names = await self.signatures.lookup(analysis.selectors, analysis.event_topics)
            except SynthesisError as e:
                logger.debug("Signature lookup failed: %s", e)
        return abi_from_bytecode(analysis, names)

    async def _abi_for(self, address: str, analysis: BytecodeAnalysis) -> tuple[AbiDescriptor, str]:
        abi = await self._verified_abi(address)
        if abi:
            return abi, "verified"
        abi = await self._heuristic_abi(analysis)
        if abi:
            if analysis.truncated:
                logger.debug("Bytecode of %s truncated at %d instructions",
                             address, analysis.instruction_count)
            return abi, "bytecode"
        return EMPTY_ABI, "none"

    async def _proxy_hops(self, address: str, code: bytes, analysis: BytecodeAnalysis) -> list[ProxyHop]:
        try:
            if self.follow_proxies:
                return await self.proxies.follow(address, self.max_proxy_hops, code, analysis)
            hop = await self.proxies.detect(address, code, analysis)
            return [hop] if hop is not None else []
        except (SynthesisError, TransportError) as e:
            logger.debug("Proxy detection for %s failed: %s", address, e)
            return []

    async def _implementation_abi(self, implementation: str) -> Optional[tuple[AbiDescriptor, str]]:
        try:
            code = await self.current_client().get_code(implementation)
        except TransportError as e:
            logger.debug("Cannot read implementation %s: %s", implementation, e)
            return None
        if not code:
            return None
        analysis = analyze_bytecode(code, self.max_instructions)
        abi, source = await self._abi_for(implementation, analysis)
        return (abi, source) if abi else None

    async def resolve_interface(self, address: str) -> ResolvedInterface:
        try:
            address = normalize_address(address)
        except ValueError as e:
            logger.warning("%s", e)
            return ResolvedInterface(address=str(address))

        try:
            code = await self.current_client().get_code(address)
        except TransportError as e:
            logger.warning("Cannot read code of %s: %s", address, e)
            return ResolvedInterface(address=address)
        if not code:
            logger.debug("%s has no code", address)
            return ResolvedInterface(address=address)

        analysis = analyze_bytecode(code, self.max_instructions)
        abi, source = await self._abi_for(address, analysis)

        hops = await self._proxy_hops(address, code, analysis)
        if self.follow_proxies and hops:
            final = hops[-1].implementation
            if final is not None and final != address:
                found = await self._implementation_abi(final)
                if found is not None:
                    abi, source = found

        name = await self.identity.probe(address, abi)
        return ResolvedInterface(
            address=address,
            abi=abi,
            proxies=tuple(hops),
            name=name,
            source=source,
        )


class InterfaceSynthesisPipeline:
    """resolve -> (cache) -> generate. ``run`` never raises."""

    def __init__(
        self,
        resolver: InterfaceResolver,
        generator: SurfaceGenerator,
        cache: Optional[SurfaceCache] = None,
    ) -> None:
        self.resolver = resolver
        self.generator = generator
        self.cache = cache if cache is not None else SurfaceCache()
        self.last_resolved: Optional[ResolvedInterface] = None

    async def run(self, address: str) -> Optional[GeneratedSurface]:
        try:
            resolved = await self.resolver.resolve_interface(address)
        except Exception:
            logger.exception("Interface resolution for %s failed", address)
            return None
        self.last_resolved = resolved

        if resolved.is_empty:
            logger.info("No interface recovered for %s", resolved.address)
            return None

        cached = self.cache.get(resolved)
        if cached is not None:
            logger.debug("Reusing cached surface for %s", resolved.address)
            return cached

        try:
            surface = await self.generator.generate(resolved)
        except GenerationError as e:
            logger.warning("Surface generation for %s failed: %s", resolved.address, e)
            return None
        self.cache.put(resolved, surface)
        return surface
