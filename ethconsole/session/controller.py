"""
Session state and the explicit transitions the host UI drives.

SessionContext is the single state record shared by every component.
SessionController wires the components together and exposes one method per
user action: start, fork toggle, address change, key change, refresh and
unmount.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from ethconsole.chain.fork import ForkManager
from ethconsole.common.config import (
    KEY_CONTRACT_ADDRESS,
    KEY_ETHERSCAN_API_KEY,
    KEY_OPENAI_API_KEY,
    KeyStore,
    Settings,
)
from ethconsole.common.types import GeneratedSurface, normalize_address
from ethconsole.rpc.bridge import TransportBridge
from ethconsole.sandbox.injector import SandboxContext, SandboxInjector
from ethconsole.session.poll import PollLoopController
from ethconsole.synthesis.generation import SurfaceCache, SurfaceGenerator
from ethconsole.synthesis.loaders import (
    AbiLoader,
    EtherscanAbiLoader,
    MultiAbiLoader,
    SignatureLookup,
    SourcifyAbiLoader,
)
from ethconsole.synthesis.pipeline import InterfaceResolver, InterfaceSynthesisPipeline

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    settings: Settings
    bridge: TransportBridge
    fork_manager: ForkManager
    sandbox: SandboxContext
    keystore: KeyStore
    contract_address: Optional[str] = None
    openai_api_key: str = ""
    etherscan_api_key: str = ""
    surface: Optional[GeneratedSurface] = None
    started: bool = False
    last_block: Optional[int] = field(default=None)

    @classmethod
    def create(cls, settings: Settings, bridge: TransportBridge, keystore: KeyStore) -> SessionContext:
        keystore.load()
        address = keystore.get(KEY_CONTRACT_ADDRESS)
        if address is not None:
            try:
                address = normalize_address(address)
            except ValueError:
                logger.warning("Ignoring persisted contract address %r", address)
                address = None
        return cls(
            settings=settings,
            bridge=bridge,
            fork_manager=ForkManager(bridge),
            sandbox=SandboxContext(),
            keystore=keystore,
            contract_address=address,
            openai_api_key=keystore.get(KEY_OPENAI_API_KEY, ""),
            etherscan_api_key=keystore.get(KEY_ETHERSCAN_API_KEY, ""),
        )


class SessionController:
    def __init__(self, context: SessionContext, http: Optional[httpx.AsyncClient] = None) -> None:
        self.context = context
        settings = context.settings
        self.http = http or httpx.AsyncClient(timeout=settings.request_timeout)

        signatures = SignatureLookup(self.http) if settings.lookup_signatures else None
        self.resolver = InterfaceResolver(
            context.fork_manager.current_client,
            loader=self._build_loader(),
            signatures=signatures,
            follow_proxies=settings.follow_proxies,
            max_proxy_hops=settings.max_proxy_hops,
            max_instructions=settings.max_instructions,
        )
        self.generator = SurfaceGenerator(
            lambda: self.context.openai_api_key,
            self.http,
            base_url=settings.generation_url,
            model=settings.generation_model,
        )
        self.cache = SurfaceCache(enabled=settings.cache_surfaces)
        self.pipeline = InterfaceSynthesisPipeline(self.resolver, self.generator, self.cache)
        self.injector = SandboxInjector(context.bridge, context.sandbox)
        self.poll = PollLoopController(
            context, self.pipeline, self.injector, interval=settings.poll_interval
        )
        self._teardown: Optional[Callable[[], None]] = None

    def _build_loader(self) -> AbiLoader:
        settings = self.context.settings
        chain_id = settings.network.sourcify_chain or settings.chain_id
        loaders: list[AbiLoader] = [SourcifyAbiLoader(self.http, chain_id)]
        if self.context.etherscan_api_key:
            loaders.append(
                EtherscanAbiLoader(self.http, self.context.etherscan_api_key, settings.chain_id)
            )
        return MultiAbiLoader(loaders)

    def _restart_poll(self) -> None:
        if self._teardown is not None:
            self._teardown()
        self._teardown = self.poll.start()

    # -- transitions --------------------------------------------------------

    async def on_start_requested(self) -> str:
        """Start the native executor, then the poll loop.

        NativeExecutorError propagates; its message is shown to the user.
        """
        settings = self.context.settings
        message = await self.context.bridge.start(
            settings.rpc_url, settings.effective_consensus_rpc, settings.chain_id
        )
        self.context.started = True
        logger.info("%s", message)
        self._restart_poll()
        return message

    def on_fork_toggled(self, forked: bool) -> str:
        if forked:
            self.context.fork_manager.fork()
        else:
            self.context.fork_manager.unfork()
        return self.context.fork_manager.mode.value

    def on_address_changed(self, address: str) -> str:
        """Set the inspected contract; raises ValueError for a bad address."""
        address = normalize_address(address)
        if address == self.context.contract_address:
            return address
        self.context.contract_address = address
        self.context.keystore.set(KEY_CONTRACT_ADDRESS, address)
        self.context.surface = None
        self.context.sandbox.clear()
        logger.info("Contract address set to %s", address)
        if self.context.started:
            self._restart_poll()
        return address

    def on_keys_changed(
        self,
        openai_api_key: Optional[str] = None,
        etherscan_api_key: Optional[str] = None,
    ) -> None:
        if openai_api_key is not None:
            self.context.openai_api_key = openai_api_key
            self.context.keystore.set(KEY_OPENAI_API_KEY, openai_api_key)
        if etherscan_api_key is not None:
            self.context.etherscan_api_key = etherscan_api_key
            self.context.keystore.set(KEY_ETHERSCAN_API_KEY, etherscan_api_key)
            self.resolver.loader = self._build_loader()

    async def refresh(self) -> None:
        await self.poll.refresh()

    def on_unmount(self) -> None:
        if self._teardown is not None:
            self._teardown()
            self._teardown = None

    def status(self) -> dict:
        surface = self.context.surface
        resolved = self.pipeline.last_resolved
        return {
            "started": self.context.started,
            "mode": self.context.fork_manager.mode.value,
            "running": self.poll.running,
            "lastBlock": self.context.last_block,
            "contractAddress": self.context.contract_address,
            "surfaceName": surface.name if surface is not None else None,
            "sandboxGeneration": self.context.sandbox.generation,
            "proxies": [hop.to_json() for hop in resolved.proxies] if resolved else [],
            "abiSource": resolved.source if resolved else None,
            "hasOpenaiKey": bool(self.context.openai_api_key),
            "hasEtherscanKey": bool(self.context.etherscan_api_key),
        }

    async def aclose(self) -> None:
        self.on_unmount()
        await self.http.aclose()
