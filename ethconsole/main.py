"""
ethconsole — contract console with a sandboxed, generated interface.

Entry point. Wires the subsystems together:
  1. Parse CLI arguments
  2. Load settings and persisted keys
  3. Build the native executor and transport bridge
  4. Build the session (fork manager, synthesis pipeline, poll loop, sandbox)
  5. Serve the host web app
  6. Handle graceful shutdown
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

import uvicorn

from ethconsole.common.config import (
    DEFAULT_GENERATION_MODEL,
    DEFAULT_GENERATION_URL,
    DEFAULT_KEYSTORE_PATH,
    DEFAULT_MAX_INSTRUCTIONS,
    DEFAULT_MAX_PROXY_HOPS,
    DEFAULT_POLL_INTERVAL,
    NETWORK_CONFIGS,
    KeyStore,
    Settings,
)
from ethconsole.rpc.bridge import TransportBridge, TransportError
from ethconsole.rpc.native import HttpNativeExecutor
from ethconsole.session.controller import SessionContext, SessionController
from ethconsole.ui.app import ConsoleServer


logger = logging.getLogger("ethconsole")


class EthConsole:
    """Owns the executor, session controller and web server."""

    def __init__(self, settings: Settings, auto_start: bool = False) -> None:
        self.settings = settings
        self.auto_start = auto_start
        self.executor = HttpNativeExecutor(timeout=settings.request_timeout)
        self.bridge = TransportBridge(self.executor)
        self.keystore = KeyStore(settings.keystore_path)
        self.context = SessionContext.create(settings, self.bridge, self.keystore)
        self.controller = SessionController(self.context)
        self.server = ConsoleServer(self.controller)

    async def start(self) -> None:
        logger.info("Starting ethconsole")
        logger.info("  Network: %s (chain %d)", self.settings.network.chain_name,
                    self.settings.chain_id)
        logger.info("  Host UI: http://%s:%d/", self.settings.host, self.settings.port)
        if self.context.contract_address:
            logger.info("  Contract: %s", self.context.contract_address)

        config = uvicorn.Config(
            self.server.app,
            host=self.settings.host,
            port=self.settings.port,
            log_level="warning",
            loop="asyncio",
        )
        self._web_server = uvicorn.Server(config)
        self._web_server.config.setup_event_loop = lambda: None
        self._web_task = asyncio.create_task(self._web_server.serve())

        if self.auto_start:
            try:
                await self.controller.on_start_requested()
            except TransportError as e:
                logger.error("%s", e)

    async def stop(self) -> None:
        logger.info("Shutting down...")
        await self.controller.aclose()
        await self.executor.aclose()
        if hasattr(self, "_web_server"):
            self._web_server.should_exit = True
            await self._web_task
        logger.info("Stopped")

    async def run_until_stopped(self) -> None:
        stop_event = asyncio.Event()

        def _signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        await self.start()
        await stop_event.wait()
        await self.stop()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ethconsole",
        description="Contract console with a generated, sandboxed interface",
    )
    parser.add_argument(
        "--rpc-url",
        type=str,
        required=True,
        help="Upstream execution JSON-RPC endpoint",
    )
    parser.add_argument(
        "--network",
        choices=sorted(NETWORK_CONFIGS),
        default="mainnet",
        help="Network to follow (default: mainnet)",
    )
    parser.add_argument(
        "--consensus-rpc",
        type=str,
        default=None,
        help="Consensus RPC endpoint (default: the network preset)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help=f"Seconds between poll cycles (default: {DEFAULT_POLL_INTERVAL:g})",
    )
    parser.add_argument(
        "--follow-proxies",
        action="store_true",
        help="Resolve proxy implementation chains and use the final implementation ABI",
    )
    parser.add_argument(
        "--max-proxy-hops",
        type=int,
        default=DEFAULT_MAX_PROXY_HOPS,
        help=f"Maximum proxy hops to follow (default: {DEFAULT_MAX_PROXY_HOPS})",
    )
    parser.add_argument(
        "--max-instructions",
        type=int,
        default=DEFAULT_MAX_INSTRUCTIONS,
        help=f"Bytecode analysis instruction cap (default: {DEFAULT_MAX_INSTRUCTIONS})",
    )
    parser.add_argument(
        "--no-signature-lookup",
        action="store_true",
        help="Do not name recovered selectors through the signature database",
    )
    parser.add_argument(
        "--generation-url",
        type=str,
        default=DEFAULT_GENERATION_URL,
        help="OpenAI-compatible API base URL",
    )
    parser.add_argument(
        "--generation-model",
        type=str,
        default=DEFAULT_GENERATION_MODEL,
        help=f"Completion model (default: {DEFAULT_GENERATION_MODEL})",
    )
    parser.add_argument(
        "--cache-surfaces",
        action="store_true",
        help="Reuse generated surfaces while the address and ABI are unchanged",
    )
    parser.add_argument(
        "--keystore",
        type=str,
        default=str(DEFAULT_KEYSTORE_PATH),
        help="Path of the persisted key file",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host UI listen address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Host UI listen port (default: 8000)",
    )
    parser.add_argument(
        "--auto-start",
        action="store_true",
        help="Start the upstream connection without waiting for the UI",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        rpc_url=args.rpc_url,
        network=NETWORK_CONFIGS[args.network],
        consensus_rpc=args.consensus_rpc,
        poll_interval=args.poll_interval,
        follow_proxies=args.follow_proxies,
        max_proxy_hops=args.max_proxy_hops,
        max_instructions=args.max_instructions,
        lookup_signatures=not args.no_signature_lookup,
        generation_url=args.generation_url,
        generation_model=args.generation_model,
        cache_surfaces=args.cache_surfaces,
        keystore_path=Path(args.keystore).expanduser(),
        host=args.host,
        port=args.port,
    )


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    console = EthConsole(settings_from_args(args), auto_start=args.auto_start)
    try:
        asyncio.run(console.run_until_stopped())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
