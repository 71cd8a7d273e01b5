"""
Recurring poll loop.

One cycle: fetch the latest block from the active backend, run the synthesis
pipeline for the configured address and inject the surface. The next cycle is
scheduled ``interval`` seconds after the previous one has settled, so cycles
never overlap. Each ``start()`` gets its own CancellationToken; tearing down a
session wakes its pending wait and makes in-flight results be dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from ethconsole.rpc.bridge import hex_to_int

if TYPE_CHECKING:
    from ethconsole.sandbox.injector import SandboxInjector
    from ethconsole.session.controller import SessionContext
    from ethconsole.synthesis.pipeline import InterfaceSynthesisPipeline

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


@dataclass
class PollSession:
    token: CancellationToken
    task: asyncio.Task


class PollLoopController:
    def __init__(
        self,
        context: SessionContext,
        pipeline: InterfaceSynthesisPipeline,
        injector: SandboxInjector,
        interval: float = 10.0,
    ) -> None:
        self.context = context
        self.pipeline = pipeline
        self.injector = injector
        self.interval = interval
        self._session: Optional[PollSession] = None

    @property
    def session(self) -> Optional[PollSession]:
        return self._session

    @property
    def running(self) -> bool:
        return self._session is not None and not self._session.token.cancelled

    @property
    def last_block(self) -> Optional[int]:
        return self.context.last_block

    def start(self) -> Callable[[], None]:
        """Begin polling; returns the teardown for this session."""
        self.stop()
        token = CancellationToken()
        task = asyncio.get_running_loop().create_task(self._run(token))
        session = PollSession(token=token, task=task)
        self._session = session
        logger.info("Poll loop started (every %.1fs)", self.interval)

        def teardown() -> None:
            self._teardown(session)

        return teardown

    def stop(self) -> None:
        if self._session is not None:
            self._teardown(self._session)

    def _teardown(self, session: PollSession) -> None:
        session.token.cancel()
        if self._session is session:
            self._session = None
            logger.info("Poll loop stopped")

    async def refresh(self) -> None:
        """Run one cycle now, outside the periodic cadence."""
        token = self._session.token if self._session is not None else CancellationToken()
        await self._cycle(token)

    async def _run(self, token: CancellationToken) -> None:
        while not token.cancelled:
            await self._cycle(token)
            if await token.wait(self.interval):
                break

    async def _cycle(self, token: CancellationToken) -> None:
        try:
            client = self.context.fork_manager.current_client()
            block = await client.get_block("latest")
            if token.cancelled:
                return
            if block:
                self.context.last_block = hex_to_int(block["number"])

            address = self.context.contract_address
            if not address:
                return
            surface = await self.pipeline.run(address)
            if token.cancelled or surface is None:
                return
            self.injector.inject(surface.markup)
            self.context.surface = surface
        except Exception as e:
            logger.warning("Poll cycle failed: %s", e)
