"""
Tests for the poll loop: cycle behavior, session lifecycle and cancellation.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from ethconsole.common.types import GeneratedSurface
from ethconsole.session.poll import CancellationToken, PollLoopController

from tests.fixtures.addresses import TOKEN_ADDRESS

SURFACE = GeneratedSurface(address=TOKEN_ADDRESS, name="Wrapped Ether", markup="<p>weth</p>")


async def eventually(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def pipeline():
    pipeline = MagicMock()
    pipeline.run = AsyncMock(return_value=SURFACE)
    return pipeline


@pytest.fixture
def injector():
    return MagicMock()


@pytest.fixture
def poll(session_context, pipeline, injector):
    session_context.contract_address = TOKEN_ADDRESS
    return PollLoopController(session_context, pipeline, injector, interval=0.01)


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_wait_times_out(self):
        token = CancellationToken()
        assert await token.wait(0.01) is False

    @pytest.mark.asyncio
    async def test_cancel_wakes_wait(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        assert await token.wait(5.0) is True


class TestCycle:
    @pytest.mark.asyncio
    async def test_refresh_runs_one_cycle(self, poll, session_context, pipeline, injector, node):
        node.block_number = 0x2a
        await poll.refresh()
        assert poll.last_block == 0x2a
        pipeline.run.assert_awaited_once_with(TOKEN_ADDRESS)
        injector.inject.assert_called_once_with("<p>weth</p>")
        assert session_context.surface is SURFACE

    @pytest.mark.asyncio
    async def test_no_address(self, poll, session_context, pipeline):
        session_context.contract_address = None
        await poll.refresh()
        assert poll.last_block == 100
        pipeline.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_surface_keeps_previous(self, poll, session_context, pipeline, injector):
        session_context.surface = SURFACE
        pipeline.run.return_value = None
        await poll.refresh()
        injector.inject.assert_not_called()
        assert session_context.surface is SURFACE

    @pytest.mark.asyncio
    async def test_failure_logged(self, poll, node, pipeline, caplog):
        node.overrides["eth_getBlockByNumber"] = lambda params: {"error": {"code": -32000, "message": "node down"}}
        with caplog.at_level(logging.WARNING, logger="ethconsole.session.poll"):
            await poll.refresh()
        assert "Poll cycle failed: node down" in caplog.text
        pipeline.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_uses_forked_backend(self, poll, session_context, node):
        session_context.fork_manager.fork()
        node.block_number = 0x50
        await poll.refresh()
        node.block_number = 0x60
        await poll.refresh()
        # the fork is pinned at its first block
        assert poll.last_block == 0x50


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_polls_immediately(self, poll, pipeline):
        teardown = poll.start()
        try:
            await eventually(lambda: pipeline.run.await_count >= 1)
            assert poll.running
            assert poll.last_block == 100
        finally:
            teardown()

    @pytest.mark.asyncio
    async def test_keeps_polling(self, poll, pipeline):
        teardown = poll.start()
        try:
            await eventually(lambda: pipeline.run.await_count >= 3)
        finally:
            teardown()

    @pytest.mark.asyncio
    async def test_teardown_stops_loop(self, poll, pipeline):
        teardown = poll.start()
        session = poll.session
        await eventually(lambda: pipeline.run.await_count >= 1)
        teardown()
        assert not poll.running
        assert poll.session is None
        await asyncio.wait_for(session.task, 1.0)
        count = pipeline.run.await_count
        await asyncio.sleep(0.05)
        assert pipeline.run.await_count == count

    @pytest.mark.asyncio
    async def test_restart_replaces_session(self, poll):
        first_teardown = poll.start()
        first = poll.session
        second_teardown = poll.start()
        try:
            assert first.token.cancelled
            assert poll.session is not first
            await asyncio.wait_for(first.task, 1.0)
            # a stale teardown leaves the new session alone
            first_teardown()
            assert poll.running
        finally:
            second_teardown()

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self, poll, node, pipeline):
        failures = {"left": 2}
        real = node._eth_getBlockByNumber

        def flaky(params):
            if failures["left"]:
                failures["left"] -= 1
                return {"error": {"code": -32000, "message": "timeout"}}
            return real(*params)

        node.overrides["eth_getBlockByNumber"] = flaky
        teardown = poll.start()
        try:
            await eventually(lambda: pipeline.run.await_count >= 1)
            assert failures["left"] == 0
        finally:
            teardown()

    @pytest.mark.asyncio
    async def test_in_flight_result_dropped(self, poll, session_context, pipeline, injector):
        entered = asyncio.Event()
        gate = asyncio.Event()

        async def slow_run(address):
            entered.set()
            await gate.wait()
            return SURFACE

        pipeline.run = AsyncMock(side_effect=slow_run)
        teardown = poll.start()
        session = poll.session
        await asyncio.wait_for(entered.wait(), 1.0)

        teardown()
        gate.set()
        await asyncio.wait_for(session.task, 1.0)

        injector.inject.assert_not_called()
        assert session_context.surface is None
