"""
Tests for the fork manager and the in-memory forked backend.

The forked backend runs on py-evm; remote state comes from the FakeNode
through the transport bridge.
"""

import pytest

from ethconsole.chain.client import LiveClient
from ethconsole.chain.fork import ForkedClient, ForkManager, Mode, _contract_address
from ethconsole.chain.state import to_address_bytes
from ethconsole.rpc.bridge import EXECUTION_ERROR, INVALID_PARAMS, RPCError

from tests.fixtures.addresses import ALICE_ADDRESS, BOB_ADDRESS, TOKEN_ADDRESS
from tests.fixtures.contracts import (
    INCREMENT_SLOT0_BYTECODE,
    NAME_BYTECODE,
    READ_SLOT0_BYTECODE,
    REVERT_BYTECODE,
)


# ===================================================================
# Fork manager state machine
# ===================================================================

class TestForkManager:
    def test_initially_live(self, fork_manager):
        assert fork_manager.mode == Mode.LIVE
        assert not fork_manager.is_forked
        assert isinstance(fork_manager.current_client(), LiveClient)

    def test_fork_switches_backend(self, fork_manager, bridge):
        client = fork_manager.fork()
        assert fork_manager.mode == Mode.FORKED
        assert fork_manager.current_client() is client
        assert fork_manager.session.backing_transport is bridge
        assert fork_manager.session.active

    def test_fork_is_idempotent(self, fork_manager):
        first = fork_manager.fork()
        first_session = fork_manager.session
        second = fork_manager.fork()
        assert fork_manager.current_client() is second
        assert second is not first
        assert not first_session.active
        assert fork_manager.session.client is second

    def test_unfork_from_live_is_noop(self, fork_manager):
        fork_manager.unfork()
        assert fork_manager.mode == Mode.LIVE
        assert fork_manager.session is None

    def test_toggle_repeatedly(self, fork_manager):
        for _ in range(3):
            fork_manager.fork()
            assert fork_manager.is_forked
            fork_manager.unfork()
            assert not fork_manager.is_forked
        assert isinstance(fork_manager.current_client(), LiveClient)

    def test_unfork_makes_no_calls(self, fork_manager, node):
        fork_manager.fork()
        fork_manager.unfork()
        assert node.calls == []


# ===================================================================
# Forked reads
# ===================================================================

class TestForkedReads:
    @pytest.mark.asyncio
    async def test_block_number_pinned(self, fork_manager, node):
        client = fork_manager.fork()
        assert await client.block_number() == 100
        node.block_number = 105
        assert await client.block_number() == 100
        assert client.fork_block_number == 100
        block = await client.get_block("latest")
        assert int(block["number"], 16) == 100

    @pytest.mark.asyncio
    async def test_future_block_unknown(self, fork_manager):
        client = fork_manager.fork()
        assert await client.get_block(101) is None

    @pytest.mark.asyncio
    async def test_chain_id_from_upstream(self, fork_manager):
        client = fork_manager.fork()
        assert await client.chain_id() == 1

    @pytest.mark.asyncio
    async def test_remote_state_fetched_at_fork_block(self, fork_manager, node):
        node.balances[ALICE_ADDRESS] = 10**18
        client = fork_manager.fork()
        assert await client.get_balance(ALICE_ADDRESS) == 10**18
        tags = [params[1] for method, params in node.calls if method == "eth_getBalance"]
        assert tags == ["0x64"]

    @pytest.mark.asyncio
    async def test_remote_state_cached(self, fork_manager, node):
        node.balances[ALICE_ADDRESS] = 5
        client = fork_manager.fork()
        await client.get_balance(ALICE_ADDRESS)
        node.balances[ALICE_ADDRESS] = 6
        assert await client.get_balance(ALICE_ADDRESS) == 5
        assert node.count("eth_getBalance") == 1

    @pytest.mark.asyncio
    async def test_unknown_method_forwarded(self, fork_manager, node):
        node.overrides["net_version"] = lambda params: "1"
        client = fork_manager.fork()
        assert await client.request("net_version", []) == "1"

    @pytest.mark.asyncio
    async def test_non_list_params_rejected(self, fork_manager):
        client = fork_manager.fork()
        with pytest.raises(RPCError) as exc_info:
            await client.request("eth_getBalance", {"address": ALICE_ADDRESS})
        assert exc_info.value.code == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_wrong_arity_rejected(self, fork_manager):
        client = fork_manager.fork()
        with pytest.raises(RPCError) as exc_info:
            await client.request("eth_getBalance", [])
        assert exc_info.value.code == INVALID_PARAMS


# ===================================================================
# Local mutations
# ===================================================================

class TestForkMutations:
    @pytest.mark.asyncio
    async def test_set_balance_visible_only_on_fork(self, fork_manager, node):
        node.balances[ALICE_ADDRESS] = 1
        client = fork_manager.fork()
        await client.request("anvil_setBalance", [ALICE_ADDRESS, hex(42)])
        assert await client.get_balance(ALICE_ADDRESS) == 42

        fork_manager.unfork()
        assert await fork_manager.current_client().get_balance(ALICE_ADDRESS) == 1

    @pytest.mark.asyncio
    async def test_set_storage_and_code(self, fork_manager):
        client = fork_manager.fork()
        await client.request("anvil_setCode", [TOKEN_ADDRESS, "0x" + READ_SLOT0_BYTECODE.hex()])
        await client.request("anvil_setStorageAt", [TOKEN_ADDRESS, "0x0", "0x" + "00" * 31 + "07"])
        assert await client.get_code(TOKEN_ADDRESS) == READ_SLOT0_BYTECODE
        assert int.from_bytes(await client.get_storage_at(TOKEN_ADDRESS, 0), "big") == 7

    @pytest.mark.asyncio
    async def test_set_nonce(self, fork_manager):
        client = fork_manager.fork()
        await client.request("anvil_setNonce", [ALICE_ADDRESS, "0x9"])
        assert await client.get_transaction_count(ALICE_ADDRESS) == 9

    @pytest.mark.asyncio
    async def test_refork_discards_overlay(self, fork_manager):
        client = fork_manager.fork()
        client.set_balance(ALICE_ADDRESS, 99)
        fresh = fork_manager.fork()
        assert await fresh.get_balance(ALICE_ADDRESS) == 0


# ===================================================================
# Execution on py-evm
# ===================================================================

class TestForkExecution:
    @pytest.mark.asyncio
    async def test_call_runs_remote_code(self, fork_manager, node):
        node.codes[TOKEN_ADDRESS] = NAME_BYTECODE
        client = fork_manager.fork()
        out = await client.call({"to": TOKEN_ADDRESS, "data": "0x06fdde03"})
        assert out[64:64 + 13] == b"Wrapped Ether"

    @pytest.mark.asyncio
    async def test_call_fetches_storage_lazily(self, fork_manager, node):
        node.codes[TOKEN_ADDRESS] = READ_SLOT0_BYTECODE
        node.storage[(TOKEN_ADDRESS, 0)] = 1234
        client = fork_manager.fork()
        out = await client.call({"to": TOKEN_ADDRESS})
        assert int.from_bytes(out, "big") == 1234
        assert node.count("eth_getStorageAt") == 1

    @pytest.mark.asyncio
    async def test_call_sees_overlay_storage(self, fork_manager, node):
        node.codes[TOKEN_ADDRESS] = READ_SLOT0_BYTECODE
        node.storage[(TOKEN_ADDRESS, 0)] = 1
        client = fork_manager.fork()
        client.set_storage_at(TOKEN_ADDRESS, 0, 77)
        out = await client.call({"to": TOKEN_ADDRESS})
        assert int.from_bytes(out, "big") == 77

    @pytest.mark.asyncio
    async def test_revert_raises_execution_error(self, fork_manager, node):
        node.codes[TOKEN_ADDRESS] = REVERT_BYTECODE
        client = fork_manager.fork()
        with pytest.raises(RPCError) as exc_info:
            await client.call({"to": TOKEN_ADDRESS})
        assert exc_info.value.code == EXECUTION_ERROR
        assert exc_info.value.message == "execution reverted"
        assert exc_info.value.data == "0xaa"

    @pytest.mark.asyncio
    async def test_send_transaction_commits_storage(self, fork_manager, node):
        node.codes[TOKEN_ADDRESS] = INCREMENT_SLOT0_BYTECODE
        node.storage[(TOKEN_ADDRESS, 0)] = 10
        client = fork_manager.fork()

        tx_hash = await client.request("eth_sendTransaction", [{"from": ALICE_ADDRESS, "to": TOKEN_ADDRESS}])
        assert int.from_bytes(await client.get_storage_at(TOKEN_ADDRESS, 0), "big") == 11
        await client.request("eth_sendTransaction", [{"from": ALICE_ADDRESS, "to": TOKEN_ADDRESS}])
        assert int.from_bytes(await client.get_storage_at(TOKEN_ADDRESS, 0), "big") == 12

        receipt = await client.request("eth_getTransactionReceipt", [tx_hash])
        assert receipt["status"] == "0x1"
        assert receipt["to"] == TOKEN_ADDRESS

        # live chain untouched
        assert node.storage[(TOKEN_ADDRESS, 0)] == 10

    @pytest.mark.asyncio
    async def test_send_bumps_sender_nonce(self, fork_manager, node):
        node.nonces[ALICE_ADDRESS] = 3
        client = fork_manager.fork()
        await client.request("eth_sendTransaction", [{"from": ALICE_ADDRESS, "to": BOB_ADDRESS}])
        assert await client.get_transaction_count(ALICE_ADDRESS) == 4

    @pytest.mark.asyncio
    async def test_value_transfer(self, fork_manager, node):
        node.balances[ALICE_ADDRESS] = 1000
        client = fork_manager.fork()
        await client.request(
            "eth_sendTransaction", [{"from": ALICE_ADDRESS, "to": BOB_ADDRESS, "value": hex(300)}]
        )
        assert await client.get_balance(ALICE_ADDRESS) == 700
        assert await client.get_balance(BOB_ADDRESS) == 300

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, fork_manager):
        client = fork_manager.fork()
        with pytest.raises(RPCError):
            await client.request(
                "eth_sendTransaction", [{"from": ALICE_ADDRESS, "to": BOB_ADDRESS, "value": "0x1"}]
            )

    @pytest.mark.asyncio
    async def test_contract_creation(self, fork_manager):
        client = fork_manager.fork()
        # init code returning NAME_BYTECODE as runtime
        runtime = NAME_BYTECODE
        init = bytes.fromhex(
            "61" + len(runtime).to_bytes(2, "big").hex() +   # PUSH2 len
            "80" +                                            # DUP1
            "600c" +                                          # PUSH1 12 (init length)
            "6000" +                                          # PUSH1 0
            "39" +                                            # CODECOPY
            "6000" +                                          # PUSH1 0
            "f3"                                              # RETURN
        ) + runtime
        tx_hash = await client.request(
            "eth_sendTransaction", [{"from": ALICE_ADDRESS, "data": "0x" + init.hex()}]
        )
        receipt = await client.request("eth_getTransactionReceipt", [tx_hash])
        expected = "0x" + _contract_address(to_address_bytes(ALICE_ADDRESS), 0).hex()
        assert receipt["contractAddress"] == expected
        assert await client.get_code(expected) == runtime

    @pytest.mark.asyncio
    async def test_estimate_gas(self, fork_manager, node):
        node.codes[TOKEN_ADDRESS] = INCREMENT_SLOT0_BYTECODE
        client = fork_manager.fork()
        gas = int(await client.request("eth_estimateGas", [{"from": ALICE_ADDRESS, "to": TOKEN_ADDRESS}]), 16)
        assert gas > 21_000

    @pytest.mark.asyncio
    async def test_historical_call_forwarded(self, fork_manager, node):
        node.call_results[(TOKEN_ADDRESS, "0x")] = "0x01"
        client = fork_manager.fork()
        out = await client.request("eth_call", [{"to": TOKEN_ADDRESS, "data": "0x"}, "0x10"])
        assert out == "0x01"


class TestForkedClientStandalone:
    @pytest.mark.asyncio
    async def test_ready_once(self, bridge, node):
        client = ForkedClient(bridge)
        await client.block_number()
        await client.block_number()
        assert node.count("eth_blockNumber") == 1
