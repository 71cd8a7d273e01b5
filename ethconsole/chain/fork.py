"""
Fork manager and the in-memory forked backend.

The forked backend pins the live chain at the block current when it is first
used, fetches remote state lazily through the transport bridge, keeps local
mutations in an overlay, and executes calls on py-evm.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import rlp
from eth import constants
from eth.chains.base import MiningChain
from eth.consensus.noproof import NoProofConsensus
from eth.db.atomic import AtomicDB
from eth.db.backends.memory import MemoryDB
from eth.exceptions import Revert
from eth.vm.forks.prague import PragueVM

from ethconsole.chain.client import ChainClient, LiveClient
from ethconsole.chain.state import (
    AccessRecorder,
    RemoteStateCache,
    StateOverlay,
    recording_account_db_class,
    to_address_bytes,
)
from ethconsole.common.crypto import keccak256
from ethconsole.rpc.bridge import (
    EXECUTION_ERROR,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    RPCError,
    TransportBridge,
    bytes_to_hex,
    hex_to_bytes,
    hex_to_int,
    int_to_hex,
)

logger = logging.getLogger(__name__)


MAX_EXECUTION_ROUNDS = 16
DEFAULT_CALL_GAS = 30_000_000
DEFAULT_BLOCK_GAS_LIMIT = 30_000_000
TX_BASE_GAS = 21_000
LOCAL_TAGS = ("latest", "pending", "safe", "finalized")


def _contract_address(sender: bytes, nonce: int) -> bytes:
    return keccak256(rlp.encode([sender, nonce]))[12:]


class ForkedClient(ChainClient):
    """In-memory execution context seeded from the live chain."""

    mode = "forked"

    def __init__(self, bridge: TransportBridge) -> None:
        self.bridge = bridge
        self.overlay = StateOverlay()
        self.receipts: dict[str, dict] = {}
        self.cache: Optional[RemoteStateCache] = None
        self._recorder: Optional[AccessRecorder] = None
        self._chain: Optional[MiningChain] = None
        self._chain_id: Optional[int] = None
        self._fork_block: Optional[dict] = None
        self._ready_lock = asyncio.Lock()
        self._handlers: dict[str, Callable] = {
            "eth_chainId": self._eth_chain_id,
            "eth_blockNumber": self._eth_block_number,
            "eth_getBlockByNumber": self._eth_get_block_by_number,
            "eth_getBalance": self._eth_get_balance,
            "eth_getTransactionCount": self._eth_get_transaction_count,
            "eth_getCode": self._eth_get_code,
            "eth_getStorageAt": self._eth_get_storage_at,
            "eth_call": self._eth_call,
            "eth_estimateGas": self._eth_estimate_gas,
            "eth_sendTransaction": self._eth_send_transaction,
            "eth_getTransactionReceipt": self._eth_get_transaction_receipt,
            "anvil_setBalance": self._anvil_set_balance,
            "anvil_setNonce": self._anvil_set_nonce,
            "anvil_setCode": self._anvil_set_code,
            "anvil_setStorageAt": self._anvil_set_storage_at,
        }

    @property
    def fork_block_number(self) -> Optional[int]:
        return self.cache.block_number if self.cache is not None else None

    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        handler = self._handlers.get(method)
        if handler is None:
            return await self.bridge.send(method, params)
        if params is not None and not isinstance(params, (list, tuple)):
            raise RPCError(INVALID_PARAMS, "Positional params expected")
        params = list(params or [])
        await self._ensure_ready()
        try:
            return await handler(*params)
        except TypeError as e:
            raise RPCError(INVALID_PARAMS, str(e)) from e

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def _ensure_ready(self) -> None:
        if self.cache is not None:
            return
        async with self._ready_lock:
            if self.cache is not None:
                return
            chain_id = hex_to_int(await self.bridge.send("eth_chainId", []))
            number = hex_to_int(await self.bridge.send("eth_blockNumber", []))
            block = await self.bridge.send("eth_getBlockByNumber", [int_to_hex(number), False])

            cache = RemoteStateCache(self.bridge, number)
            self._recorder = AccessRecorder(cache)
            self._chain_id = chain_id
            self._chain = self._build_chain(chain_id, block or {})
            self._fork_block = block
            self.cache = cache
            logger.info("Forked chain %d at block %d", chain_id, number)

    def _build_chain(self, chain_id: int, block: dict) -> MiningChain:
        account_db_class = recording_account_db_class(self._recorder)
        state_class = PragueVM.get_state_class().configure(account_db_class=account_db_class)
        ForkVM = PragueVM.configure(consensus_class=NoProofConsensus, _state_class=state_class)

        chain_class = MiningChain.configure(
            __name__="ForkChain",
            vm_configuration=((constants.GENESIS_BLOCK_NUMBER, ForkVM),),
            chain_id=chain_id,
        )
        genesis_params = {
            "difficulty": 0,
            "gas_limit": hex_to_int(block.get("gasLimit", int_to_hex(DEFAULT_BLOCK_GAS_LIMIT))),
            "timestamp": hex_to_int(block.get("timestamp", "0x0")),
            "coinbase": hex_to_bytes(block.get("miner", "0x" + "00" * 20)),
        }
        return chain_class.from_genesis(AtomicDB(MemoryDB()), genesis_params, {})

    # ------------------------------------------------------------------
    # Local state view
    # ------------------------------------------------------------------

    def _is_local(self, tag: Any) -> bool:
        if tag is None or tag in LOCAL_TAGS:
            return True
        if tag == "earliest":
            return False
        if isinstance(tag, dict):
            return False
        return hex_to_int(tag) >= self.cache.block_number

    async def _balance(self, address: bytes) -> int:
        if address in self.overlay.balances:
            return self.overlay.balances[address]
        return (await self.cache.account(address)).balance

    async def _nonce(self, address: bytes) -> int:
        if address in self.overlay.nonces:
            return self.overlay.nonces[address]
        return (await self.cache.account(address)).nonce

    async def _code(self, address: bytes) -> bytes:
        if address in self.overlay.codes:
            return self.overlay.codes[address]
        return (await self.cache.account(address)).code

    async def _storage(self, address: bytes, slot: int) -> int:
        key = (address, slot)
        if key in self.overlay.storage:
            return self.overlay.storage[key]
        return await self.cache.slot(address, slot)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_balance(self, address: str, balance: int) -> None:
        self.overlay.balances[to_address_bytes(address)] = balance

    def set_nonce(self, address: str, nonce: int) -> None:
        self.overlay.nonces[to_address_bytes(address)] = nonce

    def set_code(self, address: str, code: bytes) -> None:
        self.overlay.codes[to_address_bytes(address)] = code

    def set_storage_at(self, address: str, slot: int, value: int) -> None:
        self.overlay.storage[(to_address_bytes(address), slot)] = value

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _seed(self, state) -> None:
        for address, snapshot in self.cache.accounts.items():
            state.set_balance(address, snapshot.balance)
            state.set_nonce(address, snapshot.nonce)
            if snapshot.code:
                state.set_code(address, snapshot.code)
        for (address, slot), value in self.cache.storage.items():
            if value:
                state.set_storage(address, slot, value)
        for address, balance in self.overlay.balances.items():
            state.set_balance(address, balance)
        for address, nonce in self.overlay.nonces.items():
            state.set_nonce(address, nonce)
        for address, code in self.overlay.codes.items():
            state.set_code(address, code)
        for (address, slot), value in self.overlay.storage.items():
            state.set_storage(address, slot, value)

    def _run(
        self,
        sender: bytes,
        target: bytes,
        value: int,
        data: bytes,
        gas: int,
        create: bool,
        commit: bool,
    ):
        recorder = self._recorder
        recorder.reset()
        vm = self._chain.get_vm()
        state = vm.state
        self._seed(state)

        recorder.recording = True
        try:
            if value:
                if state.get_balance(sender) < value:
                    raise RPCError(-32000, "insufficient funds for transfer")
                state.delta_balance(sender, -value)
                state.delta_balance(target, value)
            if commit:
                state.increment_nonce(sender)
            code = data if create else state.get_code(target)
            computation = vm.execute_bytecode(
                origin=sender,
                gas_price=0,
                gas=gas,
                to=target,
                sender=sender,
                value=value,
                data=b"" if create else data,
                code=code,
            )
            if create and not computation.is_error:
                state.set_code(target, computation.output)
        finally:
            recorder.recording = False
        return vm, computation

    async def _execute(self, tx: dict, commit: bool = False):
        if not isinstance(tx, dict):
            raise RPCError(INVALID_PARAMS, "Transaction object expected")
        sender = to_address_bytes(tx.get("from") or "0x" + "00" * 20)
        to = to_address_bytes(tx["to"]) if tx.get("to") else None
        value = hex_to_int(tx.get("value", "0x0"))
        data = hex_to_bytes(tx.get("data") or tx.get("input") or "0x")
        gas = hex_to_int(tx.get("gas", int_to_hex(DEFAULT_CALL_GAS)))

        await self.cache.prefetch([sender] + ([to] if to else []))
        create = to is None
        target = _contract_address(sender, await self._nonce(sender)) if create else to

        for _ in range(MAX_EXECUTION_ROUNDS):
            vm, computation = self._run(sender, target, value, data, gas, create, commit)
            if self._recorder.complete:
                return vm, computation, target
            await self.cache.prefetch(
                list(self._recorder.missing_accounts),
                list(self._recorder.missing_slots),
            )
        raise RPCError(INTERNAL_ERROR, "Fork state did not settle within execution round limit")

    def _commit(self, state) -> None:
        recorder = self._recorder
        for address in recorder.written_accounts:
            self.overlay.balances[address] = state.get_balance(address)
            self.overlay.nonces[address] = state.get_nonce(address)
            self.overlay.codes[address] = state.get_code(address)
        for address, slot in recorder.written_slots:
            self.overlay.storage[(address, slot)] = state.get_storage(address, slot)

    @staticmethod
    def _raise_for_error(computation) -> None:
        if not computation.is_error:
            return
        if isinstance(computation.error, Revert):
            raise RPCError(EXECUTION_ERROR, "execution reverted", bytes_to_hex(computation.output))
        raise RPCError(-32000, str(computation.error) or type(computation.error).__name__)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _eth_chain_id(self) -> str:
        return int_to_hex(self._chain_id)

    async def _eth_block_number(self) -> str:
        return int_to_hex(self.cache.block_number)

    async def _eth_get_block_by_number(self, tag: str = "latest", full: bool = False) -> Optional[dict]:
        if tag in LOCAL_TAGS or (tag != "earliest" and hex_to_int(tag) == self.cache.block_number):
            if full:
                return await self.bridge.send("eth_getBlockByNumber", [self.cache.block_tag, True])
            return self._fork_block
        if tag != "earliest" and hex_to_int(tag) > self.cache.block_number:
            return None
        return await self.bridge.send("eth_getBlockByNumber", [tag, full])

    async def _eth_get_balance(self, address: str, tag: str = "latest") -> str:
        if not self._is_local(tag):
            return await self.bridge.send("eth_getBalance", [address, tag])
        return int_to_hex(await self._balance(to_address_bytes(address)))

    async def _eth_get_transaction_count(self, address: str, tag: str = "latest") -> str:
        if not self._is_local(tag):
            return await self.bridge.send("eth_getTransactionCount", [address, tag])
        return int_to_hex(await self._nonce(to_address_bytes(address)))

    async def _eth_get_code(self, address: str, tag: str = "latest") -> str:
        if not self._is_local(tag):
            return await self.bridge.send("eth_getCode", [address, tag])
        return bytes_to_hex(await self._code(to_address_bytes(address)))

    async def _eth_get_storage_at(self, address: str, slot: str, tag: str = "latest") -> str:
        if not self._is_local(tag):
            return await self.bridge.send("eth_getStorageAt", [address, slot, tag])
        value = await self._storage(to_address_bytes(address), hex_to_int(slot))
        return bytes_to_hex(value.to_bytes(32, "big"))

    async def _eth_call(self, tx: dict, tag: str = "latest") -> str:
        if not self._is_local(tag):
            return await self.bridge.send("eth_call", [tx, tag])
        _, computation, _ = await self._execute(tx)
        self._raise_for_error(computation)
        return bytes_to_hex(computation.output)

    async def _eth_estimate_gas(self, tx: dict, tag: str = "latest") -> str:
        _, computation, _ = await self._execute(tx)
        self._raise_for_error(computation)
        return int_to_hex(computation.get_gas_used() + TX_BASE_GAS)

    async def _eth_send_transaction(self, tx: dict) -> str:
        vm, computation, target = await self._execute(tx, commit=True)
        self._raise_for_error(computation)
        self._commit(vm.state)

        sender = to_address_bytes(tx.get("from") or "0x" + "00" * 20)
        nonce = self.overlay.nonces.get(sender, 0)
        tx_hash = bytes_to_hex(keccak256(
            rlp.encode([sender, nonce, target, hex_to_bytes(tx.get("data") or tx.get("input") or "0x")])
        ))
        created = not tx.get("to")
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "blockNumber": int_to_hex(self.cache.block_number),
            "from": bytes_to_hex(sender),
            "to": None if created else bytes_to_hex(target),
            "contractAddress": bytes_to_hex(target) if created else None,
            "gasUsed": int_to_hex(computation.get_gas_used() + TX_BASE_GAS),
            "status": "0x1",
            "logs": [
                {
                    "address": bytes_to_hex(address),
                    "topics": [bytes_to_hex(t.to_bytes(32, "big")) for t in topics],
                    "data": bytes_to_hex(log_data),
                }
                for address, topics, log_data in computation.get_log_entries()
            ],
        }
        logger.info("Simulated transaction %s on fork", tx_hash)
        return tx_hash

    async def _eth_get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        if tx_hash in self.receipts:
            return self.receipts[tx_hash]
        return await self.bridge.send("eth_getTransactionReceipt", [tx_hash])

    async def _anvil_set_balance(self, address: str, balance: str) -> bool:
        self.set_balance(address, hex_to_int(balance))
        return True

    async def _anvil_set_nonce(self, address: str, nonce: str) -> bool:
        self.set_nonce(address, hex_to_int(nonce))
        return True

    async def _anvil_set_code(self, address: str, code: str) -> bool:
        self.set_code(address, hex_to_bytes(code))
        return True

    async def _anvil_set_storage_at(self, address: str, slot: str, value: str) -> bool:
        self.set_storage_at(address, hex_to_int(slot), int.from_bytes(hex_to_bytes(value), "big"))
        return True


# ---------------------------------------------------------------------------
# Fork manager
# ---------------------------------------------------------------------------

class Mode(str, Enum):
    LIVE = "live"
    FORKED = "forked"


@dataclass
class ForkSession:
    backing_transport: TransportBridge
    client: ForkedClient
    active: bool = True


class ForkManager:
    """Owns the live/forked mode and hands out the active backend."""

    def __init__(self, bridge: TransportBridge) -> None:
        self.bridge = bridge
        self._live = LiveClient(bridge)
        self._session: Optional[ForkSession] = None

    @property
    def session(self) -> Optional[ForkSession]:
        return self._session

    @property
    def mode(self) -> Mode:
        return Mode.FORKED if self._session is not None else Mode.LIVE

    @property
    def is_forked(self) -> bool:
        return self._session is not None

    def fork(self) -> ForkedClient:
        if self._session is not None:
            self._session.active = False
            logger.info("Replacing existing fork session")
        client = ForkedClient(self.bridge)
        self._session = ForkSession(backing_transport=self.bridge, client=client)
        logger.info("Switched to forked mode")
        return client

    def unfork(self) -> None:
        if self._session is None:
            return
        self._session.active = False
        self._session = None
        logger.info("Switched to live mode")

    def current_client(self) -> ChainClient:
        if self._session is not None:
            return self._session.client
        return self._live
