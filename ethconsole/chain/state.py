"""
State plumbing for the forked backend.

- RemoteStateCache: lazily fetched account/storage values pinned to the fork
  block, read through the transport bridge.
- StateOverlay: local mutations; always wins over remote state.
- AccessRecorder + recording_account_db_class: a py-evm AccountDB that notes
  every read of state the fork has not fetched yet, and every write, so an
  execution can be re-run after the misses are filled in.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

from eth.db.account import AccountDB
from eth_utils import to_canonical_address

from ethconsole.rpc.bridge import TransportBridge, bytes_to_hex, hex_to_bytes, hex_to_int, int_to_hex

logger = logging.getLogger(__name__)


@dataclass
class AccountSnapshot:
    balance: int = 0
    nonce: int = 0
    code: bytes = b""


def to_address_bytes(address: str | bytes) -> bytes:
    if isinstance(address, bytes):
        return address
    return to_canonical_address(address)


class RemoteStateCache:
    """Account and storage values of the live chain at ``block_number``."""

    def __init__(self, bridge: TransportBridge, block_number: int) -> None:
        self.bridge = bridge
        self.block_number = block_number
        self.accounts: dict[bytes, AccountSnapshot] = {}
        self.storage: dict[tuple[bytes, int], int] = {}

    @property
    def block_tag(self) -> str:
        return int_to_hex(self.block_number)

    def has_account(self, address: bytes) -> bool:
        return address in self.accounts

    def has_slot(self, address: bytes, slot: int) -> bool:
        return (address, slot) in self.storage

    async def account(self, address: bytes) -> AccountSnapshot:
        cached = self.accounts.get(address)
        if cached is not None:
            return cached
        hex_addr = bytes_to_hex(address)
        balance, nonce, code = await asyncio.gather(
            self.bridge.send("eth_getBalance", [hex_addr, self.block_tag]),
            self.bridge.send("eth_getTransactionCount", [hex_addr, self.block_tag]),
            self.bridge.send("eth_getCode", [hex_addr, self.block_tag]),
        )
        snapshot = AccountSnapshot(
            balance=hex_to_int(balance),
            nonce=hex_to_int(nonce),
            code=hex_to_bytes(code),
        )
        self.accounts[address] = snapshot
        return snapshot

    async def slot(self, address: bytes, slot: int) -> int:
        key = (address, slot)
        if key in self.storage:
            return self.storage[key]
        raw = await self.bridge.send(
            "eth_getStorageAt", [bytes_to_hex(address), int_to_hex(slot), self.block_tag]
        )
        value = int.from_bytes(hex_to_bytes(raw), "big")
        self.storage[key] = value
        return value

    async def prefetch(
        self,
        addresses: Iterable[bytes] = (),
        slots: Iterable[tuple[bytes, int]] = (),
    ) -> None:
        addresses = [a for a in set(addresses) if a not in self.accounts]
        slots = [s for s in set(slots) if s not in self.storage]
        if addresses or slots:
            logger.debug("Fetching %d accounts and %d slots from fork block %d",
                         len(addresses), len(slots), self.block_number)
        await asyncio.gather(
            *(self.account(a) for a in addresses),
            *(self.slot(a, s) for a, s in slots),
        )


@dataclass
class StateOverlay:
    balances: dict[bytes, int] = field(default_factory=dict)
    nonces: dict[bytes, int] = field(default_factory=dict)
    codes: dict[bytes, bytes] = field(default_factory=dict)
    storage: dict[tuple[bytes, int], int] = field(default_factory=dict)


class AccessRecorder:
    """Collects state accesses of one execution against the fork."""

    def __init__(self, cache: RemoteStateCache) -> None:
        self.cache = cache
        self.recording = False
        self.missing_accounts: set[bytes] = set()
        self.missing_slots: set[tuple[bytes, int]] = set()
        self.written_accounts: set[bytes] = set()
        self.written_slots: set[tuple[bytes, int]] = set()

    def reset(self) -> None:
        self.recording = False
        self.missing_accounts.clear()
        self.missing_slots.clear()
        self.written_accounts.clear()
        self.written_slots.clear()

    @property
    def complete(self) -> bool:
        return not self.missing_accounts and not self.missing_slots

    def read_account(self, address: bytes) -> None:
        if self.recording and not self.cache.has_account(address):
            self.missing_accounts.add(address)

    def read_slot(self, address: bytes, slot: int) -> None:
        if not self.recording:
            return
        key = (address, slot)
        if key in self.written_slots or self.cache.has_slot(address, slot):
            return
        self.missing_slots.add(key)

    def write_account(self, address: bytes) -> None:
        if self.recording:
            self.written_accounts.add(address)

    def write_slot(self, address: bytes, slot: int) -> None:
        if self.recording:
            self.written_slots.add((address, slot))
            self.written_accounts.add(address)


def recording_account_db_class(recorder: AccessRecorder) -> type[AccountDB]:
    """Build an AccountDB subclass bound to ``recorder``."""

    class RecordingAccountDB(AccountDB):
        def get_balance(self, address):
            recorder.read_account(address)
            return super().get_balance(address)

        def get_nonce(self, address):
            recorder.read_account(address)
            return super().get_nonce(address)

        def get_code(self, address):
            recorder.read_account(address)
            return super().get_code(address)

        def get_code_hash(self, address):
            recorder.read_account(address)
            return super().get_code_hash(address)

        def account_exists(self, address):
            recorder.read_account(address)
            return super().account_exists(address)

        def account_is_empty(self, address):
            recorder.read_account(address)
            return super().account_is_empty(address)

        def get_storage(self, address, slot, from_journal=True):
            recorder.read_slot(address, slot)
            return super().get_storage(address, slot, from_journal)

        def set_balance(self, address, balance):
            recorder.write_account(address)
            super().set_balance(address, balance)

        def set_nonce(self, address, nonce):
            recorder.write_account(address)
            super().set_nonce(address, nonce)

        def set_code(self, address, code):
            recorder.write_account(address)
            super().set_code(address, code)

        def set_storage(self, address, slot, value):
            recorder.write_slot(address, slot)
            super().set_storage(address, slot, value)

    return RecordingAccountDB
