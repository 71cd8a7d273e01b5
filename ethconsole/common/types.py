"""
Core records: request envelopes, bridged responses, ABI descriptors,
proxy hops and generated surfaces.

Addresses are carried as lowercase ``0x``-prefixed hex strings; selectors and
topics as ``0x`` hex as well.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from eth_utils import is_address, to_checksum_address

from ethconsole.common.crypto import keccak256, function_selector, event_topic


UNKNOWN_CONTRACT = "Unknown Contract"
ZERO_ADDRESS = "0x" + "00" * 20


def normalize_address(value: str) -> str:
    """Validate and lowercase an address string."""
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return value.lower()


def checksum(address: str) -> str:
    return to_checksum_address(address)


# ---------------------------------------------------------------------------
# Transport records
# ---------------------------------------------------------------------------

@dataclass
class RequestEnvelope:
    method: str
    params: Any = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    jsonrpc: str = "2.0"

    def to_dict(self) -> dict:
        return {
            "jsonrpc": self.jsonrpc,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }


@dataclass
class BridgedResponse:
    result: Any = None
    error: Optional[dict] = None
    id: Any = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def from_dict(cls, payload: Any) -> BridgedResponse:
        if not isinstance(payload, dict):
            raise ValueError(f"Malformed response: {payload!r}")
        if payload.get("error") is not None:
            error = payload["error"]
            if not isinstance(error, dict):
                error = {"code": -32603, "message": str(error)}
            return cls(error=error, id=payload.get("id"))
        if "result" in payload:
            return cls(result=payload["result"], id=payload.get("id"))
        raise ValueError("Response carries neither result nor error")


# ---------------------------------------------------------------------------
# ABI
# ---------------------------------------------------------------------------

def canonical_type(param: dict) -> str:
    """Canonical type string of an ABI parameter, expanding tuples."""
    typ = param.get("type", "")
    if typ.startswith("tuple"):
        inner = ",".join(canonical_type(c) for c in param.get("components", []))
        return f"({inner}){typ[len('tuple'):]}"
    return typ


@dataclass(frozen=True)
class AbiItem:
    type: str
    selector: str = ""
    name: Optional[str] = None
    inputs: tuple = ()
    outputs: tuple = ()
    state_mutability: Optional[str] = None
    anonymous: bool = False

    @property
    def signature(self) -> Optional[str]:
        if self.name is None:
            return None
        args = ",".join(canonical_type(p) for p in self.inputs)
        return f"{self.name}({args})"

    @property
    def is_partial(self) -> bool:
        return self.name is None

    def to_json(self) -> dict:
        entry: dict[str, Any] = {"type": self.type}
        if self.name is not None:
            entry["name"] = self.name
        if self.type in ("function", "event", "error", "constructor"):
            entry["inputs"] = [dict(p) for p in self.inputs]
        if self.type == "function":
            entry["outputs"] = [dict(p) for p in self.outputs]
        if self.state_mutability is not None:
            entry["stateMutability"] = self.state_mutability
        if self.type == "event":
            entry["anonymous"] = self.anonymous
        if self.selector:
            entry["selector"] = self.selector
        return entry

    @classmethod
    def from_json(cls, entry: dict) -> AbiItem:
        typ = entry.get("type", "function")
        name = entry.get("name")
        inputs = tuple(entry.get("inputs", []))
        item = cls(
            type=typ,
            name=name,
            inputs=inputs,
            outputs=tuple(entry.get("outputs", [])),
            state_mutability=entry.get("stateMutability"),
            anonymous=bool(entry.get("anonymous", False)),
        )
        selector = entry.get("selector", "")
        if not selector and name is not None:
            sig = item.signature
            if typ in ("function", "error"):
                selector = "0x" + function_selector(sig).hex()
            elif typ == "event":
                selector = "0x" + event_topic(sig).hex()
        return cls(
            type=item.type,
            selector=selector,
            name=item.name,
            inputs=item.inputs,
            outputs=item.outputs,
            state_mutability=item.state_mutability,
            anonymous=item.anonymous,
        )


@dataclass(frozen=True)
class AbiDescriptor:
    """Ordered, immutable collection of ABI items."""

    items: tuple[AbiItem, ...] = ()

    def __iter__(self) -> Iterator[AbiItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __bool__(self) -> bool:
        return bool(self.items)

    def functions(self) -> list[AbiItem]:
        return [i for i in self.items if i.type == "function"]

    def events(self) -> list[AbiItem]:
        return [i for i in self.items if i.type == "event"]

    def by_selector(self, selector: str) -> Optional[AbiItem]:
        selector = selector.lower()
        for item in self.items:
            if item.selector.lower() == selector:
                return item
        return None

    def find_function(self, name: str, arity: Optional[int] = None) -> Optional[AbiItem]:
        for item in self.functions():
            if item.name != name:
                continue
            if arity is not None and len(item.inputs) != arity:
                continue
            return item
        return None

    def to_json(self) -> list[dict]:
        return [item.to_json() for item in self.items]

    def abi_hash(self) -> str:
        blob = json.dumps(self.to_json(), sort_keys=True, separators=(",", ":"))
        return keccak256(blob.encode("utf-8")).hex()

    @classmethod
    def from_json(cls, entries: list[dict]) -> AbiDescriptor:
        return cls(items=tuple(AbiItem.from_json(e) for e in entries))


EMPTY_ABI = AbiDescriptor()


# ---------------------------------------------------------------------------
# Proxies, resolved interfaces, surfaces
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProxyHop:
    address: str
    kind: str
    implementation: Optional[str] = None

    def to_json(self) -> dict:
        return {
            "address": self.address,
            "kind": self.kind,
            "implementation": self.implementation,
        }


@dataclass(frozen=True)
class ResolvedInterface:
    address: str
    abi: AbiDescriptor = EMPTY_ABI
    proxies: tuple[ProxyHop, ...] = ()
    name: str = UNKNOWN_CONTRACT
    source: str = "none"

    @property
    def is_empty(self) -> bool:
        return not self.abi

    def to_json(self) -> dict:
        return {
            "address": self.address,
            "abi": self.abi.to_json(),
            "proxies": [p.to_json() for p in self.proxies],
            "name": self.name,
            "source": self.source,
        }


@dataclass(frozen=True)
class GeneratedSurface:
    address: str
    name: str
    markup: str
