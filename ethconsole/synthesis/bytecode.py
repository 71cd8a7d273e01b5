"""
Bounded static analysis of deployed EVM bytecode.

Recovers a partial ABI when no verified source exists:
  - function selectors from the dispatcher (PUSH4 <sel> compared and jumped on)
  - event topics (PUSH32 values that reach a LOG1..LOG4)
  - a payable hint per selector (no CALLVALUE guard in the entry block)

The sweep is linear and capped at ``max_instructions``. Jump targets are only
followed when they are a constant pushed right before the jump; dynamic jumps
are skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from ethconsole.common.types import AbiDescriptor, AbiItem


# ---------------------------------------------------------------------------
# Opcodes
# ---------------------------------------------------------------------------

SUB = 0x03
EQ = 0x14
XOR = 0x18
CALLVALUE = 0x34
JUMP = 0x56
JUMPI = 0x57
JUMPDEST = 0x5B
PUSH0 = 0x5F
PUSH1 = 0x60
PUSH4 = 0x63
PUSH32 = 0x7F
LOG1 = 0xA1
LOG4 = 0xA4
DELEGATECALL = 0xF4
STOP = 0x00
RETURN = 0xF3
REVERT = 0xFD
INVALID = 0xFE
SELFDESTRUCT = 0xFF

TERMINATORS = frozenset({STOP, RETURN, REVERT, INVALID, SELFDESTRUCT})
SELECTOR_COMPARES = frozenset({EQ, XOR, SUB})

SELECTOR_WINDOW = 4
EVENT_WINDOW = 48
ENTRY_WINDOW = 16
MAX_TOPIC_ZERO_BYTES = 4


@dataclass(frozen=True)
class Instruction:
    pc: int
    opcode: int
    push_data: bytes = b""

    @property
    def is_push(self) -> bool:
        return PUSH0 <= self.opcode <= PUSH32

    @property
    def push_value(self) -> int:
        return int.from_bytes(self.push_data, "big") if self.push_data else 0


@dataclass
class BytecodeAnalysis:
    selectors: list[str] = field(default_factory=list)
    event_topics: list[str] = field(default_factory=list)
    payable: set[str] = field(default_factory=set)
    push4_values: set[str] = field(default_factory=set)
    has_delegatecall: bool = False
    instruction_count: int = 0
    truncated: bool = False


# ---------------------------------------------------------------------------
# Disassembly
# ---------------------------------------------------------------------------

def strip_metadata(code: bytes) -> bytes:
    """Drop the trailing CBOR metadata blob solc/vyper append, if present."""
    if len(code) < 2:
        return code
    meta_len = int.from_bytes(code[-2:], "big")
    start = len(code) - 2 - meta_len
    if meta_len and start > 0 and code[start] in (0xA1, 0xA2, 0xA3, 0xA4, 0xA5):
        return code[:start]
    return code


def disassemble(code: bytes, max_instructions: int) -> tuple[list[Instruction], bool]:
    """Linear sweep. Returns the instructions and whether the cap was hit."""
    instructions: list[Instruction] = []
    pc = 0
    while pc < len(code):
        if len(instructions) >= max_instructions:
            return instructions, True
        op = code[pc]
        if PUSH1 <= op <= PUSH32:
            size = op - PUSH1 + 1
            data = code[pc + 1:pc + 1 + size]
            instructions.append(Instruction(pc, op, data))
            pc += 1 + size
        else:
            instructions.append(Instruction(pc, op))
            pc += 1
    return instructions, False


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def _looks_like_topic(value: bytes) -> bool:
    if len(value) != 32 or value == b"\xff" * 32:
        return False
    return value.count(0) <= MAX_TOPIC_ZERO_BYTES


def _static_jumpi_target(instructions: list[Instruction], start: int) -> Optional[int]:
    """Target of the first JUMPI within the selector window, if constant."""
    end = min(len(instructions), start + SELECTOR_WINDOW + 2)
    for i in range(start, end):
        if instructions[i].opcode == JUMPI:
            prev = instructions[i - 1]
            if prev.is_push and prev.opcode != PUSH0:
                return prev.push_value
            return None
    return None


def _entry_has_callvalue_guard(
    instructions: list[Instruction],
    index_by_pc: dict[int, int],
    entry_pc: int,
) -> Optional[bool]:
    idx = index_by_pc.get(entry_pc)
    if idx is None or instructions[idx].opcode != JUMPDEST:
        return None
    for inst in instructions[idx + 1:idx + 1 + ENTRY_WINDOW]:
        if inst.opcode == CALLVALUE:
            return True
        if inst.opcode in TERMINATORS or inst.opcode in (JUMP, JUMPI):
            break
    return False


def analyze_bytecode(code: bytes, max_instructions: int = 100_000) -> BytecodeAnalysis:
    instructions, truncated = disassemble(strip_metadata(code), max_instructions)
    index_by_pc = {inst.pc: i for i, inst in enumerate(instructions)}
    result = BytecodeAnalysis(instruction_count=len(instructions), truncated=truncated)

    seen_selectors: set[str] = set()
    seen_topics: set[str] = set()

    for i, inst in enumerate(instructions):
        if inst.opcode == DELEGATECALL:
            result.has_delegatecall = True
            continue

        if inst.opcode == PUSH4 and len(inst.push_data) == 4:
            selector = "0x" + inst.push_data.hex()
            result.push4_values.add(selector)
            if selector in seen_selectors or selector == "0xffffffff":
                continue
            window = instructions[i + 1:i + 1 + SELECTOR_WINDOW]
            if not any(w.opcode in SELECTOR_COMPARES for w in window):
                continue
            target = _static_jumpi_target(instructions, i + 1)
            if target is None:
                continue
            seen_selectors.add(selector)
            result.selectors.append(selector)
            guarded = _entry_has_callvalue_guard(instructions, index_by_pc, target)
            if guarded is False:
                result.payable.add(selector)
            continue

        if inst.opcode == PUSH32 and len(inst.push_data) == 32:
            value = "0x" + inst.push_data.hex()
            if value in seen_topics or not _looks_like_topic(inst.push_data):
                continue
            for follower in instructions[i + 1:i + 1 + EVENT_WINDOW]:
                if LOG1 <= follower.opcode <= LOG4:
                    seen_topics.add(value)
                    result.event_topics.append(value)
                    break
                if follower.opcode in TERMINATORS:
                    break

    return result


# ---------------------------------------------------------------------------
# ABI construction
# ---------------------------------------------------------------------------

def split_signature(signature: str) -> tuple[str, list[str]]:
    """Split ``transfer(address,(uint256,bytes)[])`` into name and arg types."""
    open_idx = signature.find("(")
    if open_idx <= 0 or not signature.endswith(")"):
        raise ValueError(f"Malformed signature: {signature!r}")
    name = signature[:open_idx]
    body = signature[open_idx + 1:-1]
    args: list[str] = []
    depth = 0
    current = ""
    for ch in body:
        if ch == "," and depth == 0:
            args.append(current)
            current = ""
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        current += ch
    if current:
        args.append(current)
    return name, args


def _param(typ: str) -> dict:
    if typ.startswith("("):
        close = typ.rfind(")")
        _, inner = split_signature("t" + typ[:close + 1])
        return {
            "name": "",
            "type": "tuple" + typ[close + 1:],
            "components": [_param(t) for t in inner],
        }
    return {"name": "", "type": typ}


def abi_from_bytecode(
    analysis: BytecodeAnalysis,
    signatures: Optional[dict[str, str]] = None,
) -> AbiDescriptor:
    """Build a (possibly partial) ABI from the analysis.

    ``signatures`` maps selector/topic hex to a text signature; entries that
    cannot be named stay selector-only.
    """
    signatures = signatures or {}
    items: list[AbiItem] = []

    for selector in analysis.selectors:
        mutability = "payable" if selector in analysis.payable else None
        name, inputs = None, ()
        text = signatures.get(selector)
        if text:
            try:
                name, args = split_signature(text)
                inputs = tuple(_param(a) for a in args)
            except ValueError:
                name, inputs = None, ()
        items.append(AbiItem(
            type="function",
            selector=selector,
            name=name,
            inputs=inputs,
            state_mutability=mutability,
        ))

    for topic in analysis.event_topics:
        name, inputs = None, ()
        text = signatures.get(topic)
        if text:
            try:
                name, args = split_signature(text)
                inputs = tuple(dict(_param(a), indexed=False) for a in args)
            except ValueError:
                name, inputs = None, ()
        items.append(AbiItem(type="event", selector=topic, name=name, inputs=inputs))

    return AbiDescriptor(items=tuple(items))
