"""Concrete register/memory values and taint flags recorded in a trace.

An :class:`Environment` is owned by one run and refreshed from the taint
context carried by each instruction's label. Registers are keyed by
name, memory by byte address.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple, Union

from .il import Int, Label, Reg, TaintAttr, Usage, Var, reg_1, reg_8, reg_32, to_val

LOGGER = logging.getLogger(__name__)

ADDRESS_MASK = (1 << 64) - 1

# Sub-register name -> (full register name, bit shift, full register type)
REG_ALIASES: Dict[str, Tuple[str, int, Reg]] = {
    "R_AL": ("R_EAX", 0, reg_32),
    "R_BL": ("R_EBX", 0, reg_32),
    "R_CL": ("R_ECX", 0, reg_32),
    "R_DL": ("R_EDX", 0, reg_32),
    "R_AH": ("R_EAX", 8, reg_32),
    "R_BH": ("R_EBX", 8, reg_32),
    "R_CH": ("R_ECX", 8, reg_32),
    "R_DH": ("R_EDX", 8, reg_32),
    "R_AX": ("R_EAX", 0, reg_32),
    "R_BX": ("R_EBX", 0, reg_32),
    "R_CX": ("R_ECX", 0, reg_32),
    "R_DX": ("R_EDX", 0, reg_32),
    "R_BP": ("R_EBP", 0, reg_32),
    "R_SI": ("R_ESI", 0, reg_32),
    "R_DI": ("R_EDI", 0, reg_32),
    "R_SP": ("R_ESP", 0, reg_32),
}

# Registers the tracer does not report reliably.
BAD_REGS = frozenset({
    "EFLAGS", "R_FS", "R_LDT", "R_GDT", "R_AF",
    "R_CC_OP", "R_CC_DEP1", "R_CC_DEP2", "R_CC_NDEP",
})

EFLAGS_BITS = (
    ("R_AF", 0x10),
    ("R_CF", 0x01),
    ("R_ZF", 0x40),
    ("R_SF", 0x80),
    ("R_OF", 0x800),
    ("R_PF", 0x4),
)
DFLAG_BIT = 0x400
DFLAG_SET = 0xFFFFFFFF

Key = Union[str, int]


def typ_to_bytes(typ: Reg) -> int:
    if typ.bits in (1, 8):
        return 1
    if typ.bits in (16, 32, 64):
        return typ.bits // 8
    raise ValueError(f"unsupported operand type {typ}")


def get_byte(i: int, value: int) -> int:
    """The ``i``-th byte of ``value``, counting from 1 at the low end."""
    return (value >> ((i - 1) * 8)) & 0xFF


def direction_flag(eflags: int) -> int:
    # The tracer reports DF inverted: clear means forward (+1).
    return DFLAG_SET if eflags & DFLAG_BIT else 1


@dataclass
class TracedValue:
    expr: Int
    usage: Usage
    tainted: bool


@dataclass
class MemoryIndices:
    """Byte addresses the current instruction reads and writes."""

    read: Set[int] = field(default_factory=set)
    write: Set[int] = field(default_factory=set)

    def pop_read(self) -> int:
        addr = max(self.read)
        self.read.remove(addr)
        return addr

    def pop_write(self) -> int:
        addr = max(self.write)
        self.write.remove(addr)
        return addr


class Environment:
    def __init__(self):
        self.variables: Dict[str, TracedValue] = {}
        self.memory: Dict[int, TracedValue] = {}
        self.symbolic_seeds: Dict[int, Var] = {}

    def record(self, key: Key, value: Int, usage: Usage, taint: bool) -> None:
        """Record a concrete value.

        Registers are overwritten; a memory byte keeps the first value
        recorded for its address.
        """
        traced = TracedValue(value, usage, taint)
        if isinstance(key, str):
            self.variables[key] = traced
        elif key not in self.memory:
            self.memory[key] = traced

    def lookup(self, key: Key) -> Optional[TracedValue]:
        if isinstance(key, str):
            return self.variables.get(key)
        return self.memory.get(key)

    def remove(self, key: Key) -> None:
        if isinstance(key, str):
            self.variables.pop(key, None)
        else:
            self.memory.pop(key, None)

    def reset_variables_and_memory(self) -> None:
        self.variables.clear()
        self.memory.clear()

    cleanup = reset_variables_and_memory

    def record_seed(self, addr: int, var: Var) -> None:
        self.symbolic_seeds[addr] = var

    def lookup_seed(self, addr: int) -> Optional[Var]:
        return self.symbolic_seeds.get(addr)

    def remove_seed(self, addr: int) -> None:
        self.symbolic_seeds.pop(addr, None)

    def add_eflags(self, eflags: int, usage: Usage, taint: bool) -> None:
        for name, bit in EFLAGS_BITS:
            self.record(name, Int(1 if eflags & bit else 0, reg_1), usage, taint)
        self.record("R_DFLAG", Int(direction_flag(eflags), reg_32), usage, False)

    def add_taint_attr(self, attr: TaintAttr) -> None:
        usage, taint = attr.usage, attr.tainted
        if attr.is_memory:
            for n in range(typ_to_bytes(attr.value_type)):
                addr = (attr.address + n) & ADDRESS_MASK
                self.record(addr, Int(get_byte(n + 1, attr.value), reg_8), usage, taint)
            return
        name, shift, typ = REG_ALIASES.get(attr.name, (attr.name, 0, attr.value_type))
        self.record(name, Int(to_val(typ, attr.value << shift), typ), usage, taint)
        if attr.name == "EFLAGS":
            self.add_eflags(attr.value, usage, taint)

    def update_from_label(self, stmt) -> bool:
        """Apply the taint context of ``stmt`` if it carries one.

        The previous instruction's values are discarded first. Returns
        whether the environment was refreshed.
        """
        if not isinstance(stmt, Label) or not stmt.context:
            return False
        self.cleanup()
        for attr in stmt.context:
            self.add_taint_attr(attr)
        return True

    def memory_indices(self) -> MemoryIndices:
        indices = MemoryIndices()
        for addr, traced in self.memory.items():
            if traced.usage in (Usage.RD, Usage.RW):
                indices.read.add(addr)
            if traced.usage in (Usage.WR, Usage.RW):
                indices.write.add(addr)
        return indices
