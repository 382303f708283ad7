"""Concrete shadow evaluation policy.

Values recorded in the trace take precedence over what the interpreter
computed, so the concrete run follows the traced execution even where
the lifted semantics are incomplete.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .environment import BAD_REGS, Environment, TracedValue
from .errors import EvaluationError
from .il import Exp, Int, Reg, Var, is_mem_type, reg_8
from .symbeval import (
    ConcreteMem, State, Symbolic, Value, empty_mem, generic_assign, generic_update_mem,
    normalize, symb_to_exp,
)

LOGGER = logging.getLogger(__name__)


class ConcreteShadowPolicy:
    def __init__(self, env: Environment, reverse_map: Optional[Dict[Var, Var]] = None):
        self.env = env
        # Without a DSA pass variables are their own originals.
        self.reverse_map = reverse_map

    def original(self, var: Var) -> Optional[Var]:
        if self.reverse_map is None:
            return var
        return self.reverse_map.get(var)

    def traced(self, var: Var) -> Optional[TracedValue]:
        orig = self.original(var)
        return None if orig is None else self.env.lookup(orig.name)

    def lookup_var(self, delta: Dict[Var, Value], var: Var) -> Value:
        traced = self.traced(var)
        if traced is not None:
            value = Symbolic(traced.expr)
            delta[var] = value
            return value
        try:
            return delta[var]
        except KeyError:
            pass
        if is_mem_type(var.typ):
            return empty_mem(var)
        if var.name not in BAD_REGS:
            LOGGER.warning("Unknown variable during eval: %s", var.name)
        return Symbolic(Int(0, var.typ))

    def lookup_mem(self, mu: Value, index: Exp, endian: Exp) -> Exp:
        if not (isinstance(mu, ConcreteMem) and isinstance(index, Int)):
            raise EvaluationError(
                "Concrete evaluation should never have symbolic memories")
        addr = normalize(index.value, index.typ)
        traced = self.env.lookup(addr)
        if traced is not None:
            return traced.expr
        try:
            return mu.memory[addr]
        except KeyError:
            LOGGER.warning("Unknown memory value during eval: addr %#x", addr)
            return Int(0, reg_8)

    def update_mem(self, mu: Value, pos: Exp, value: Exp, endian: Exp) -> Value:
        if not (isinstance(mu, ConcreteMem) and isinstance(pos, Int)):
            raise EvaluationError("Bad memory for concrete evaluation")
        self.env.remove(normalize(pos.value, pos.typ))
        return generic_update_mem(mu, pos, value, endian)

    def assign(self, var: Var, value: Value, state: State) -> List[State]:
        orig = self.original(var)
        if orig is not None:
            self.env.remove(orig.name)
        return generic_assign(var, value, state)


def _same(expected: Exp, actual: Exp) -> bool:
    if isinstance(expected, Int) and isinstance(actual, Int):
        return expected.value == actual.value
    return expected == actual


def check_delta(state: State, env: Environment,
                reverse_map: Optional[Dict[Var, Var]] = None) -> int:
    """Compare the interpreter context with the values the trace recorded.

    Mismatches are logged, never raised. Returns how many were found.
    """
    mismatches = 0
    for var, value in state.delta.items():
        if isinstance(var.typ, Reg):
            orig = var if reverse_map is None else reverse_map.get(var)
            traced = env.lookup(orig.name) if orig is not None else None
            if traced is None or not traced.tainted or var.name in BAD_REGS:
                continue
            actual = symb_to_exp(value)
            if not _same(traced.expr, actual):
                mismatches += 1
                LOGGER.warning("Difference between evaluated and traced value of tainted %s: "
                               "trace=%s eval=%s", var.name, traced.expr, actual)
            continue
        if not isinstance(value, ConcreteMem):
            raise EvaluationError("Concrete execution only")
        for addr, traced in env.memory.items():
            if not traced.tainted:
                continue
            actual = value.memory.get(addr)
            if actual is None:
                mismatches += 1
                LOGGER.warning("Value at address %#x is missing", addr)
            elif not _same(traced.expr, actual):
                mismatches += 1
                LOGGER.warning("Difference in memory at %#x: trace=%s eval=%s",
                               addr, traced.expr, actual)
    return mismatches
