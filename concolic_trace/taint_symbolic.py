"""Taint-directed symbolic evaluation policy.

Tainted values stay symbolic, untainted ones collapse to the constants
the trace recorded. Non-temporary assignments are let-bound in the
formula so the formula stays flat instead of growing by substitution.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

from .config import TraceOptions
from .dsa import DsaMap, is_symbolic, is_temp
from .environment import Environment, TracedValue
from .errors import EvaluationError
from .formula import ConstraintKind, LetBindFormula
from .il import BinOp, BinOpType, Exp, Int, Var, is_mem_type
from .symbeval import (
    State, Symbolic, Value, empty_smem, generic_assign, generic_lookup_mem,
    generic_update_mem, next_state, normalize, symb_to_exp,
)

LOGGER = logging.getLogger(__name__)


class TaintSymbolicPolicy:
    def __init__(self, env: Environment, dsa: DsaMap, options: TraceOptions,
                 formula: LetBindFormula):
        self.env = env
        self.dsa = dsa
        self.options = options
        self.formula = formula
        self.let_bound: Set[Var] = set()
        # Cleared for constraints appended after the trace, which may read
        # memory the last instruction never touched.
        self.strict_memory = True

    def traced(self, var: Var) -> Optional[TracedValue]:
        orig = self.dsa.original(var)
        return None if orig is None else self.env.lookup(orig.name)

    def lookup_var(self, delta: Dict[Var, Value], var: Var) -> Value:
        LOGGER.debug("looking up %s", var.name)
        traced = self.traced(var)
        tainted = traced is not None and traced.tainted

        if tainted and self.options.full_symbolic and var not in delta:
            return Symbolic(var)
        if tainted and var in delta:
            return delta[var]
        if is_symbolic(var):
            return Symbolic(var)
        if traced is not None and not tainted:
            delta.pop(var, None)
            # Deferred values are only reachable through a let-binding.
            if self.options.full_symbolic and (self.options.use_alt_assignment
                                               or var in self.let_bound):
                return Symbolic(var)
            return Symbolic(traced.expr)
        try:
            return delta[var]
        except KeyError:
            pass
        if is_mem_type(var.typ):
            return empty_smem(var)
        LOGGER.warning("Variable not found during evaluation: %s", var.name)
        return Symbolic(var)

    def lookup_mem(self, mu: Value, index: Exp, endian: Exp) -> Exp:
        if not isinstance(index, Int):
            LOGGER.debug("symbolic memory index %s", index)
            return generic_lookup_mem(mu, index, endian)
        addr = normalize(index.value, index.typ)
        seed = self.env.lookup_seed(addr)
        if seed is not None:
            return seed
        traced = self.env.lookup(addr)
        if traced is None:
            if not self.strict_memory:
                return generic_lookup_mem(mu, index, endian)
            raise EvaluationError(f"Unable to locate concrete memory operand at {addr:#x}")
        if traced.tainted:
            return generic_lookup_mem(mu, index, endian)
        return traced.expr

    def update_mem(self, mu: Value, pos: Exp, value: Exp, endian: Exp) -> Value:
        if isinstance(pos, Int):
            self.env.remove_seed(normalize(pos.value, pos.typ))
        return generic_update_mem(mu, pos, value, endian)

    def assign(self, var: Var, value: Value, state: State) -> List[State]:
        if not self.options.full_symbolic:
            return generic_assign(var, value, state)
        orig = self.dsa.original(var) or var
        if is_temp(orig.name):
            state.delta[var] = value
            return [next_state(state)]
        expr = symb_to_exp(value)
        LOGGER.debug("let %s = %s", var.name, expr)
        state.delta.pop(var, None)
        self.let_bound.add(var)
        pred = self.formula.add_to_formula(
            state.pred, BinOp(BinOpType.EQ, var, expr), ConstraintKind.RENAME)
        return [next_state(state, pred)]
