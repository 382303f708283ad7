"""Dynamic single assignment renaming.

Every assignment gets a fresh variable so that the let-bound formula
never shadows a binding. Reads are redirected to the most recent
assignment of the same original variable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .il import ExpTransformer, Let, Move, Stmt, Var, is_mem_type, map_stmt_exps

LOGGER = logging.getLogger(__name__)

TEMP_PREFIX = "T_"
SYMBOLIC_PREFIX = "symb_"


def is_mem(var: Var) -> bool:
    """The trace memory is mutated functionally and never renamed."""
    return var.name.startswith("mem") and is_mem_type(var.typ)


def is_temp(name: str) -> bool:
    return len(name) > 2 and name.startswith(TEMP_PREFIX)


def is_symbolic(var: Var) -> bool:
    return var.name.startswith(SYMBOLIC_PREFIX)


def clean_delta(delta: Dict[Var, object]) -> None:
    """Drop lifter temporaries from an evaluation context."""
    for var in [var for var in delta if is_temp(var.name)]:
        del delta[var]


@dataclass
class DsaMap:
    forward: Dict[Var, Var] = field(default_factory=dict)
    reverse: Dict[Var, Var] = field(default_factory=dict)
    counter: int = 0

    def fresh(self, var: Var) -> Var:
        if is_mem(var):
            return var
        self.counter += 1
        return Var.new(f"{var.name}dsa{self.counter}", var.typ)

    def define(self, var: Var) -> Var:
        new = self.fresh(var)
        self.forward[var] = new
        self.reverse[new] = var
        return new

    def undefine(self, var: Var) -> None:
        self.forward.pop(var, None)

    def use(self, var: Var) -> Var:
        try:
            return self.forward[var]
        except KeyError:
            LOGGER.debug("no assignment seen for %s, treating it as an input", var.name)
            return self.define(var)

    def original(self, var: Var) -> Optional[Var]:
        return self.reverse.get(var)


class _Renamer(ExpTransformer):
    def __init__(self, dsa: DsaMap):
        self.dsa = dsa

    def visit_Var(self, var: Var) -> Var:
        return self.dsa.use(var)

    def visit_Let(self, exp: Let) -> Let:
        e1 = self.visit(exp.e1)
        var = self.dsa.define(exp.var)
        e2 = self.visit(exp.e2)
        self.dsa.undefine(exp.var)
        return Let(var, e1, e2)


def rename_stmt(stmt: Stmt, dsa: DsaMap) -> Stmt:
    renamer = _Renamer(dsa)
    if isinstance(stmt, Move):
        exp = renamer.visit(stmt.exp)
        return Move(dsa.define(stmt.var), exp, stmt.attrs)
    return map_stmt_exps(stmt, renamer.visit)


def rename_program(program: Iterable[Stmt],
                   dsa: Optional[DsaMap] = None) -> Tuple[List[Stmt], DsaMap]:
    if dsa is None:
        dsa = DsaMap()
    return [rename_stmt(stmt, dsa) for stmt in program], dsa
