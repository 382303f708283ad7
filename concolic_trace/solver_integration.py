"""Translate path predicates to z3, write them as SMT-LIB and solve them."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import z3

from .errors import SolverError
from .il import (
    Array, BinOp, BinOpType, Cast, CastType, Exp, Int, Lab, Let, Load, Reg, Store, TMem,
    UnOp, UnOpType, Unknown, Var, exp_true, reg_1, type_of,
)

LOGGER = logging.getLogger(__name__)

_ONE = z3.BitVecVal(1, 1)
_ZERO = z3.BitVecVal(0, 1)


def _sort(typ) -> z3.SortRef:
    if isinstance(typ, Reg):
        return z3.BitVecSort(typ.bits)
    if isinstance(typ, TMem):
        return z3.ArraySort(z3.BitVecSort(typ.index_type.bits), z3.BitVecSort(8))
    if isinstance(typ, Array):
        return z3.ArraySort(z3.BitVecSort(typ.index_type.bits),
                            z3.BitVecSort(typ.elem_type.bits))
    raise SolverError(f"no solver sort for {typ}")


def _fit(bv: z3.BitVecRef, width: int) -> z3.BitVecRef:
    """Zero-extend or truncate ``bv`` to ``width`` bits."""
    size = bv.size()
    if size == width:
        return bv
    if size < width:
        return z3.ZeroExt(width - size, bv)
    return z3.Extract(width - 1, 0, bv)


def _bit(cond: z3.BoolRef) -> z3.BitVecRef:
    return z3.If(cond, _ONE, _ZERO)


class Z3Translator:
    """Builds z3 terms from IL expressions.

    Let-bound variables are inlined. Bindings live in one flat table,
    which is sound because renamed variables are never rebound; the
    memory variable is rebound and clears the term cache when it is.
    Every free bit-vector variable met on the way, including those only
    mentioned inside a binding, is kept in ``constants``.
    """

    def __init__(self):
        self.bindings: Dict[Var, z3.ExprRef] = {}
        self.constants: Dict[str, z3.BitVecRef] = {}
        self._cache: Dict[int, z3.ExprRef] = {}
        self._unknowns = 0

    def bind(self, var: Var, exp: Exp) -> None:
        self.bindings[var] = self.translate(exp)
        if not isinstance(var.typ, Reg):
            self._cache.clear()

    def formula(self, exp: Exp) -> z3.BoolRef:
        """Translate a let-chained predicate into a z3 boolean.

        The let/and spine is walked iteratively so long traces do not
        hit the recursion limit.
        """
        conjuncts = []
        node = exp
        while True:
            if isinstance(node, Let):
                self.bind(node.var, node.e1)
                node = node.e2
            elif isinstance(node, BinOp) and node.op is BinOpType.AND and type_of(node) == reg_1:
                if node.e1 != exp_true:
                    conjuncts.append(self.translate(node.e1) == _ONE)
                node = node.e2
            else:
                if node != exp_true:
                    conjuncts.append(self.translate(node) == _ONE)
                break
        return z3.And(conjuncts) if conjuncts else z3.BoolVal(True)

    def translate(self, exp: Exp) -> z3.ExprRef:
        if isinstance(exp, Var):
            return self._var(exp)
        key = id(exp)
        try:
            return self._cache[key]
        except KeyError:
            pass
        term = self._translate(exp)
        self._cache[key] = term
        return term

    def _var(self, var: Var) -> z3.ExprRef:
        try:
            return self.bindings[var]
        except KeyError:
            pass
        const = z3.Const(var.name, _sort(var.typ))
        if isinstance(var.typ, Reg):
            self.constants[var.name] = const
        return const

    def _translate(self, exp: Exp) -> z3.ExprRef:
        if isinstance(exp, Int):
            return z3.BitVecVal(exp.value, exp.typ.bits)
        if isinstance(exp, BinOp):
            return self._binop(exp)
        if isinstance(exp, UnOp):
            e = self.translate(exp.e)
            return -e if exp.op is UnOpType.NEG else ~e
        if isinstance(exp, Cast):
            return self._cast(exp)
        if isinstance(exp, Load):
            return self._load(exp)
        if isinstance(exp, Store):
            return self._store(exp)
        if isinstance(exp, Let):
            self.bind(exp.var, exp.e1)
            return self.translate(exp.e2)
        if isinstance(exp, Unknown):
            self._unknowns += 1
            return z3.Const(f"unknown_{self._unknowns}", _sort(exp.typ))
        if isinstance(exp, Lab):
            raise SolverError(f"cannot translate label {exp}")
        raise SolverError(f"cannot translate {exp!r}")

    def _binop(self, exp: BinOp) -> z3.ExprRef:
        a = self.translate(exp.e1)
        b = _fit(self.translate(exp.e2), a.size())
        op = exp.op
        if op is BinOpType.PLUS:
            return a + b
        if op is BinOpType.MINUS:
            return a - b
        if op is BinOpType.TIMES:
            return a * b
        if op is BinOpType.DIVIDE:
            return z3.UDiv(a, b)
        if op is BinOpType.SDIVIDE:
            return a / b
        if op is BinOpType.MOD:
            return z3.URem(a, b)
        if op is BinOpType.SMOD:
            return z3.SRem(a, b)
        if op is BinOpType.LSHIFT:
            return a << b
        if op is BinOpType.RSHIFT:
            return z3.LShR(a, b)
        if op is BinOpType.ARSHIFT:
            return a >> b
        if op is BinOpType.AND:
            return a & b
        if op is BinOpType.OR:
            return a | b
        if op is BinOpType.XOR:
            return a ^ b
        if op is BinOpType.EQ:
            return _bit(a == b)
        if op is BinOpType.NEQ:
            return _bit(a != b)
        if op is BinOpType.LT:
            return _bit(z3.ULT(a, b))
        if op is BinOpType.LE:
            return _bit(z3.ULE(a, b))
        if op is BinOpType.SLT:
            return _bit(a < b)
        if op is BinOpType.SLE:
            return _bit(a <= b)
        raise SolverError(f"unsupported operator {op}")

    def _cast(self, exp: Cast) -> z3.ExprRef:
        e = self.translate(exp.e)
        old, new = e.size(), exp.typ.bits
        if exp.kind is CastType.HIGH:
            return z3.Extract(old - 1, old - new, e) if new < old else _fit(e, new)
        if exp.kind is CastType.SIGNED and new > old:
            return z3.SignExt(new - old, e)
        return _fit(e, new)

    def _index(self, mem: z3.ArrayRef, index: Exp) -> z3.BitVecRef:
        return _fit(self.translate(index), mem.domain().size())

    def _load(self, exp: Load) -> z3.ExprRef:
        mem = self.translate(exp.mem)
        index = self._index(mem, exp.index)
        nbytes = max(exp.typ.bits // 8, 1)
        parts = [z3.Select(mem, index + i) if i else z3.Select(mem, index)
                 for i in range(nbytes)]
        if nbytes == 1:
            return _fit(parts[0], exp.typ.bits)
        if exp.endian != exp_true:
            parts.reverse()
        return z3.Concat(*parts)

    def _store(self, exp: Store) -> z3.ExprRef:
        mem = self.translate(exp.mem)
        index = self._index(mem, exp.index)
        value = self.translate(exp.value)
        nbytes = max(exp.typ.bits // 8, 1)
        if nbytes == 1:
            return z3.Store(mem, index, _fit(value, mem.range().size()))
        for i in range(nbytes):
            byte = nbytes - 1 - i if exp.endian == exp_true else i
            mem = z3.Store(mem, index + i, z3.Extract(8 * byte + 7, 8 * byte, value))
        return mem


def to_z3(formula: Exp) -> z3.BoolRef:
    return Z3Translator().formula(formula)


def write_formula(path: Union[str, Path], formula: Exp) -> Path:
    """Write ``formula`` as an SMT-LIB 2 script."""
    solver = z3.Solver()
    solver.add(to_z3(formula))
    path = Path(path)
    path.write_text(solver.to_smt2())
    LOGGER.debug("formula written to %s", path)
    return path


@dataclass
class SolverResult:
    status: str
    assignments: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def sat(self) -> bool:
        return self.status == "sat"


class SMTSolver:
    def __init__(self, solver_type='z3', timeout: Optional[int] = None):
        self.solver_type = solver_type
        self.timeout = timeout
        self.solver = None
        self.initialize()

    def initialize(self):
        """Initialize the SMT solver"""
        if self.solver_type != 'z3':
            raise ValueError(f"Unsupported solver type: {self.solver_type}")
        self.solver = z3.Solver()
        if self.timeout:
            self.solver.set("timeout", self.timeout)

    def reset(self):
        """Reset the solver state"""
        self.solver.reset()
        if self.timeout:
            self.solver.set("timeout", self.timeout)

    def add(self, constraint):
        """Add a constraint to the solver"""
        if constraint is not None:
            self.solver.add(constraint)

    def solve(self, formula: Exp) -> SolverResult:
        """
        Decide a path predicate.

        Returns:
            SolverResult: status plus ``(name, value)`` pairs for every
            free bit-vector variable of the formula when satisfiable.
            Variables the model leaves open get their completed value.
        """
        translator = Z3Translator()
        self.reset()
        self.add(translator.formula(formula))
        result = self.solver.check()
        if result == z3.unknown:
            raise SolverError(
                f"solver returned unknown ({self.solver.reason_unknown()}); "
                "try raising the timeout or the solver memory limit")
        if result == z3.unsat:
            return SolverResult("unsat")
        model = self.solver.model()
        assignments = [
            (name, model.eval(const, model_completion=True).as_long())
            for name, const in translator.constants.items()
        ]
        return SolverResult("sat", sorted(assignments))
