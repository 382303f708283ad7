"""Generic symbolic interpreter for trace programs.

The interpreter owns statement stepping and expression substitution.
Everything that decides *what* a variable or memory cell evaluates to is
delegated to a policy object implementing :class:`EvalPolicy`; the
concrete shadow evaluator and the taint-directed symbolic evaluator are
the two policies used by this package.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Protocol, Union

from .errors import EvaluationError
from .il import (
    Addr, Assert, BinOp, BinOpType, Cast, CastType, CJmp, Comment, Exp, Halt, Int, Jmp,
    Lab, Label, LabelKind, Let, Load, Move, Name, Reg, Special, Stmt, Store, UnOp,
    UnOpType, Unknown, Var, exp_false, exp_true, index_type, reg_1, reg_8,
    to_sval, to_val, type_of,
)

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Control-transfer signals
# ---------------------------------------------------------------------------

class Halted(Exception):
    """The program executed a ``Halt`` statement."""

    def __init__(self, value: "Value", state: "State"):
        super().__init__("halted")
        self.value = value
        self.state = state


class UnknownLabel(Exception):
    """A jump targeted a label that is not part of the program."""

    def __init__(self, label: LabelKind):
        super().__init__(f"unknown label {label}")
        self.label = label


class AssertFailed(Exception):
    """An ``Assert`` statement evaluated to false."""

    def __init__(self, state: "State", stmt: Optional[Stmt] = None):
        super().__init__(f"assertion failed: {stmt}")
        self.state = state
        self.stmt = stmt


# ---------------------------------------------------------------------------
# Values and state
# ---------------------------------------------------------------------------

@dataclass
class Symbolic:
    """Any value that is represented by an expression, concrete or not."""

    exp: Exp


@dataclass
class ConcreteMem:
    """Byte-addressed memory with concrete addresses."""

    memory: Dict[int, Exp]
    var: Var


Value = Union[Symbolic, ConcreteMem]


@dataclass
class State:
    delta: Dict[Var, Value] = field(default_factory=dict)
    sigma: List[Stmt] = field(default_factory=list)
    labels: Dict[LabelKind, int] = field(default_factory=dict)
    pc: int = 0
    pred: Exp = exp_true


def next_state(state: State, pred: Optional[Exp] = None) -> State:
    """Successor of ``state``; the context and program are shared, not copied."""
    if pred is None:
        return replace(state, pc=state.pc + 1)
    return replace(state, pc=state.pc + 1, pred=pred)


class EvalPolicy(Protocol):
    def lookup_var(self, delta: Dict[Var, Value], var: Var) -> Value:
        ...

    def lookup_mem(self, mu: Value, index: Exp, endian: Exp) -> Exp:
        ...

    def update_mem(self, mu: Value, pos: Exp, value: Exp, endian: Exp) -> Value:
        ...

    def assign(self, var: Var, value: Value, state: State) -> List[State]:
        ...


class StdForm:
    """Path predicate kept as a plain conjunction."""

    def init_formula(self) -> Exp:
        return exp_true

    def add_to_formula(self, formula: Exp, expression: Exp, kind=None) -> Exp:
        return BinOp(BinOpType.AND, expression, formula)


# ---------------------------------------------------------------------------
# Helpers shared by policies
# ---------------------------------------------------------------------------

def normalize(value: int, typ: Reg) -> int:
    return to_val(typ, value)


def empty_mem(var: Var) -> ConcreteMem:
    return ConcreteMem({}, var)


def empty_smem(var: Var) -> Symbolic:
    return Symbolic(var)


def conc2symb(memory: Dict[int, Exp], var: Var) -> Exp:
    """Rebuild a concrete memory map as a chain of stores over ``var``."""
    itype = index_type(var.typ)
    mem: Exp = var
    for addr, value in memory.items():
        mem = Store(mem, Int(addr, itype), value, exp_false, reg_8)
    return mem


def symb_to_exp(value: Value) -> Exp:
    if isinstance(value, ConcreteMem):
        return conc2symb(value.memory, value.var)
    return value.exp


def same_index(a: Exp, b: Exp) -> bool:
    """Constant indices match by value whatever their width."""
    if isinstance(a, Int) and isinstance(b, Int):
        return normalize(a.value, a.typ) == normalize(b.value, b.typ)
    return a == b


def generic_lookup_mem(mu: Value, index: Exp, endian: Exp) -> Exp:
    if isinstance(mu, ConcreteMem):
        if isinstance(index, Int):
            try:
                return mu.memory[normalize(index.value, index.typ)]
            except KeyError:
                return Load(mu.var, index, endian, reg_8)
        mu = Symbolic(conc2symb(mu.memory, mu.var))
    mem = mu.exp
    node = mem
    while isinstance(node, Store):
        if same_index(node.index, index):
            return node.value
        if not (isinstance(node.index, Int) and isinstance(index, Int)):
            break
        node = node.mem
    return Load(mem, index, endian, reg_8)


def generic_update_mem(mu: Value, pos: Exp, value: Exp, endian: Exp) -> Value:
    if isinstance(mu, ConcreteMem):
        if isinstance(pos, Int):
            memory = dict(mu.memory)
            memory[normalize(pos.value, pos.typ)] = value
            return ConcreteMem(memory, mu.var)
        mu = Symbolic(conc2symb(mu.memory, mu.var))
    return Symbolic(Store(mu.exp, pos, value, endian, reg_8))


def generic_assign(var: Var, value: Value, state: State) -> List[State]:
    state.delta[var] = value
    return [next_state(state)]


# ---------------------------------------------------------------------------
# Constant folding
# ---------------------------------------------------------------------------

def _signed_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return -quotient if (a < 0) != (b < 0) else quotient


def fold_binop(op: BinOpType, i1: Int, i2: Int) -> Int:
    typ = i1.typ
    a = to_val(typ, i1.value)
    b = to_val(i2.typ, i2.value)
    if op in (BinOpType.DIVIDE, BinOpType.SDIVIDE, BinOpType.MOD, BinOpType.SMOD) and b == 0:
        raise EvaluationError(f"division by zero in {BinOp(op, i1, i2)}")

    if op is BinOpType.PLUS:
        result = a + b
    elif op is BinOpType.MINUS:
        result = a - b
    elif op is BinOpType.TIMES:
        result = a * b
    elif op is BinOpType.DIVIDE:
        result = a // b
    elif op is BinOpType.SDIVIDE:
        result = _signed_div(to_sval(typ, a), to_sval(typ, b))
    elif op is BinOpType.MOD:
        result = a % b
    elif op is BinOpType.SMOD:
        sa, sb = to_sval(typ, a), to_sval(typ, b)
        result = sa - sb * _signed_div(sa, sb)
    elif op is BinOpType.LSHIFT:
        result = a << b if b < typ.bits else 0
    elif op is BinOpType.RSHIFT:
        result = a >> b
    elif op is BinOpType.ARSHIFT:
        result = to_sval(typ, a) >> min(b, typ.bits - 1)
    elif op is BinOpType.AND:
        result = a & b
    elif op is BinOpType.OR:
        result = a | b
    elif op is BinOpType.XOR:
        result = a ^ b
    elif op is BinOpType.EQ:
        return Int(int(a == b), reg_1)
    elif op is BinOpType.NEQ:
        return Int(int(a != b), reg_1)
    elif op is BinOpType.LT:
        return Int(int(a < b), reg_1)
    elif op is BinOpType.LE:
        return Int(int(a <= b), reg_1)
    elif op is BinOpType.SLT:
        return Int(int(to_sval(typ, a) < to_sval(typ, b)), reg_1)
    elif op is BinOpType.SLE:
        return Int(int(to_sval(typ, a) <= to_sval(typ, b)), reg_1)
    else:
        raise EvaluationError(f"unsupported operator {op}")
    return Int(to_val(typ, result), typ)


def fold_unop(op: UnOpType, i: Int) -> Int:
    if op is UnOpType.NEG:
        return Int(to_val(i.typ, -i.value), i.typ)
    return Int(to_val(i.typ, ~i.value), i.typ)


def fold_cast(kind: CastType, typ: Reg, i: Int) -> Int:
    old = i.typ
    if kind is CastType.SIGNED:
        return Int(to_val(typ, to_sval(old, i.value)), typ)
    if kind is CastType.HIGH:
        return Int(to_val(typ, to_val(old, i.value) >> max(old.bits - typ.bits, 0)), typ)
    return Int(to_val(typ, to_val(old, i.value)), typ)


def mk_binop(op: BinOpType, e1: Exp, e2: Exp) -> Exp:
    if isinstance(e1, Int) and isinstance(e2, Int):
        return fold_binop(op, e1, e2)
    return BinOp(op, e1, e2)


def mk_unop(op: UnOpType, e: Exp) -> Exp:
    if isinstance(e, Int):
        return fold_unop(op, e)
    return UnOp(op, e)


def mk_cast(kind: CastType, typ: Reg, e: Exp) -> Exp:
    if isinstance(e, Int):
        return fold_cast(kind, typ, e)
    return Cast(kind, typ, e)


def _byte_offset(index: Exp, offset: int) -> Exp:
    if offset == 0:
        return index
    return mk_binop(BinOpType.PLUS, index, Int(offset, type_of(index)))


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------

class Interpreter:
    def __init__(self, policy: EvalPolicy, formula: StdForm):
        self.policy = policy
        self.formula = formula

    def create_state(self) -> State:
        return State(pred=self.formula.init_formula())

    def initialize_prog(self, state: State, program: List[Stmt]) -> None:
        """Load ``program`` into ``state`` and rewind it to the first statement."""
        state.sigma = list(program)
        state.labels = {
            stmt.label: pc for pc, stmt in enumerate(state.sigma) if isinstance(stmt, Label)
        }
        state.pc = 0

    def build_default_context(self, program: List[Stmt]) -> State:
        state = self.create_state()
        self.initialize_prog(state, program)
        return state

    @staticmethod
    def cleanup_delta(state: State) -> None:
        state.delta.clear()

    @staticmethod
    def inst_fetch(sigma: List[Stmt], pc: int) -> Stmt:
        try:
            return sigma[pc]
        except IndexError:
            raise EvaluationError(f"no statement at pc {pc}") from None

    # -- expressions -------------------------------------------------------

    def eval_exp(self, delta: Dict[Var, Value], exp: Exp) -> Exp:
        return symb_to_exp(self.eval_expr(delta, exp))

    def eval_expr(self, delta: Dict[Var, Value], exp: Exp) -> Value:
        if isinstance(exp, Int):
            return Symbolic(Int(to_val(exp.typ, exp.value), exp.typ))
        if isinstance(exp, Var):
            return self.policy.lookup_var(delta, exp)
        if isinstance(exp, (Lab, Unknown)):
            return Symbolic(exp)
        if isinstance(exp, BinOp):
            e1 = self.eval_exp(delta, exp.e1)
            e2 = self.eval_exp(delta, exp.e2)
            return Symbolic(mk_binop(exp.op, e1, e2))
        if isinstance(exp, UnOp):
            return Symbolic(mk_unop(exp.op, self.eval_exp(delta, exp.e)))
        if isinstance(exp, Cast):
            return Symbolic(mk_cast(exp.kind, exp.typ, self.eval_exp(delta, exp.e)))
        if isinstance(exp, Let):
            bound = self.eval_expr(delta, exp.e1)
            inner = dict(delta)
            inner[exp.var] = bound
            return self.eval_expr(inner, exp.e2)
        if isinstance(exp, Load):
            return Symbolic(self._eval_load(delta, exp))
        if isinstance(exp, Store):
            return self._eval_store(delta, exp)
        raise EvaluationError(f"cannot evaluate {exp!r}")

    def _eval_load(self, delta: Dict[Var, Value], exp: Load) -> Exp:
        mu = self.eval_expr(delta, exp.mem)
        index = self.eval_exp(delta, exp.index)
        if exp.typ.bits <= 8:
            return self.policy.lookup_mem(mu, index, exp.endian)
        nbytes = exp.typ.bits // 8
        result: Optional[Exp] = None
        for i in range(nbytes):
            byte = self.policy.lookup_mem(mu, _byte_offset(index, i), exp.endian)
            shift = 8 * i if exp.endian != exp_true else 8 * (nbytes - 1 - i)
            part = mk_cast(CastType.UNSIGNED, exp.typ, byte)
            if shift:
                part = mk_binop(BinOpType.LSHIFT, part, Int(shift, exp.typ))
            result = part if result is None else mk_binop(BinOpType.OR, result, part)
        return result

    def _eval_store(self, delta: Dict[Var, Value], exp: Store) -> Value:
        mu = self.eval_expr(delta, exp.mem)
        index = self.eval_exp(delta, exp.index)
        value = self.eval_exp(delta, exp.value)
        if exp.typ.bits <= 8:
            return self.policy.update_mem(mu, index, value, exp.endian)
        nbytes = exp.typ.bits // 8
        for i in range(nbytes):
            shift = 8 * i if exp.endian != exp_true else 8 * (nbytes - 1 - i)
            part = value
            if shift:
                part = mk_binop(BinOpType.RSHIFT, part, Int(shift, exp.typ))
            byte = mk_cast(CastType.LOW, reg_8, part)
            mu = self.policy.update_mem(mu, _byte_offset(index, i), byte, exp.endian)
        return mu

    # -- statements --------------------------------------------------------

    def _target(self, state: State, exp: Exp) -> LabelKind:
        if isinstance(exp, Lab):
            return Name(exp.name)
        target = self.eval_exp(state.delta, exp)
        if isinstance(target, Int):
            return Addr(target.value)
        if isinstance(target, Lab):
            return Name(target.name)
        raise EvaluationError(f"symbolic jump target {target}")

    def _resolve(self, state: State, exp: Exp) -> int:
        label = self._target(state, exp)
        try:
            return state.labels[label]
        except KeyError:
            raise UnknownLabel(label) from None

    def _jump(self, state: State, exp: Exp) -> State:
        return replace(state, pc=self._resolve(state, exp))

    def eval_stmt(self, state: State, stmt: Stmt) -> List[State]:
        """Execute ``stmt`` and return the successor states."""
        if isinstance(stmt, Move):
            value = self.eval_expr(state.delta, stmt.exp)
            return self.policy.assign(stmt.var, value, state)
        if isinstance(stmt, Halt):
            raise Halted(self.eval_expr(state.delta, stmt.exp), state)
        if isinstance(stmt, Jmp):
            return [self._jump(state, stmt.exp)]
        if isinstance(stmt, CJmp):
            cond = self.eval_exp(state.delta, stmt.cond)
            if cond == exp_true:
                return [self._jump(state, stmt.true_target)]
            if cond == exp_false:
                return [self._jump(state, stmt.false_target)]
            # Both targets must resolve before the fork reaches the formula.
            true_pc = self._resolve(state, stmt.true_target)
            false_pc = self._resolve(state, stmt.false_target)
            taken = self.formula.add_to_formula(state.pred, cond)
            not_taken = self.formula.add_to_formula(state.pred, UnOp(UnOpType.NOT, cond))
            return [
                replace(state, pc=true_pc, pred=taken),
                replace(state, pc=false_pc, pred=not_taken),
            ]
        if isinstance(stmt, Assert):
            cond = self.eval_exp(state.delta, stmt.exp)
            if cond == exp_false:
                raise AssertFailed(state, stmt)
            if cond == exp_true:
                return [next_state(state)]
            return [next_state(state, self.formula.add_to_formula(state.pred, cond))]
        if isinstance(stmt, (Label, Comment, Special)):
            return [next_state(state)]
        raise EvaluationError(f"cannot execute {stmt!r}")
