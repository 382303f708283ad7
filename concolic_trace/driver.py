"""Symbolic replay of a concretized trace.

``generate_formula`` is the usual entry point: it runs the trace
concretely to pin branches and addresses, then replays the result
symbolically and returns the path predicate.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .blocks import append_halt, concrete
from .config import TraceOptions
from .dsa import DsaMap, clean_delta, is_mem, rename_stmt
from .environment import BAD_REGS, Environment, MemoryIndices
from .errors import ConcolicError, EvaluationError
from .formula import ConstraintKind, LetBindFormula
from .il import (
    Assert, BinOp, BinOpType, Exp, Halt, Int, Label, Move, Name, Stmt, Store, Var, all_vars,
    exp_false, exp_true, index_type, reg_8,
)
from .outcome import OutcomeKind, RunOutcome
from .solver_integration import SMTSolver
from .symbeval import AssertFailed, Halted, Interpreter, UnknownLabel
from .taint_symbolic import TaintSymbolicPolicy

LOGGER = logging.getLogger(__name__)

SEED_LABEL = "Read Syscall"


def is_seed_label(stmt: Stmt) -> bool:
    return isinstance(stmt, Label) and stmt.label == Name(SEED_LABEL)


def find_memory_var(trace: Iterable[Stmt]) -> Optional[Var]:
    """The single memory variable of the trace, if it has one."""
    found = [var for var in all_vars(trace) if is_mem(var)]
    for var in found:
        LOGGER.debug("memvar: %s", var.name)
    if len(found) > 1:
        raise EvaluationError(
            "expected one memory variable, found " + ", ".join(var.name for var in found))
    return found[0] if found else None


def register_vars(trace: Iterable[Stmt]) -> Dict[str, Var]:
    return {var.name: var for var in all_vars(trace)}


def assert_vars(env: Environment, gamma: Dict[str, Var], forward: Dict[Var, Var]) -> Assert:
    """Assert that every tainted register already assigned equals its traced value."""
    conj: Exp = exp_true
    for name, traced in env.variables.items():
        var = gamma.get(name)
        if var is None or not traced.tainted or name in BAD_REGS or var not in forward:
            continue
        conj = BinOp(BinOpType.AND, BinOp(BinOpType.EQ, var, traced.expr), conj)
    return Assert(conj)


def assign_vars(env: Environment, gamma: Dict[str, Var]) -> List[Move]:
    """Moves that reproduce every untainted register value of the instruction."""
    return [
        Move(gamma[name], traced.expr)
        for name, traced in env.variables.items()
        if name in gamma and not traced.tainted
    ]


class SymbolicRunner:
    """Replays one trace through the taint-directed symbolic evaluator."""

    def __init__(self, options: Optional[TraceOptions] = None,
                 env: Optional[Environment] = None):
        self.options = options or TraceOptions()
        self.env = env if env is not None else Environment()
        self.dsa = DsaMap()
        self.formula = LetBindFormula()
        self.policy = TaintSymbolicPolicy(self.env, self.dsa, self.options, self.formula)
        self.interpreter = Interpreter(self.policy, self.formula)
        self.indices = MemoryIndices()
        self.blocks = 0
        self.seeds: Dict[int, Var] = {}

    def seed_var(self, taint_index: int) -> Var:
        try:
            return self.seeds[taint_index]
        except KeyError:
            var = self.seeds[taint_index] = Var.new(f"symb_{taint_index}", reg_8)
            return var

    def add_symbolic_seeds(self, memv: Optional[Var], stmt: Stmt) -> None:
        """Introduce one symbolic byte per tainted address of a seed label."""
        if not is_seed_label(stmt):
            return
        if memv is None:
            raise EvaluationError("input label found in a trace without memory")
        itype = index_type(memv.typ)
        for attr in stmt.context:
            sym = self.seed_var(attr.taint_index)
            LOGGER.debug("Introducing symbolic: %#x -> %s", attr.address, sym.name)
            self.env.record_seed(attr.address, sym)
            store = Store(memv, Int(attr.address, itype), sym, exp_false, reg_8)
            self.formula.add_to_formula(
                exp_true, BinOp(BinOpType.EQ, memv, store), ConstraintKind.RENAME)

    def _step(self, state, stmt: Stmt):
        LOGGER.debug("Evaluating stmt %s", stmt)
        successors = self.interpreter.eval_stmt(state, stmt)
        if len(successors) != 1:
            raise EvaluationError("Jump in a straightline program")
        return successors[0]

    def run(self, trace: Sequence[Stmt], extra_assertions: Iterable[Stmt] = ()) -> RunOutcome:
        trace = list(trace)
        extra_assertions = list(extra_assertions)
        self.env.cleanup()
        memv = find_memory_var(trace + extra_assertions)
        gamma = register_vars(trace)
        state = self.interpreter.build_default_context(append_halt(trace))
        try:
            for stmt in trace:
                self.add_symbolic_seeds(memv, stmt)
                queued: List[Stmt] = []
                hasconc = self.env.update_from_label(stmt)
                if hasconc and self.options.consistency_check:
                    queued.append(assert_vars(self.env, gamma, self.dsa.forward))
                if hasconc and self.options.use_alt_assignment:
                    queued.extend(assign_vars(self.env, gamma))
                stmts = [rename_stmt(s, self.dsa) for s in queued + [stmt]]
                if hasconc:
                    clean_delta(state.delta)
                    self.blocks += 1
                    self.indices = self.env.memory_indices()
                    LOGGER.debug("Block %d reads %s writes %s", self.blocks,
                                 sorted(self.indices.read), sorted(self.indices.write))
                for renamed in stmts:
                    state = self._step(state, renamed)
            self.policy.strict_memory = False
            for stmt in extra_assertions:
                state = self._step(state, rename_stmt(stmt, self.dsa))
            self._step(state, Halt(exp_true))
        except Halted as halt:
            LOGGER.debug("Symbolic Run ... Successful! %d blocks", self.blocks)
            return RunOutcome(OutcomeKind.COMPLETED, trace,
                              formula=self.formula.output_formula(), state=halt.state)
        except AssertFailed as exc:
            LOGGER.debug("Failed assertion: %s", exc.stmt)
            return RunOutcome(OutcomeKind.ASSERTION_FAILED, trace,
                              formula=self.formula.output_formula(), state=exc.state, error=exc)
        except UnknownLabel as exc:
            error = EvaluationError(f"Jump in a straightline program: {exc}")
            LOGGER.warning("Symbolic Run Fail: %s", error)
            return RunOutcome(OutcomeKind.FATAL, trace, state=state, error=error)
        except ConcolicError as exc:
            LOGGER.warning("Symbolic Run Fail: %s", exc)
            return RunOutcome(OutcomeKind.FATAL, trace, state=state, error=exc)
        finally:
            self.policy.strict_memory = True
        raise EvaluationError("trace ended without halting")


def symbolic_run(trace: Sequence[Stmt], options: Optional[TraceOptions] = None,
                 env: Optional[Environment] = None,
                 extra_assertions: Iterable[Stmt] = ()) -> RunOutcome:
    return SymbolicRunner(options, env).run(trace, extra_assertions)


def generate_formula(trace: Sequence[Stmt], options: Optional[TraceOptions] = None,
                     extra_assertions: Iterable[Stmt] = ()) -> RunOutcome:
    """Concretize ``trace`` and replay it symbolically.

    ``extra_assertions`` are checked after the last traced statement;
    they are how exploit constraints reach the formula.
    """
    options = options or TraceOptions()
    concrete_run = concrete(trace, options)
    if not concrete_run.ok:
        return concrete_run
    return symbolic_run(concrete_run.trace, options, extra_assertions=extra_assertions)


def valid_to_invalid(trace: Sequence[Stmt], options: Optional[TraceOptions] = None,
                     solver=None) -> Tuple[int, int]:
    """Bisect for the longest prefix of ``trace`` whose formula is satisfiable.

    Returns ``(l, u)`` where the first ``l`` statements give a satisfiable
    formula and the first ``u`` do not.
    """
    solver = solver or SMTSolver()

    def valid(length: int) -> bool:
        outcome = generate_formula(trace[:length], options)
        if not outcome.ok or outcome.formula is None:
            return False
        return solver.solve(outcome.formula).sat

    lower, upper = 1, len(trace)
    while lower < upper - 1:
        middle = (lower + upper) // 2
        LOGGER.info("Searching %d %d", lower, upper)
        if valid(middle):
            lower = middle
        else:
            upper = middle
    return lower, upper
