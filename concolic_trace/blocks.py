"""Split a trace into per-instruction blocks and run them concretely.

The concrete run resolves every branch and memory address the trace
took, and returns the trace rewritten with those decisions as
assertions. That rewritten trace is the input of the symbolic stage.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .concrete import ConcreteShadowPolicy, check_delta
from .config import TraceOptions
from .dsa import clean_delta
from .environment import Environment
from .errors import ConcolicError, EvaluationError
from .il import Exp, Halt, Jmp, Special, Stmt, exp_true, is_addr_label, pretty
from .outcome import OutcomeKind, RunOutcome
from .symbeval import AssertFailed, Halted, Interpreter, StdForm, Symbolic, UnknownLabel
from .transform import transform_stmt

LOGGER = logging.getLogger(__name__)

Block = List[Stmt]


def remove_specials(trace: Iterable[Stmt]) -> List[Stmt]:
    return [stmt for stmt in trace if not isinstance(stmt, Special)]


def remove_jumps(trace: Iterable[Stmt]) -> List[Stmt]:
    return [stmt for stmt in trace if not isinstance(stmt, Jmp)]


def append_halt(trace: Iterable[Stmt]) -> List[Stmt]:
    return list(trace) + [Halt(exp_true)]


def strip_jmp(block: Block) -> Block:
    """Drop the block's trailing jump; blocks follow each other by address."""
    if block and isinstance(block[-1], Jmp):
        return block[:-1]
    return list(block)


def trace_to_blocks(trace: Iterable[Stmt]) -> List[Block]:
    """Start a new block at every address label; drop one-statement fragments."""
    blocks: List[Block] = []
    current: Block = []
    for stmt in trace:
        if is_addr_label(stmt):
            blocks.append(current)
            current = [stmt]
        else:
            current.append(stmt)
    blocks.append(current)
    return [block for block in blocks if len(block) > 1]


@dataclass
class BlockResult:
    kind: OutcomeKind
    stmts: List[Stmt]


class BlockRunner:
    """Runs blocks one after another over a single interpreter state."""

    def __init__(self, options: Optional[TraceOptions] = None,
                 env: Optional[Environment] = None):
        self.options = options or TraceOptions()
        self.env = env if env is not None else Environment()
        self.policy = ConcreteShadowPolicy(self.env)
        self.interpreter = Interpreter(self.policy, StdForm())
        self.state = self.interpreter.create_state()
        self.counter = 0
        self.executed: List[Stmt] = []

    def _evalf(self, exp: Exp) -> Exp:
        value = self.interpreter.eval_expr(self.state.delta, exp)
        if not isinstance(value, Symbolic):
            raise EvaluationError(f"Expected a value, got memory while evaluating {exp}")
        return value.exp

    def run_block(self, block: Block) -> BlockResult:
        addr, info, *body = block
        self.counter += 1
        LOGGER.debug("Running block: %d %s", self.counter, addr)
        self.env.update_from_label(info)
        if self.options.consistency_check:
            clean_delta(self.state.delta)
            check_delta(self.state, self.env)

        program = append_halt(strip_jmp(body))
        self.interpreter.initialize_prog(self.state, program)
        if not self.options.consistency_check:
            self.interpreter.cleanup_delta(self.state)

        executed: List[Stmt] = []
        state = self.state
        try:
            stmt = self.interpreter.inst_fetch(state.sigma, state.pc)
            while True:
                LOGGER.debug("Executing: %s", stmt)
                executed.extend(transform_stmt(stmt, self._evalf,
                                               self.options.allow_symbolic_indices))
                successors = self.interpreter.eval_stmt(state, stmt)
                if len(successors) != 1:
                    raise EvaluationError(
                        f"Expected one successor state, got {len(successors)} at {stmt}")
                state = successors[0]
                stmt = self.interpreter.inst_fetch(state.sigma, state.pc)
        except UnknownLabel as exc:
            LOGGER.debug("block %d stopped at %s", self.counter, exc.label)
            return BlockResult(OutcomeKind.STOPPED_AT_UNKNOWN_LABEL, [addr, info] + executed)
        except Halted:
            # The synthetic halt is the last executed statement.
            return BlockResult(OutcomeKind.COMPLETED, [addr, info] + executed[:-1])
        except AssertFailed:
            LOGGER.debug("failed assertion in block %d", self.counter)
            raise
        except EvaluationError as exc:
            LOGGER.warning("Concrete evaluation of block %d failed: %s", self.counter, exc)
            LOGGER.debug("failed block:\n%s", pretty(program))
            raise

    def run_blocks(self, blocks: Iterable[Block]) -> List[Stmt]:
        """Run ``blocks`` in order; ``executed`` keeps the prefix if one raises."""
        for block in blocks:
            self.executed.extend(self.run_block(block).stmts)
        return self.executed


def concrete(trace: Iterable[Stmt], options: Optional[TraceOptions] = None,
             env: Optional[Environment] = None) -> RunOutcome:
    """Run ``trace`` concretely and return the transformed trace."""
    blocks = trace_to_blocks(remove_specials(trace))
    runner = BlockRunner(options, env)
    try:
        executed = runner.run_blocks(blocks)
    except AssertFailed as exc:
        return RunOutcome(OutcomeKind.ASSERTION_FAILED, runner.executed, state=exc.state, error=exc)
    except ConcolicError as exc:
        return RunOutcome(OutcomeKind.FATAL, runner.executed, error=exc)
    LOGGER.debug("concrete run finished after %d blocks", runner.counter)
    return RunOutcome(OutcomeKind.COMPLETED, executed, state=runner.state)
