"""Turn concretely observed addresses and branch decisions into assertions."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, List

from .errors import EvaluationError
from .il import (
    Assert, BinOp, BinOpType, CJmp, Comment, Exp, ExpTransformer, Jmp, Load, Stmt, Store,
    UnOp, UnOpType, exp_false, exp_true, map_stmt_exps,
)

LOGGER = logging.getLogger(__name__)

EvalFn = Callable[[Exp], Exp]


class _AddressConcretizer(ExpTransformer):
    """Pins every load/store index to its concrete value.

    ``constraint`` accumulates ``concrete == original`` for each index
    rewritten.
    """

    def __init__(self, evalf: EvalFn):
        self.evalf = evalf
        self.constraint: Exp = exp_true

    def _pin(self, index: Exp) -> Exp:
        cidx = self.evalf(index)
        self.constraint = BinOp(BinOpType.AND, self.constraint, BinOp(BinOpType.EQ, cidx, index))
        return cidx

    def visit_Load(self, exp: Load) -> Exp:
        return self.generic_visit(replace(exp, index=self._pin(exp.index)))

    def visit_Store(self, exp: Store) -> Exp:
        return self.generic_visit(replace(exp, index=self._pin(exp.index)))


def transform_stmt(stmt: Stmt, evalf: EvalFn, allow_symbolic_indices: bool = False) -> List[Stmt]:
    """Rewrite ``stmt`` for replay along the concretely executed path.

    ``evalf`` evaluates an expression in the concrete context right
    before ``stmt`` executes.
    """
    concretizer = _AddressConcretizer(evalf)
    if not allow_symbolic_indices:
        stmt = map_stmt_exps(stmt, concretizer.visit)

    if isinstance(stmt, CJmp):
        comment = Comment(f"Removed: {stmt}")
        taken = evalf(stmt.cond)
        if taken == exp_true:
            result: List[Stmt] = [comment, Assert(stmt.cond, stmt.attrs)]
        elif taken == exp_false:
            result = [comment, Assert(UnOp(UnOpType.NOT, stmt.cond), stmt.attrs)]
        else:
            raise EvaluationError(f"Evaluation failure! branch condition is {taken}")
    elif isinstance(stmt, Jmp):
        result = [Comment(f"Removed: {stmt}")]
    else:
        result = [stmt]

    if concretizer.constraint != exp_true:
        result.insert(0, Assert(concretizer.constraint))
    return result
