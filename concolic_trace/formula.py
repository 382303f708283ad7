"""Path predicate built from conjuncts and let-bindings."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import List, Union

from .errors import FormulaError
from .il import BinOp, BinOpType, Exp, Let, Var, exp_true
from .symbeval import StdForm

LOGGER = logging.getLogger(__name__)


class ConstraintKind(enum.Enum):
    EQUAL = "equal"
    RENAME = "rename"


@dataclass(frozen=True)
class And:
    exp: Exp


@dataclass(frozen=True)
class LetBinding:
    var: Var
    exp: Exp


Binding = Union[And, LetBinding]


class LetBindFormula(StdForm):
    """Collects constraints in the order they are added.

    ``EQUAL`` constraints become conjuncts. ``RENAME`` constraints must
    have the shape ``var == value`` and become let-bindings of ``var``.
    """

    def __init__(self):
        self.bindings: List[Binding] = []

    def add_to_formula(self, formula: Exp, expression: Exp,
                       kind: ConstraintKind = ConstraintKind.EQUAL) -> Exp:
        if kind is ConstraintKind.EQUAL:
            self.bindings.append(And(expression))
        elif (kind is ConstraintKind.RENAME and isinstance(expression, BinOp)
              and expression.op is BinOpType.EQ and isinstance(expression.e1, Var)):
            self.bindings.append(LetBinding(expression.e1, expression.e2))
        else:
            raise FormulaError(
                f"internal error: adding malformed constraint to formula: {kind} {expression}")
        return super().add_to_formula(formula, expression, kind)

    def output_formula(self) -> Exp:
        """Fold the bindings into one expression.

        The most recent binding is innermost, so every let-binding scopes
        over all constraints added after it.
        """
        acc: Exp = exp_true
        for binding in reversed(self.bindings):
            if isinstance(binding, And):
                acc = BinOp(BinOpType.AND, binding.exp, acc)
            else:
                acc = Let(binding.var, binding.exp, acc)
        return acc


def formula_size(exp: Exp) -> int:
    """Number of expression nodes in ``exp``."""
    size = 0
    stack = [exp]
    while stack:
        node = stack.pop()
        size += 1
        stack.extend(getattr(node, name) for name in node.CHILDREN)
    return size
