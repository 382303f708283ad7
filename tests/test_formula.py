import pytest

from concolic_trace.errors import FormulaError
from concolic_trace.formula import And, ConstraintKind, LetBindFormula, LetBinding, formula_size
from concolic_trace.il import BinOp, BinOpType, Int, Let, Var, exp_true, reg_32


def eq(a, b):
    return BinOp(BinOpType.EQ, a, b)


def test_constraints_are_kept_in_order():
    x, v1 = Var.new("x", reg_32), Var.new("v1", reg_32)
    e1 = BinOp(BinOpType.PLUS, x, Int(1, reg_32))
    c1, c2 = eq(x, Int(3, reg_32)), eq(v1, Int(4, reg_32))
    form = LetBindFormula()
    form.add_to_formula(exp_true, c1)
    form.add_to_formula(exp_true, eq(v1, e1), ConstraintKind.RENAME)
    form.add_to_formula(exp_true, c2)

    assert form.bindings == [And(c1), LetBinding(v1, e1), And(c2)]
    expected = BinOp(BinOpType.AND, c1, Let(v1, e1, BinOp(BinOpType.AND, c2, exp_true)))
    assert form.output_formula() == expected


def test_add_returns_conjunction():
    x = Var.new("x", reg_32)
    c = eq(x, Int(1, reg_32))
    assert LetBindFormula().add_to_formula(exp_true, c) == BinOp(BinOpType.AND, c, exp_true)


def test_empty_formula_is_true():
    assert LetBindFormula().output_formula() == exp_true


def test_malformed_rename_is_rejected():
    form = LetBindFormula()
    with pytest.raises(FormulaError):
        form.add_to_formula(exp_true, eq(Int(1, reg_32), Int(1, reg_32)), ConstraintKind.RENAME)
    with pytest.raises(FormulaError):
        form.add_to_formula(exp_true, Var.new("x", reg_32), ConstraintKind.RENAME)


def test_formula_size_counts_nodes():
    x = Var.new("x", reg_32)
    assert formula_size(Let(x, Int(1, reg_32), eq(x, x))) == 5
