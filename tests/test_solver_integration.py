import pytest

from concolic_trace.errors import SolverError
from concolic_trace.il import (
    BinOp, BinOpType, Int, Lab, Let, Load, Store, TMem, Var, exp_false, exp_true, reg_8, reg_32,
)
from concolic_trace.solver_integration import SMTSolver, Z3Translator, write_formula


def conj(*constraints):
    acc = exp_true
    for constraint in reversed(constraints):
        acc = BinOp(BinOpType.AND, constraint, acc)
    return acc


def test_let_bound_value_satisfies():
    x, y = Var.new("x", reg_32), Var.new("y", reg_32)
    formula = Let(x, Int(5, reg_32), conj(BinOp(BinOpType.EQ, y, x)))
    result = SMTSolver().solve(formula)
    assert result.sat
    assert ("y", 5) in result.assignments
    assert all(name != "x" for name, _ in result.assignments)


def test_contradiction_is_unsat():
    sym = Var.new("symb_1", reg_8)
    formula = conj(BinOp(BinOpType.EQ, sym, Int(1, reg_8)), BinOp(BinOpType.EQ, sym, Int(2, reg_8)))
    result = SMTSolver().solve(formula)
    assert not result.sat
    assert result.assignments == []


def test_word_store_is_little_endian():
    mem = Var.new("mem", TMem(reg_32))
    value = Var.new("v", reg_32)
    addr = Int(0x10, reg_32)
    stored = Store(mem, addr, value, exp_false, reg_32)
    # No memory where the word read back differs from the word written.
    differs = Let(mem, stored, conj(BinOp(BinOpType.NEQ, Load(mem, addr, exp_false, reg_32), value)))
    assert not SMTSolver().solve(differs).sat

    low_byte = Let(mem, Store(mem, addr, Int(0x11223344, reg_32), exp_false, reg_32),
                   conj(BinOp(BinOpType.NEQ, Load(mem, addr, exp_false, reg_8), Int(0x44, reg_8))))
    assert not SMTSolver().solve(low_byte).sat


def test_signed_comparison():
    x = Var.new("x", reg_8)
    formula = conj(BinOp(BinOpType.SLT, x, Int(0, reg_8)), BinOp(BinOpType.LT, x, Int(0x81, reg_8)))
    result = SMTSolver().solve(formula)
    assert result.assignments == [("x", 0x80)]


def test_labels_cannot_be_translated():
    with pytest.raises(SolverError):
        Z3Translator().translate(Lab("pc_0x10"))


def test_only_z3_is_supported():
    with pytest.raises(ValueError):
        SMTSolver(solver_type="yices")


def test_write_formula(tmp_path):
    sym = Var.new("symb_1", reg_8)
    path = write_formula(tmp_path / "out.smt2", conj(BinOp(BinOpType.EQ, sym, Int(0x41, reg_8))))
    text = path.read_text()
    assert "symb_1" in text
    assert "(check-sat)" in text


def test_unread_input_bytes_are_still_assigned():
    mem = Var.new("mem", TMem(reg_32))
    first, second = Var.new("symb_1", reg_8), Var.new("symb_2", reg_8)
    seeded = Store(Store(mem, Int(0x200, reg_32), first, exp_false, reg_8),
                   Int(0x201, reg_32), second, exp_false, reg_8)
    formula = Let(mem, seeded, conj(BinOp(BinOpType.EQ, first, Int(0x41, reg_8))))
    result = SMTSolver().solve(formula)
    assert [name for name, _ in result.assignments] == ["symb_1", "symb_2"]
    assert ("symb_1", 0x41) in result.assignments
