import pytest

from concolic_trace.errors import EvaluationError
from concolic_trace.il import (
    Assert, BinOp, BinOpType, CJmp, Comment, Int, Jmp, Lab, Load, Move, TMem, UnOp, UnOpType,
    Var, exp_false, exp_true, reg_32,
)
from concolic_trace.transform import transform_stmt


@pytest.fixture
def regs():
    return {
        "eax": Var.new("R_EAX", reg_32),
        "esp": Var.new("R_ESP", reg_32),
        "mem": Var.new("mem", TMem(reg_32)),
    }


def test_taken_branch_becomes_assertion(regs):
    cond = BinOp(BinOpType.EQ, regs["eax"], Int(5, reg_32))
    stmt = CJmp(cond, Lab("pc_0x10"), Lab("pc_0x20"))
    assert transform_stmt(stmt, lambda exp: exp_true) == [Comment(f"Removed: {stmt}"), Assert(cond)]


def test_fallthrough_branch_asserts_negation(regs):
    cond = BinOp(BinOpType.EQ, regs["eax"], Int(5, reg_32))
    stmt = CJmp(cond, Lab("pc_0x10"), Lab("pc_0x20"))
    result = transform_stmt(stmt, lambda exp: exp_false)
    assert result[1] == Assert(UnOp(UnOpType.NOT, cond))


def test_undecided_branch_is_an_error(regs):
    stmt = CJmp(regs["eax"], Lab("a"), Lab("b"))
    with pytest.raises(EvaluationError):
        transform_stmt(stmt, lambda exp: exp)


def test_jump_is_dropped(regs):
    stmt = Jmp(regs["eax"])
    assert transform_stmt(stmt, lambda exp: Int(0x8048000, reg_32)) == [Comment(f"Removed: {stmt}")]


def test_load_index_is_pinned(regs):
    esp, mem = regs["esp"], regs["mem"]
    concrete_sp = Int(0xBFFF0000, reg_32)
    stmt = Move(regs["eax"], Load(mem, esp, exp_false, reg_32))

    def evalf(exp):
        return concrete_sp if exp == esp else exp

    guard, move = transform_stmt(stmt, evalf)
    assert guard == Assert(BinOp(BinOpType.AND, exp_true, BinOp(BinOpType.EQ, concrete_sp, esp)))
    assert move == Move(regs["eax"], Load(mem, concrete_sp, exp_false, reg_32))


def test_literal_index_still_asserted(regs):
    addr = Int(0x10, reg_32)
    stmt = Move(regs["eax"], Load(regs["mem"], addr, exp_false, reg_32))
    guard, move = transform_stmt(stmt, lambda exp: exp)
    assert guard == Assert(BinOp(BinOpType.AND, exp_true, BinOp(BinOpType.EQ, addr, addr)))
    assert move == stmt


def test_symbolic_indices_left_alone(regs):
    stmt = Move(regs["eax"], Load(regs["mem"], regs["esp"], exp_false, reg_32))
    assert transform_stmt(stmt, lambda exp: Int(0, reg_32), allow_symbolic_indices=True) == [stmt]
