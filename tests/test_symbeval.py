import pytest

from concolic_trace.concrete import ConcreteShadowPolicy
from concolic_trace.environment import Environment
from concolic_trace.errors import EvaluationError
from concolic_trace.formula import LetBindFormula
from concolic_trace.il import (
    Assert, BinOp, BinOpType, CastType, CJmp, Halt, Int, Jmp, Lab, Label, Load, Move, Name,
    Store, TMem, UnOp, UnOpType, Usage, Var, exp_false, exp_true, reg_8, reg_32, reg_64,
)
from concolic_trace.symbeval import (
    AssertFailed, Halted, Interpreter, StdForm, Symbolic, UnknownLabel, fold_binop, fold_cast,
    generic_assign, generic_lookup_mem, generic_update_mem,
)


class FreePolicy:
    """Unknown variables stay symbolic."""

    def lookup_var(self, delta, var):
        return delta.get(var, Symbolic(var))

    def lookup_mem(self, mu, index, endian):
        return generic_lookup_mem(mu, index, endian)

    def update_mem(self, mu, pos, value, endian):
        return generic_update_mem(mu, pos, value, endian)

    def assign(self, var, value, state):
        return generic_assign(var, value, state)


def u32(value):
    return Int(value, reg_32)


def run(interpreter, state):
    while True:
        stmt = interpreter.inst_fetch(state.sigma, state.pc)
        (state,) = interpreter.eval_stmt(state, stmt)


def test_arithmetic_wraps_and_signed_ops():
    assert fold_binop(BinOpType.PLUS, u32(0xFFFFFFFF), u32(1)) == u32(0)
    assert fold_binop(BinOpType.SDIVIDE, u32(0xFFFFFFF9), u32(2)) == u32(0xFFFFFFFD)
    assert fold_binop(BinOpType.SMOD, u32(0xFFFFFFF9), u32(2)) == u32(0xFFFFFFFF)
    assert fold_binop(BinOpType.ARSHIFT, u32(0x80000000), u32(4)) == u32(0xF8000000)
    assert fold_binop(BinOpType.SLT, u32(0xFFFFFFFF), u32(0)) == exp_true
    assert fold_binop(BinOpType.LT, u32(0xFFFFFFFF), u32(0)) == exp_false


def test_division_by_zero_is_an_evaluation_error():
    with pytest.raises(EvaluationError):
        fold_binop(BinOpType.DIVIDE, u32(1), u32(0))


def test_casts():
    assert fold_cast(CastType.SIGNED, reg_32, Int(0x80, reg_8)) == u32(0xFFFFFF80)
    assert fold_cast(CastType.UNSIGNED, reg_32, Int(0x80, reg_8)) == u32(0x80)
    assert fold_cast(CastType.HIGH, reg_8, u32(0x12345678)) == Int(0x12, reg_8)
    assert fold_cast(CastType.LOW, reg_8, u32(0x12345678)) == Int(0x78, reg_8)


def test_word_store_then_load():
    mem = Var.new("mem", TMem(reg_32))
    eax = Var.new("R_EAX", reg_32)
    interpreter = Interpreter(ConcreteShadowPolicy(Environment()), StdForm())
    state = interpreter.build_default_context([
        Move(mem, Store(mem, u32(0x100), u32(0x11223344), exp_false, reg_32)),
        Move(eax, Load(mem, u32(0x100), exp_false, reg_32)),
        Halt(exp_true),
    ])
    with pytest.raises(Halted) as halt:
        run(interpreter, state)
    delta = halt.value.state.delta
    assert delta[eax] == Symbolic(u32(0x11223344))
    assert delta[mem].memory[0x100] == Int(0x44, reg_8)


def test_load_byte_order_follows_endianness():
    env = Environment()
    for offset, byte in enumerate((0x11, 0x22, 0x33, 0x44)):
        env.record(0x100 + offset, Int(byte, reg_8), Usage.RD, False)
    mem = Var.new("mem", TMem(reg_32))
    interpreter = Interpreter(ConcreteShadowPolicy(env), StdForm())
    little = interpreter.eval_exp({}, Load(mem, u32(0x100), exp_false, reg_32))
    big = interpreter.eval_exp({}, Load(mem, u32(0x100), exp_true, reg_32))
    assert little == u32(0x44332211)
    assert big == u32(0x11223344)


def test_symbolic_branch_forks_with_both_predicates():
    x = Var.new("x", reg_32)
    interpreter = Interpreter(FreePolicy(), StdForm())
    cond = BinOp(BinOpType.EQ, x, u32(1))
    state = interpreter.build_default_context([
        CJmp(cond, Lab("yes"), Lab("no")),
        Label(Name("yes")),
        Label(Name("no")),
    ])
    taken, not_taken = interpreter.eval_stmt(state, state.sigma[0])
    assert taken.pc == 1 and not_taken.pc == 2
    assert taken.pred == BinOp(BinOpType.AND, cond, exp_true)
    assert not_taken.pred == BinOp(BinOpType.AND, UnOp(UnOpType.NOT, cond), exp_true)


def test_symbolic_assert_extends_predicate():
    x = Var.new("x", reg_32)
    interpreter = Interpreter(FreePolicy(), StdForm())
    cond = BinOp(BinOpType.LT, x, u32(5))
    state = interpreter.build_default_context([Assert(cond)])
    (after,) = interpreter.eval_stmt(state, state.sigma[0])
    assert after.pred == BinOp(BinOpType.AND, cond, exp_true)
    assert after.pc == 1


def test_false_assertion_and_unknown_label():
    interpreter = Interpreter(FreePolicy(), StdForm())
    state = interpreter.build_default_context([Assert(exp_false), Jmp(Lab("nowhere"))])
    with pytest.raises(AssertFailed):
        interpreter.eval_stmt(state, state.sigma[0])
    with pytest.raises(UnknownLabel) as exc:
        interpreter.eval_stmt(state, state.sigma[1])
    assert exc.value.label == Name("nowhere")


def test_fetch_past_end_of_program():
    with pytest.raises(EvaluationError):
        Interpreter.inst_fetch([], 0)


def test_symbolic_memory_reads_latest_matching_store():
    mem = Var.new("mem", TMem(reg_32))
    sym = Var.new("symb_1", reg_8)
    chain = Store(Store(mem, u32(0x10), sym, exp_false, reg_8),
                  u32(0x11), Int(7, reg_8), exp_false, reg_8)
    assert generic_lookup_mem(Symbolic(chain), u32(0x10), exp_false) is sym
    assert generic_lookup_mem(Symbolic(chain), u32(0x12), exp_false) == \
        Load(chain, u32(0x12), exp_false, reg_8)


def test_branch_to_missing_label_adds_no_predicate():
    x = Var.new("x", reg_32)
    formula = LetBindFormula()
    interpreter = Interpreter(FreePolicy(), formula)
    state = interpreter.build_default_context([
        CJmp(BinOp(BinOpType.EQ, x, u32(1)), Lab("yes"), Lab("missing")),
        Label(Name("yes")),
    ])
    with pytest.raises(UnknownLabel) as exc:
        interpreter.eval_stmt(state, state.sigma[0])
    assert exc.value.label == Name("missing")
    assert formula.bindings == []


def test_store_index_matches_across_widths():
    mem = Var.new("mem", TMem(reg_32))
    sym = Var.new("symb_1", reg_8)
    chain = Store(mem, u32(0x200), sym, exp_false, reg_8)
    assert generic_lookup_mem(Symbolic(chain), Int(0x200, reg_64), exp_false) is sym
