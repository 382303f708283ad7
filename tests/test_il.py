from concolic_trace.il import (
    Assert, BinOp, BinOpType, Cast, CastType, Comment, ExpTransformer, Int, Let, Move, Var,
    all_vars, exp_false, exp_true, exp_vars, map_stmt_exps, pretty, reg_1, reg_8, reg_32,
    to_sval, type_of,
)


def test_booleans_print_as_words():
    assert str(exp_true) == "true"
    assert str(exp_false) == "false"
    assert str(Int(0x41, reg_32)) == "0x41:u32"


def test_signed_view_of_values():
    assert to_sval(reg_8, 0xFF) == -1
    assert to_sval(reg_32, 0x7FFFFFFF) == 0x7FFFFFFF


def test_comparisons_are_one_bit():
    x = Var.new("x", reg_32)
    assert type_of(BinOp(BinOpType.SLT, x, Int(1, reg_32))) == reg_1
    assert type_of(BinOp(BinOpType.PLUS, x, Int(1, reg_32))) == reg_32
    assert type_of(Cast(CastType.LOW, reg_8, x)) == reg_8


def test_exp_vars_in_order_of_appearance():
    x, y, t = Var.new("x", reg_32), Var.new("y", reg_32), Var.new("t", reg_32)
    exp = BinOp(BinOpType.PLUS, y, Let(t, x, BinOp(BinOpType.TIMES, t, y)))
    assert exp_vars(exp) == [y, t, x]


def test_map_stmt_exps_leaves_assigned_var_alone():
    x, y = Var.new("x", reg_32), Var.new("y", reg_32)
    stmt = Move(x, y)
    mapped = map_stmt_exps(stmt, lambda exp: Int(3, reg_32) if exp == y else exp)
    assert mapped == Move(x, Int(3, reg_32))
    assert all_vars([stmt, Assert(BinOp(BinOpType.EQ, x, y))]) == [x, y]


def test_transformer_keeps_unchanged_nodes():
    x = Var.new("x", reg_32)
    exp = BinOp(BinOpType.PLUS, x, Int(1, reg_32))
    assert ExpTransformer().visit(exp) is exp


def test_pretty_prints_programs_line_by_line():
    assert pretty(exp_true) == "true"
    assert pretty([Comment("a"), Comment("b")]) == "/*a*/\n/*b*/"
