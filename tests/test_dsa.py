from concolic_trace.dsa import DsaMap, clean_delta, is_temp, rename_program, rename_stmt
from concolic_trace.il import (
    BinOp, BinOpType, Int, Let, Load, Move, Store, TMem, Var, exp_false, reg_8, reg_32,
)


def test_reads_refer_to_latest_assignment():
    x, y, z = Var.new("R_EAX", reg_32), Var.new("R_EBX", reg_32), Var.new("R_ECX", reg_32)
    program = [
        Move(x, Int(1, reg_32)),
        Move(y, BinOp(BinOpType.PLUS, x, Int(1, reg_32))),
        Move(x, y),
        Move(z, x),
    ]
    renamed, dsa = rename_program(program)

    x1, y1, x2 = renamed[0].var, renamed[1].var, renamed[2].var
    assert renamed[1].exp.e1 is x1
    assert renamed[2].exp is y1
    assert renamed[3].exp is x2
    assert x1 != x2
    assert x1.name == "R_EAXdsa1"
    assert dsa.original(x2) is x
    assert dsa.original(renamed[3].var) is z


def test_unassigned_reads_share_one_name():
    ecx, edx = Var.new("R_ECX", reg_32), Var.new("R_EDX", reg_32)
    dsa = DsaMap()
    stmt = rename_stmt(Move(edx, BinOp(BinOpType.PLUS, ecx, ecx)), dsa)
    assert stmt.exp.e1 is stmt.exp.e2
    assert dsa.original(stmt.exp.e1) is ecx


def test_memory_is_not_renamed():
    mem = Var.new("mem", TMem(reg_32))
    esp = Var.new("R_ESP", reg_32)
    store = Store(mem, esp, Int(1, reg_8), exp_false, reg_8)
    renamed, _ = rename_program([Move(mem, store), Move(esp, Load(mem, esp, exp_false, reg_8))])
    assert renamed[0].var is mem
    assert renamed[0].exp.mem is mem
    assert renamed[1].exp.mem is mem


def test_let_binding_is_scoped():
    t, x = Var.new("t", reg_32), Var.new("x", reg_32)
    dsa = DsaMap()
    stmt = rename_stmt(Move(x, Let(t, Int(1, reg_32), BinOp(BinOpType.PLUS, t, t))), dsa)
    let = stmt.exp
    assert let.var.name.startswith("tdsa")
    assert let.e2.e1 is let.var
    assert t not in dsa.forward


def test_fresh_names_are_unique():
    x = Var.new("x", reg_32)
    dsa = DsaMap()
    names = {dsa.define(x).name for _ in range(5)}
    assert len(names) == 5
    assert dsa.counter == 5


def test_clean_delta_drops_temporaries():
    temp, reg = Var.new("T_t1", reg_32), Var.new("R_EAX", reg_32)
    delta = {temp: 1, reg: 2}
    clean_delta(delta)
    assert delta == {reg: 2}
    assert not is_temp("T_")
