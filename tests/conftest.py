import sys
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

# Ensure the project package is importable when tests run via pytest
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from concolic_trace.il import (  # noqa: E402
    Addr, BinOp, BinOpType, Cast, CastType, CJmp, Int, Lab, Label, Load, Move, Name, Special,
    Stmt, TaintAttr, TMem, Type, Usage, Var, exp_false, reg_8, reg_32,
)


def reg_attr(name: str, value: int, taint: int = 0, usage: Usage = Usage.RD,
             typ: Type = reg_32) -> TaintAttr:
    return TaintAttr(name, False, 0, value, typ, usage, taint)


def mem_attr(addr: int, value: int, taint: int = 0, usage: Usage = Usage.RD,
             typ: Type = reg_8) -> TaintAttr:
    return TaintAttr("mem", True, addr, value, typ, usage, taint)


class TraceBuilder:
    """Builds small traces with one variable per (name, type)."""

    reg_attr = staticmethod(reg_attr)
    mem_attr = staticmethod(mem_attr)

    def __init__(self):
        self.vars: Dict[Tuple[str, Type], Var] = {}
        self.mem = self.var("mem", TMem(reg_32))

    def var(self, name: str, typ: Type = reg_32) -> Var:
        key = (name, typ)
        if key not in self.vars:
            self.vars[key] = Var.new(name, typ)
        return self.vars[key]

    def load8(self, addr: int) -> Load:
        return Load(self.mem, Int(addr, reg_32), exp_false, reg_8)

    def instruction(self, addr: int, attrs, *stmts: Stmt) -> List[Stmt]:
        return [Label(Addr(addr)), Label(Name(f"pc_{addr:#x}"), context=tuple(attrs)), *stmts]

    def input_trace(self) -> List[Stmt]:
        """Read two input bytes, load the first into EAX and branch on it being 'A'."""
        eax = self.var("R_EAX")
        return [
            *self.instruction(0x0FF0, [], Special("int 0x80"),
                              Label(Name("Read Syscall"), context=(
                                  mem_attr(0x200, 0x41, taint=1, usage=Usage.WR),
                                  mem_attr(0x201, 0x42, taint=2, usage=Usage.WR),
                              ))),
            *self.instruction(
                0x1000,
                [mem_attr(0x200, 0x41, taint=1), reg_attr("R_EAX", 0, usage=Usage.WR)],
                Move(eax, Cast(CastType.UNSIGNED, reg_32, self.load8(0x200))),
            ),
            *self.instruction(
                0x1003,
                [reg_attr("R_EAX", 0x41, taint=1)],
                CJmp(BinOp(BinOpType.EQ, eax, Int(0x41, reg_32)),
                     Lab("pc_0x1010"), Lab("pc_0x1005")),
            ),
        ]


@pytest.fixture
def builder() -> TraceBuilder:
    return TraceBuilder()
