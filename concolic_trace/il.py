"""Intermediate language for recorded instruction traces.

Expressions and statements are immutable dataclasses. A trace is a plain
list of statements, usually produced by ``trace_io.load_trace``.
"""
from __future__ import annotations

import enum
import itertools
from dataclasses import dataclass, replace
from typing import Callable, ClassVar, Iterable, List, Tuple, Union

_VAR_IDS = itertools.count(1)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Reg:
    bits: int

    def __str__(self) -> str:
        return f"u{self.bits}"


@dataclass(frozen=True)
class TMem:
    index_type: Reg

    def __str__(self) -> str:
        return f"?{self.index_type}"


@dataclass(frozen=True)
class Array:
    index_type: Reg
    elem_type: Reg

    def __str__(self) -> str:
        return f"{self.elem_type}[{self.index_type}]"


Type = Union[Reg, TMem, Array]

reg_1 = Reg(1)
reg_8 = Reg(8)
reg_16 = Reg(16)
reg_32 = Reg(32)
reg_64 = Reg(64)


def is_mem_type(typ: Type) -> bool:
    return isinstance(typ, (TMem, Array))


def mask(bits: int) -> int:
    return (1 << bits) - 1


def to_val(typ: Reg, value: int) -> int:
    """Truncate ``value`` to the width of ``typ`` (unsigned)."""
    return value & mask(typ.bits)


def to_sval(typ: Reg, value: int) -> int:
    """Interpret ``value`` as a two's complement number of width ``typ``."""
    value = to_val(typ, value)
    if value >> (typ.bits - 1):
        value -= 1 << typ.bits
    return value


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------

class BinOpType(enum.Enum):
    PLUS = "+"
    MINUS = "-"
    TIMES = "*"
    DIVIDE = "/"
    SDIVIDE = "$/"
    MOD = "%"
    SMOD = "$%"
    LSHIFT = "<<"
    RSHIFT = ">>"
    ARSHIFT = "$>>"
    AND = "&"
    OR = "|"
    XOR = "^"
    EQ = "=="
    NEQ = "<>"
    LT = "<"
    LE = "<="
    SLT = "$<"
    SLE = "$<="


COMPARISONS = frozenset({
    BinOpType.EQ, BinOpType.NEQ, BinOpType.LT, BinOpType.LE, BinOpType.SLT, BinOpType.SLE,
})


class UnOpType(enum.Enum):
    NEG = "-"
    NOT = "~"


class CastType(enum.Enum):
    UNSIGNED = "pad"
    SIGNED = "extend"
    HIGH = "high"
    LOW = "low"


class Usage(enum.Enum):
    RD = "RD"
    WR = "WR"
    RW = "RW"


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

class Exp:
    """Base class of all expressions."""

    CHILDREN: ClassVar[Tuple[str, ...]] = ()


@dataclass(frozen=True)
class Int(Exp):
    value: int
    typ: Reg

    def __str__(self) -> str:
        if self.typ == reg_1:
            return "true" if self.value else "false"
        if self.value < 10:
            return f"{self.value}:{self.typ}"
        return f"{self.value:#x}:{self.typ}"


@dataclass(frozen=True)
class Var(Exp):
    id: int
    name: str
    typ: Type

    @classmethod
    def new(cls, name: str, typ: Type) -> "Var":
        return cls(next(_VAR_IDS), name, typ)

    def __str__(self) -> str:
        return f"{self.name}:{self.typ}"


@dataclass(frozen=True)
class Lab(Exp):
    name: str

    def __str__(self) -> str:
        return f'"{self.name}"'


@dataclass(frozen=True)
class BinOp(Exp):
    op: BinOpType
    e1: Exp
    e2: Exp

    CHILDREN: ClassVar[Tuple[str, ...]] = ("e1", "e2")

    def __str__(self) -> str:
        return f"({self.e1} {self.op.value} {self.e2})"


@dataclass(frozen=True)
class UnOp(Exp):
    op: UnOpType
    e: Exp

    CHILDREN: ClassVar[Tuple[str, ...]] = ("e",)

    def __str__(self) -> str:
        return f"{self.op.value}{self.e}"


@dataclass(frozen=True)
class Cast(Exp):
    kind: CastType
    typ: Reg
    e: Exp

    CHILDREN: ClassVar[Tuple[str, ...]] = ("e",)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.typ}({self.e})"


@dataclass(frozen=True)
class Load(Exp):
    mem: Exp
    index: Exp
    endian: Exp
    typ: Reg

    CHILDREN: ClassVar[Tuple[str, ...]] = ("mem", "index", "endian")

    def __str__(self) -> str:
        return f"{self.mem}[{self.index}, {_endian_str(self.endian)}]:{self.typ}"


@dataclass(frozen=True)
class Store(Exp):
    mem: Exp
    index: Exp
    value: Exp
    endian: Exp
    typ: Reg

    CHILDREN: ClassVar[Tuple[str, ...]] = ("mem", "index", "value", "endian")

    def __str__(self) -> str:
        return (f"{self.mem} with [{self.index}, {_endian_str(self.endian)}]:{self.typ}"
                f" = {self.value}")


@dataclass(frozen=True)
class Let(Exp):
    var: Var
    e1: Exp
    e2: Exp

    CHILDREN: ClassVar[Tuple[str, ...]] = ("e1", "e2")

    def __str__(self) -> str:
        return f"(let {self.var} := {self.e1} in {self.e2})"


@dataclass(frozen=True)
class Unknown(Exp):
    msg: str
    typ: Type

    def __str__(self) -> str:
        return f'unknown "{self.msg}":{self.typ}'


exp_true = Int(1, reg_1)
exp_false = Int(0, reg_1)


def _endian_str(endian: Exp) -> str:
    if endian == exp_false:
        return "e_little"
    if endian == exp_true:
        return "e_big"
    return str(endian)


def type_of(exp: Exp) -> Type:
    if isinstance(exp, (Int, Var, Cast, Load, Unknown)):
        return exp.typ
    if isinstance(exp, BinOp):
        return reg_1 if exp.op in COMPARISONS else type_of(exp.e1)
    if isinstance(exp, UnOp):
        return type_of(exp.e)
    if isinstance(exp, Store):
        return type_of(exp.mem)
    if isinstance(exp, Let):
        return type_of(exp.e2)
    if isinstance(exp, Lab):
        return reg_64
    raise TypeError(f"not an expression: {exp!r}")


def index_type(typ: Type) -> Reg:
    if isinstance(typ, (TMem, Array)):
        return typ.index_type
    raise TypeError(f"not a memory type: {typ}")


# ---------------------------------------------------------------------------
# Labels, attributes and statements
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Addr:
    value: int

    def __str__(self) -> str:
        return f"{self.value:#x}"


@dataclass(frozen=True)
class Name:
    name: str

    def __str__(self) -> str:
        return self.name


LabelKind = Union[Addr, Name]


def addr_label_name(value: int) -> str:
    return f"pc_{value:#x}"


@dataclass(frozen=True)
class TaintAttr:
    """Concrete operand value recorded by the tracer for one instruction."""

    name: str
    is_memory: bool
    address: int
    value: int
    value_type: Reg
    usage: Usage
    taint_index: int = 0

    @property
    def tainted(self) -> bool:
        return self.taint_index != 0

    def __str__(self) -> str:
        where = f"mem[{self.address:#x}]" if self.is_memory else self.name
        return f"{where}={self.value:#x}:{self.value_type} {self.usage.value} t{self.taint_index}"


class Stmt:
    """Base class of all statements."""


@dataclass(frozen=True)
class Move(Stmt):
    var: Var
    exp: Exp
    attrs: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.var} = {self.exp}"


@dataclass(frozen=True)
class Jmp(Stmt):
    exp: Exp
    attrs: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"jmp {self.exp}"


@dataclass(frozen=True)
class CJmp(Stmt):
    cond: Exp
    true_target: Exp
    false_target: Exp
    attrs: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"cjmp {self.cond}, {self.true_target}, {self.false_target}"


@dataclass(frozen=True)
class Label(Stmt):
    label: LabelKind
    attrs: Tuple[str, ...] = ()
    context: Tuple[TaintAttr, ...] = ()

    def __str__(self) -> str:
        head = f"addr {self.label}" if isinstance(self.label, Addr) else f"label {self.label}"
        if self.context:
            head += " @context " + ", ".join(str(attr) for attr in self.context)
        return head


@dataclass(frozen=True)
class Halt(Stmt):
    exp: Exp
    attrs: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"halt {self.exp}"


@dataclass(frozen=True)
class Assert(Stmt):
    exp: Exp
    attrs: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"assert {self.exp}"


@dataclass(frozen=True)
class Comment(Stmt):
    text: str
    attrs: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"/*{self.text}*/"


@dataclass(frozen=True)
class Special(Stmt):
    text: str
    attrs: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f'special "{self.text}"'


def is_addr_label(stmt: Stmt) -> bool:
    return isinstance(stmt, Label) and isinstance(stmt.label, Addr)


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------

class ExpTransformer:
    """Rewrites expressions, dispatching on the node class like ``ast.NodeTransformer``.

    ``visit_<Class>`` methods return the replacement node. Nodes without a
    handler are rebuilt from their visited children.
    """

    def visit(self, exp: Exp) -> Exp:
        method = getattr(self, "visit_" + type(exp).__name__, None)
        if method is None:
            return self.generic_visit(exp)
        return method(exp)

    def generic_visit(self, exp: Exp) -> Exp:
        changes = {}
        for name in exp.CHILDREN:
            child = getattr(exp, name)
            new_child = self.visit(child)
            if new_child is not child:
                changes[name] = new_child
        return replace(exp, **changes) if changes else exp


def map_stmt_exps(stmt: Stmt, fn: Callable[[Exp], Exp]) -> Stmt:
    """Apply ``fn`` to every expression read by ``stmt``.

    The assigned variable of a ``Move`` is not an expression read and is
    left untouched.
    """
    if isinstance(stmt, Move):
        return replace(stmt, exp=fn(stmt.exp))
    if isinstance(stmt, (Jmp, Halt, Assert)):
        return replace(stmt, exp=fn(stmt.exp))
    if isinstance(stmt, CJmp):
        return replace(stmt, cond=fn(stmt.cond), true_target=fn(stmt.true_target),
                       false_target=fn(stmt.false_target))
    return stmt


def stmt_exps(stmt: Stmt) -> List[Exp]:
    if isinstance(stmt, Move):
        return [stmt.exp]
    if isinstance(stmt, (Jmp, Halt, Assert)):
        return [stmt.exp]
    if isinstance(stmt, CJmp):
        return [stmt.cond, stmt.true_target, stmt.false_target]
    return []


def exp_vars(exp: Exp) -> List[Var]:
    """Variables occurring in ``exp``, in order of first appearance."""
    found: dict = {}
    stack = [exp]
    while stack:
        node = stack.pop()
        if isinstance(node, Var):
            found.setdefault(node, None)
            continue
        if isinstance(node, Let):
            found.setdefault(node.var, None)
        stack.extend(reversed([getattr(node, name) for name in node.CHILDREN]))
    return list(found)


def all_vars(program: Iterable[Stmt]) -> List[Var]:
    """Every variable assigned or read in ``program``."""
    found: dict = {}
    for stmt in program:
        if isinstance(stmt, Move):
            found.setdefault(stmt.var, None)
        for exp in stmt_exps(stmt):
            for var in exp_vars(exp):
                found.setdefault(var, None)
    return list(found)


def pretty(node: Union[Exp, Stmt, Iterable[Stmt]]) -> str:
    """Render an expression or statement, or a program one statement per line."""
    if isinstance(node, (Exp, Stmt)):
        return str(node)
    return "\n".join(str(stmt) for stmt in node)
