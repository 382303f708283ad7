"""JSON-lines trace files and whole-trace utilities.

One statement per line. Addresses are written as hex strings and read
back from either hex strings or integers::

    {"stmt": "label", "addr": "0x8048400"}
    {"stmt": "label", "name": "Read Syscall", "context": [{"name": "mem", "mem": true, ...}]}
    {"stmt": "move", "var": {"exp": "var", "name": "R_EAX", "type": "u32"},
     "exp": {"exp": "int", "value": 5, "type": "u32"}}
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .environment import Environment
from .errors import TraceFormatError
from .il import (
    Addr, Array, Assert, BinOp, BinOpType, Cast, CastType, CJmp, Comment, Exp, Halt, Int, Jmp,
    Lab, Label, Let, Load, Move, Name, Reg, Special, Stmt, Store, TaintAttr, TMem, Type, UnOp,
    UnOpType, Unknown, Usage, Var, exp_vars, stmt_exps,
)

LOGGER = logging.getLogger(__name__)


def _int(value: Union[str, int]) -> int:
    return int(value, 16) if isinstance(value, str) else int(value)


def type_to_json(typ: Type) -> str:
    if isinstance(typ, Reg):
        return f"u{typ.bits}"
    if isinstance(typ, TMem):
        return f"mem{typ.index_type.bits}"
    return f"array{typ.index_type.bits}:{typ.elem_type.bits}"


def type_from_json(text: str) -> Type:
    try:
        if text.startswith("u"):
            return Reg(int(text[1:]))
        if text.startswith("mem"):
            return TMem(Reg(int(text[3:])))
        if text.startswith("array"):
            index, elem = text[5:].split(":")
            return Array(Reg(int(index)), Reg(int(elem)))
    except ValueError:
        pass
    raise TraceFormatError(f"unknown type {text!r}")


def attr_to_json(attr: TaintAttr) -> Dict[str, Any]:
    return {
        "name": attr.name,
        "mem": attr.is_memory,
        "addr": hex(attr.address),
        "value": hex(attr.value),
        "type": type_to_json(attr.value_type),
        "usage": attr.usage.value,
        "taint": attr.taint_index,
    }


def exp_to_json(exp: Exp) -> Dict[str, Any]:
    if isinstance(exp, Int):
        return {"exp": "int", "value": exp.value, "type": type_to_json(exp.typ)}
    if isinstance(exp, Var):
        return {"exp": "var", "name": exp.name, "type": type_to_json(exp.typ)}
    if isinstance(exp, Lab):
        return {"exp": "lab", "name": exp.name}
    if isinstance(exp, BinOp):
        return {"exp": "binop", "op": exp.op.name, "e1": exp_to_json(exp.e1),
                "e2": exp_to_json(exp.e2)}
    if isinstance(exp, UnOp):
        return {"exp": "unop", "op": exp.op.name, "e": exp_to_json(exp.e)}
    if isinstance(exp, Cast):
        return {"exp": "cast", "kind": exp.kind.name, "type": type_to_json(exp.typ),
                "e": exp_to_json(exp.e)}
    if isinstance(exp, Load):
        return {"exp": "load", "mem": exp_to_json(exp.mem), "index": exp_to_json(exp.index),
                "endian": exp_to_json(exp.endian), "type": type_to_json(exp.typ)}
    if isinstance(exp, Store):
        return {"exp": "store", "mem": exp_to_json(exp.mem), "index": exp_to_json(exp.index),
                "value": exp_to_json(exp.value), "endian": exp_to_json(exp.endian),
                "type": type_to_json(exp.typ)}
    if isinstance(exp, Let):
        return {"exp": "let", "var": exp_to_json(exp.var), "e1": exp_to_json(exp.e1),
                "e2": exp_to_json(exp.e2)}
    if isinstance(exp, Unknown):
        return {"exp": "unknown", "msg": exp.msg, "type": type_to_json(exp.typ)}
    raise TypeError(f"cannot serialize {exp!r}")


def stmt_to_json(stmt: Stmt) -> Dict[str, Any]:
    if isinstance(stmt, Move):
        payload = {"stmt": "move", "var": exp_to_json(stmt.var), "exp": exp_to_json(stmt.exp)}
    elif isinstance(stmt, Jmp):
        payload = {"stmt": "jmp", "exp": exp_to_json(stmt.exp)}
    elif isinstance(stmt, CJmp):
        payload = {"stmt": "cjmp", "cond": exp_to_json(stmt.cond),
                   "true": exp_to_json(stmt.true_target),
                   "false": exp_to_json(stmt.false_target)}
    elif isinstance(stmt, Label):
        payload = {"stmt": "label"}
        if isinstance(stmt.label, Addr):
            payload["addr"] = hex(stmt.label.value)
        else:
            payload["name"] = stmt.label.name
        if stmt.context:
            payload["context"] = [attr_to_json(attr) for attr in stmt.context]
    elif isinstance(stmt, Halt):
        payload = {"stmt": "halt", "exp": exp_to_json(stmt.exp)}
    elif isinstance(stmt, Assert):
        payload = {"stmt": "assert", "exp": exp_to_json(stmt.exp)}
    elif isinstance(stmt, Comment):
        payload = {"stmt": "comment", "text": stmt.text}
    elif isinstance(stmt, Special):
        payload = {"stmt": "special", "text": stmt.text}
    else:
        raise TypeError(f"cannot serialize {stmt!r}")
    if stmt.attrs:
        payload["attrs"] = list(stmt.attrs)
    return payload


class TraceDecoder:
    """Decodes statements, giving every ``(name, type)`` a single variable."""

    def __init__(self):
        self.vars: Dict[Tuple[str, Type], Var] = {}

    def var(self, name: str, typ: Type) -> Var:
        key = (name, typ)
        try:
            return self.vars[key]
        except KeyError:
            var = self.vars[key] = Var.new(name, typ)
            return var

    def attr(self, item: Dict[str, Any]) -> TaintAttr:
        return TaintAttr(
            name=item.get("name", ""),
            is_memory=bool(item.get("mem", False)),
            address=_int(item.get("addr", 0)),
            value=_int(item.get("value", 0)),
            value_type=type_from_json(item.get("type", "u32")),
            usage=Usage(item.get("usage", "RD")),
            taint_index=int(item.get("taint", 0)),
        )

    def exp(self, item: Dict[str, Any]) -> Exp:
        kind = item["exp"]
        if kind == "int":
            return Int(_int(item["value"]), type_from_json(item["type"]))
        if kind == "var":
            return self.var(item["name"], type_from_json(item["type"]))
        if kind == "lab":
            return Lab(item["name"])
        if kind == "binop":
            return BinOp(BinOpType[item["op"]], self.exp(item["e1"]), self.exp(item["e2"]))
        if kind == "unop":
            return UnOp(UnOpType[item["op"]], self.exp(item["e"]))
        if kind == "cast":
            return Cast(CastType[item["kind"]], type_from_json(item["type"]), self.exp(item["e"]))
        if kind == "load":
            return Load(self.exp(item["mem"]), self.exp(item["index"]), self.exp(item["endian"]),
                        type_from_json(item["type"]))
        if kind == "store":
            return Store(self.exp(item["mem"]), self.exp(item["index"]), self.exp(item["value"]),
                         self.exp(item["endian"]), type_from_json(item["type"]))
        if kind == "let":
            return Let(self.exp(item["var"]), self.exp(item["e1"]), self.exp(item["e2"]))
        if kind == "unknown":
            return Unknown(item.get("msg", ""), type_from_json(item["type"]))
        raise TraceFormatError(f"unknown expression kind {kind!r}")

    def stmt(self, item: Dict[str, Any]) -> Stmt:
        kind = item["stmt"]
        attrs = tuple(item.get("attrs", ()))
        if kind == "move":
            return Move(self.exp(item["var"]), self.exp(item["exp"]), attrs)
        if kind == "jmp":
            return Jmp(self.exp(item["exp"]), attrs)
        if kind == "cjmp":
            return CJmp(self.exp(item["cond"]), self.exp(item["true"]), self.exp(item["false"]),
                        attrs)
        if kind == "label":
            label = Addr(_int(item["addr"])) if "addr" in item else Name(item["name"])
            context = tuple(self.attr(attr) for attr in item.get("context", ()))
            return Label(label, attrs, context)
        if kind == "halt":
            return Halt(self.exp(item["exp"]), attrs)
        if kind == "assert":
            return Assert(self.exp(item["exp"]), attrs)
        if kind == "comment":
            return Comment(item.get("text", ""), attrs)
        if kind == "special":
            return Special(item.get("text", ""), attrs)
        raise TraceFormatError(f"unknown statement kind {kind!r}")


def stmt_from_json(item: Dict[str, Any], decoder: Optional[TraceDecoder] = None) -> Stmt:
    return (decoder or TraceDecoder()).stmt(item)


def load_trace(path: Union[str, Path]) -> List[Stmt]:
    decoder = TraceDecoder()
    trace: List[Stmt] = []
    with open(path) as infile:
        for lineno, line in enumerate(infile, 1):
            if not line.strip():
                continue
            try:
                trace.append(decoder.stmt(json.loads(line)))
            except (KeyError, ValueError, TypeError) as exc:
                raise TraceFormatError(f"{path}:{lineno}: {exc}") from exc
    LOGGER.debug("loaded %d statements from %s", len(trace), path)
    return trace


def save_trace(trace: Iterable[Stmt], path: Union[str, Path]) -> None:
    with open(path, "w") as outfile:
        for stmt in trace:
            outfile.write(json.dumps(stmt_to_json(stmt)) + "\n")


def slice_trace(varname: str, trace: Sequence[Stmt]) -> List[Stmt]:
    """Moves that contribute to the final value of ``varname``."""
    wanted: Set[str] = {varname}
    kept: List[Stmt] = []
    for stmt in reversed(trace):
        if isinstance(stmt, Move) and stmt.var.name in wanted:
            wanted.discard(stmt.var.name)
            wanted.update(var.name for var in exp_vars(stmt.exp))
            kept.append(stmt)
    kept.reverse()
    return kept


def add_assignments(trace: Sequence[Stmt]) -> List[Stmt]:
    """Prefix ``trace`` with moves of the first traced value of every register read."""
    env = Environment()
    first_seen: Dict[str, Move] = {}
    for stmt in trace:
        env.update_from_label(stmt)
        for exp in stmt_exps(stmt):
            for var in exp_vars(exp):
                traced = env.lookup(var.name)
                if traced is not None and var.name not in first_seen:
                    first_seen[var.name] = Move(var, traced.expr)
    return list(first_seen.values()) + list(trace)
