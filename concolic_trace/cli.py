"""Command line interface for concolic-trace."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from . import exploit, trace_io
from .blocks import concrete
from .config import TraceOptions
from .driver import generate_formula
from .errors import ConcolicError
from .formula import formula_size
from .outcome import OutcomeKind, RunOutcome
from .solver_integration import write_formula


def _add_option_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("trace", type=Path, help="JSON-lines trace to process")
    parser.add_argument("--consistency-check", action="store_true",
                        help="Compare evaluated values with the values recorded in the trace")
    parser.add_argument("--no-alt-assignment", action="store_true",
                        help="Substitute untainted constants at read time instead of re-assigning them")
    parser.add_argument("--symbolic-indices", action="store_true",
                        help="Do not pin memory indices to their concrete values")
    parser.add_argument("--no-full-symbolic", action="store_true",
                        help="Inline assignments instead of let-binding them")
    parser.add_argument("--padding", action="store_true",
                        help="Pad missing input bytes of the decoded exploit")
    parser.add_argument("--pad-byte", type=int, default=1, help="Byte used for --padding")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="concolic-trace",
                                     description="Concolic execution of recorded instruction traces")
    subparsers = parser.add_subparsers(dest="command", required=True)

    concrete_parser = subparsers.add_parser(
        "concrete", help="Run a trace concretely and write the concretized trace")
    _add_option_flags(concrete_parser)
    concrete_parser.add_argument("--output", "-o", type=Path, default=Path("concrete.jsonl"),
                                 help="Output JSON-lines path")

    formula_parser = subparsers.add_parser(
        "formula", help="Generate the path predicate of a trace as SMT-LIB")
    _add_option_flags(formula_parser)
    formula_parser.add_argument("--output", "-o", type=Path, default=Path("formula.smt2"),
                                help="Output SMT-LIB path")

    exploit_parser = subparsers.add_parser(
        "exploit", help="Solve the path predicate and write the input bytes")
    _add_option_flags(exploit_parser)
    exploit_parser.add_argument("--output", "-o", type=Path, default=Path("exploit.bin"),
                                help="Where to write the exploit string")
    exploit_parser.add_argument("--formula", type=Path, help="Also write the formula as SMT-LIB")
    craft = exploit_parser.add_mutually_exclusive_group()
    craft.add_argument("--control-flow", metavar="HEXADDR",
                       help="Redirect the last jump of the trace to HEXADDR")
    craft.add_argument("--limited-control", action="store_true",
                       help="Leave the last jump target symbolic")
    craft.add_argument("--payload", help="Place this string after the return address")
    craft.add_argument("--payload-file", type=Path,
                       help="Place the contents of this file after the return address")
    craft.add_argument("--shellcode", type=int, metavar="NOPS",
                       help="Inject shellcode behind a NOP sled of NOPS bytes")

    slice_parser = subparsers.add_parser(
        "slice", help="Keep only the moves that contribute to a variable")
    slice_parser.add_argument("trace", type=Path, help="JSON-lines trace to slice")
    slice_parser.add_argument("variable", help="Variable name to slice on")
    slice_parser.add_argument("--output", "-o", type=Path, default=Path("slice.jsonl"),
                              help="Output JSON-lines path")
    slice_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")

    return parser


def _report(outcome: RunOutcome) -> int:
    if outcome.kind is OutcomeKind.STOPPED_AT_UNKNOWN_LABEL:
        print("[!] trace stopped at an unknown label, kept the executed prefix", file=sys.stderr)
    if outcome.kind is OutcomeKind.ASSERTION_FAILED:
        print(f"[!] {outcome.error}", file=sys.stderr)
        return 1
    if outcome.kind is OutcomeKind.FATAL:
        print(f"[!] {outcome.error}", file=sys.stderr)
        return 2
    return 0


def _craft(args: argparse.Namespace, trace):
    if args.control_flow:
        return exploit.control_flow(args.control_flow, trace)
    if args.limited_control:
        return exploit.limited_control(trace)
    if args.payload is not None:
        return exploit.add_payload(args.payload, trace)
    if args.payload_file is not None:
        return exploit.add_payload_from_file(args.payload_file, trace)
    if args.shellcode is not None:
        return exploit.inject_shellcode(args.shellcode, trace)
    return trace, []


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    options = TraceOptions.from_args(args)

    try:
        trace = trace_io.load_trace(args.trace)
    except (OSError, ConcolicError) as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 2

    if args.command == "concrete":
        outcome = concrete(trace, options)
        status = _report(outcome)
        if status == 0:
            trace_io.save_trace(outcome.trace, args.output)
            print(f"[+] {len(outcome.trace)} statements written to {args.output}")
        return status

    if args.command == "formula":
        outcome = generate_formula(trace, options)
        status = _report(outcome)
        if status == 0:
            write_formula(args.output, outcome.formula)
            print(f"[+] formula of size {formula_size(outcome.formula)} written to {args.output}")
        return status

    if args.command == "exploit":
        try:
            trace, assertions = _craft(args, trace)
            payload = exploit.output_exploit(args.output, trace, options, assertions,
                                             formula_path=args.formula)
        except ConcolicError as exc:
            print(f"[!] {exc}", file=sys.stderr)
            return 1
        print(f"[+] {len(payload)} byte exploit string written to {args.output}")
        return 0

    if args.command == "slice":
        sliced = trace_io.slice_trace(args.variable, trace)
        trace_io.save_trace(sliced, args.output)
        print(f"[+] {len(sliced)} statements written to {args.output}")
        return 0

    parser.error("unknown command")
    return 1


if __name__ == "__main__":
    sys.exit(main())
