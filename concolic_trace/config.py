"""Run-time toggles shared by the concrete and symbolic stages."""
from __future__ import annotations

import argparse
from dataclasses import dataclass


@dataclass
class TraceOptions:
    """Evaluation policy switches.

    consistency_check
        Keep the concrete context across blocks and compare it with the
        values the trace recorded; in the symbolic stage, assert tainted
        registers equal their recorded values.
    use_alt_assignment
        Reproduce untainted register values as explicit moves at every
        instruction instead of substituting constants at read time.
    allow_symbolic_indices
        Leave memory indices symbolic instead of pinning them to the
        concretely observed address.
    full_symbolic
        Let-bind every non-temporary assignment and refer to tainted
        variables by name.
    padding
        Fill gaps in the decoded input indices with ``pad_byte``.
    """

    consistency_check: bool = False
    use_alt_assignment: bool = True
    allow_symbolic_indices: bool = False
    full_symbolic: bool = True
    padding: bool = False
    pad_byte: int = 1

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "TraceOptions":
        return cls(
            consistency_check=getattr(args, "consistency_check", False),
            use_alt_assignment=not getattr(args, "no_alt_assignment", False),
            allow_symbolic_indices=getattr(args, "symbolic_indices", False),
            full_symbolic=not getattr(args, "no_full_symbolic", False),
            padding=getattr(args, "padding", False),
            pad_byte=getattr(args, "pad_byte", 1),
        )
