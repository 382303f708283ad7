"""concolic_trace package: concolic execution of recorded instruction traces."""

__all__ = [
    "il", "symbeval", "environment", "dsa", "concrete", "blocks", "transform", "formula",
    "taint_symbolic", "driver", "exploit", "solver_integration", "trace_io",
    "TraceOptions", "OutcomeKind", "RunOutcome", "concrete_run", "symbolic_run",
    "generate_formula", "decode_exploit",
]

from . import il, symbeval, environment, dsa, concrete, blocks, transform, formula  # noqa: E402
from . import taint_symbolic, driver, exploit, solver_integration, trace_io  # noqa: E402
from .blocks import concrete as concrete_run  # noqa: E402
from .config import TraceOptions  # noqa: E402
from .driver import generate_formula, symbolic_run  # noqa: E402
from .exploit import decode_exploit  # noqa: E402
from .outcome import OutcomeKind, RunOutcome  # noqa: E402

__version__ = "0.1.0"
