"""Exceptions raised by the concolic trace tooling."""
from __future__ import annotations


class ConcolicError(RuntimeError):
    """Base class for every fatal error raised while processing a trace."""


class EvaluationError(ConcolicError):
    """Raised when a trace cannot be evaluated against its own semantics.

    Multiple successor states in straight-line code, symbolic addresses
    during concrete evaluation and unreadable untainted memory all end up
    here.
    """


class FormulaError(ConcolicError):
    """Raised when a constraint of an unexpected shape reaches the formula."""


class TraceFormatError(ConcolicError):
    """Raised when a serialized trace cannot be decoded."""


class ExploitError(ConcolicError):
    """Raised when an exploit cannot be built from the given trace."""


class SolverError(ConcolicError):
    """Raised when the decision procedure gives no usable answer."""
