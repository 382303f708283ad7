"""Result of running a trace through one of the evaluation stages."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional

from .il import Exp, Stmt
from .symbeval import State


class OutcomeKind(enum.Enum):
    COMPLETED = "completed"
    STOPPED_AT_UNKNOWN_LABEL = "stopped at unknown label"
    ASSERTION_FAILED = "assertion failed"
    FATAL = "fatal"


@dataclass
class RunOutcome:
    kind: OutcomeKind
    trace: List[Stmt] = field(default_factory=list)
    formula: Optional[Exp] = None
    state: Optional[State] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.COMPLETED, OutcomeKind.STOPPED_AT_UNKNOWN_LABEL)

    def unwrap(self) -> "RunOutcome":
        """Return ``self``, re-raising the captured error of a failed run."""
        if not self.ok and self.error is not None:
            raise self.error
        return self
