# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON report / external sinks
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: Optional[str]
    message: str
    details: Dict[str, object] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Load-time (fatal, raised before anything runs)
# ----------------------------------------------------------------------

class WorkflowLoadError(CIError):
    def __init__(self, message: str, *, kind: str = "load_error", job: str = "",
                 step: Optional[str] = None, details: Optional[Dict[str, object]] = None):
        super().__init__(kind=kind, job=job, step=step, message=message, details=details or {})


class ExpressionSyntaxError(WorkflowLoadError):
    def __init__(self, expression: str, position: int, reason: str, *, job: str = "",
                 step: Optional[str] = None):
        self.expression = expression
        self.position = position
        super().__init__(
            f"{reason} at position {position} in expression '{expression}'",
            kind="expression_syntax",
            job=job,
            step=step,
            details={"expression": expression, "position": position},
        )

    def located(self, *, job: str = "", step: Optional[str] = None) -> "ExpressionSyntaxError":
        """Return a copy tagged with the job/step the expression came from."""
        reason = self.message.split(" at position ")[0]
        return ExpressionSyntaxError(self.expression, self.position, reason, job=job, step=step)


class CyclicDependencyError(WorkflowLoadError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"dependency cycle: {' -> '.join(self.cycle)}",
            kind="cyclic_dependency",
            job=self.cycle[0] if self.cycle else "",
            details={"cycle": self.cycle},
        )


class UnknownJobError(WorkflowLoadError):
    def __init__(self, job: str, missing: str, known: Sequence[str]):
        self.missing = missing
        super().__init__(
            f"job '{job}' needs unknown job '{missing}'",
            kind="unknown_job",
            job=job,
            details={"known": sorted(known)},
        )


class DuplicateJobError(WorkflowLoadError):
    def __init__(self, ids: List[str]):
        self.ids = ids
        super().__init__(f"duplicate job ids: {ids}", kind="duplicate_job")


class InvalidStepError(WorkflowLoadError):
    def __init__(self, message: str, *, job: str = "", step: Optional[str] = None):
        super().__init__(message, kind="invalid_step", job=job, step=step)


class InvalidMatrixError(WorkflowLoadError):
    def __init__(self, message: str, *, job: str = ""):
        super().__init__(message, kind="invalid_matrix", job=job)


class UnknownActionError(WorkflowLoadError):
    def __init__(self, ref: str, *, job: str = "", step: Optional[str] = None,
                 known: Sequence[str] = ()):
        self.ref = ref
        super().__init__(
            f"no action registered for '{ref}'",
            kind="unknown_action",
            job=job,
            step=step,
            details={"known": sorted(known)},
        )


# ----------------------------------------------------------------------
# Run-time (captured into results, never escape the scheduler)
# ----------------------------------------------------------------------

class StepFailure(CIError):
    def __init__(self, job: str, step: str, message: str, *, exit_code: Optional[int] = None,
                 cmd: Optional[str] = None, kind: str = "step_failure",
                 details: Optional[Dict[str, object]] = None):
        self.exit_code = exit_code
        self.cmd = cmd
        d: Dict[str, object] = {}
        if exit_code is not None:
            d["exit_code"] = exit_code
        d.update(details or {})
        super().__init__(kind=kind, job=job, step=step, message=message, details=d)


class StepTimeout(StepFailure):
    def __init__(self, job: str, step: str, timeout_s: float, *, cmd: Optional[str] = None):
        self.timeout_s = timeout_s
        super().__init__(
            job,
            step,
            f"step exceeded timeout of {timeout_s:g}s",
            cmd=cmd,
            kind="timeout",
            details={"timeout_s": timeout_s},
        )


class CancelledError(CIError):
    def __init__(self, job: str = "", step: Optional[str] = None, message: str = "run cancelled"):
        super().__init__(kind="cancelled", job=job, step=step, message=message, details={})
