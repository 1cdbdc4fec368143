# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import DuplicateJobError, InvalidStepError


class Status(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL

    def __str__(self) -> str:
        return self.value


TERMINAL = frozenset({Status.SUCCESS, Status.FAILURE, Status.SKIPPED, Status.CANCELLED})


@dataclass(frozen=True)
class Step:
    """
    A single unit inside a job: either a shell command (`run`) or an action
    invocation (`uses`), never both.
    """
    name: str = ""
    run: Optional[str] = None
    uses: Optional[str] = None
    id: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    if_: Optional[str] = None
    shell: Optional[str] = None
    working_directory: Optional[str] = None
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None

    def __post_init__(self) -> None:
        if self.run is not None and self.uses is not None:
            raise InvalidStepError(
                job="",
                step=self.label,
                message="step sets both 'run' and 'uses'",
            )
        if self.run is None and self.uses is None:
            raise InvalidStepError(
                job="",
                step=self.label,
                message="step needs either 'run' or 'uses'",
            )

    @property
    def label(self) -> str:
        # display name: name > id > command/action
        if self.name:
            return self.name
        if self.id:
            return self.id
        if self.uses:
            return f"Run {self.uses}"
        first_line = (self.run or "").strip().splitlines()
        return f"Run {first_line[0]}" if first_line else "Run"


@dataclass(frozen=True)
class MatrixSpec:
    """Axes in declaration order plus include/exclude overrides."""
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.axes and not self.include


@dataclass(frozen=True)
class Strategy:
    matrix: Optional[MatrixSpec] = None
    fail_fast: bool = False
    max_parallel: Optional[int] = None


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + optional matrix strategy.

    `needs` lists job ids that must reach a terminal state before any
    instance of this job may start.
    """
    id: str
    steps: List[Step]
    name: Optional[str] = None
    needs: List[str] = field(default_factory=list)
    if_: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    strategy: Strategy = field(default_factory=Strategy)
    outputs: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None

    @property
    def matrix(self) -> Optional[MatrixSpec]:
        return self.strategy.matrix


@dataclass(frozen=True)
class Workflow:
    """Top-level pipeline. Job ids are unique; the object is not mutated after load."""
    name: str
    jobs: List[Job]
    env: Dict[str, str] = field(default_factory=dict)
    on: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None

    def __post_init__(self) -> None:
        ids = [j.id for j in self.jobs]
        if len(set(ids)) != len(ids):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise DuplicateJobError(dupes)

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)


@dataclass(frozen=True)
class JobInstance:
    """One schedulable execution of a Job for a concrete matrix binding."""
    job: Job
    bindings: Dict[str, Any]
    id: str
    index: int  # declaration order across the whole workflow

    @property
    def job_id(self) -> str:
        return self.job.id


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class ExecutionResult:
    """Result of one step or one job instance."""
    status: Status = Status.PENDING
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    error_kind: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def start(self) -> None:
        self.status = Status.RUNNING
        self.started_at = time.time()

    def finish(self, status: Status) -> None:
        self.status = status
        self.finished_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "outputs": dict(self.outputs),
            "error_kind": self.error_kind,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class StepResult(ExecutionResult):
    name: str = ""
    step_id: Optional[str] = None
    index: int = 0
    # conclusion differs from status only for continue-on-error steps
    conclusion: Optional[Status] = None

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(
            name=self.name,
            step_id=self.step_id,
            index=self.index,
            conclusion=(self.conclusion or self.status).value,
        )
        return d


@dataclass
class JobResult(ExecutionResult):
    instance_id: str = ""
    job_id: str = ""
    name: str = ""
    bindings: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(
            instance_id=self.instance_id,
            job_id=self.job_id,
            name=self.name,
            bindings=dict(self.bindings),
            required=self.required,
            steps=[s.to_dict() for s in self.steps],
        )
        return d


@dataclass
class RunResult:
    """Final pipeline status plus every job instance result, in declaration order."""
    workflow: str
    status: Status
    jobs: Dict[str, JobResult]
    transitions: List[tuple] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is Status.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "status": self.status.value,
            "jobs": {k: v.to_dict() for k, v in self.jobs.items()},
        }
