# report.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from .model import JobResult, RunResult, StepResult

# -------------------- Schemas --------------------

class StepReport(BaseModel):
    name: str
    step_id: str | None = None
    index: int
    status: str
    conclusion: str
    exit_code: int | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    error_kind: str | None = None
    error: str | None = None
    stdout: str = ""
    stderr: str = ""
    duration_s: float | None = None


class JobReport(BaseModel):
    instance_id: str
    job_id: str
    name: str
    bindings: dict[str, Any] = Field(default_factory=dict)
    status: str
    required: bool = True
    outputs: dict[str, str] = Field(default_factory=dict)
    error_kind: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_s: float | None = None
    steps: list[StepReport] = Field(default_factory=list)


class RunReport(BaseModel):
    workflow: str
    run_id: str
    status: str
    event: str = "push"
    ref: str = ""
    sha: str = ""
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    jobs: list[JobReport] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"


# -------------------- Builders --------------------

def _ts(t: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(t, tz=timezone.utc) if t is not None else None


def _same(text: str) -> str:
    return text


def step_report(step: StepResult, redact: Callable[[str], str] = _same) -> StepReport:
    return StepReport(
        name=step.name,
        step_id=step.step_id,
        index=step.index,
        status=step.status.value,
        conclusion=(step.conclusion or step.status).value,
        exit_code=step.exit_code,
        outputs={k: redact(v) for k, v in step.outputs.items()},
        error_kind=step.error_kind,
        error=redact(step.error) if step.error else step.error,
        stdout=redact(step.stdout),
        stderr=redact(step.stderr),
        duration_s=step.duration,
    )


def job_report(job: JobResult, redact: Callable[[str], str] = _same) -> JobReport:
    return JobReport(
        instance_id=job.instance_id,
        job_id=job.job_id,
        name=job.name,
        bindings=dict(job.bindings),
        status=job.status.value,
        required=job.required,
        outputs={k: redact(v) for k, v in job.outputs.items()},
        error_kind=job.error_kind,
        error=redact(job.error) if job.error else job.error,
        started_at=_ts(job.started_at),
        finished_at=_ts(job.finished_at),
        duration_s=job.duration,
        steps=[step_report(s, redact) for s in job.steps],
    )


def build_report(
    result: RunResult,
    *,
    run_id: str = "",
    event: str = "push",
    ref: str = "",
    sha: str = "",
    redact: Callable[[str], str] = _same,
) -> RunReport:
    """
    Sink-ready view of a run. Pass the run's redactor so outputs that carry
    secret values are masked (build the report before the run is closed).
    """
    return RunReport(
        workflow=result.workflow,
        run_id=run_id,
        status=result.status.value,
        event=event,
        ref=ref,
        sha=sha,
        jobs=[job_report(j, redact) for j in result.jobs.values()],
    )


# -------------------- Sinks --------------------

def write_report(report: RunReport, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    return p


class ReportUploadError(Exception):
    pass


def post_report(report: RunReport, url: str, *, timeout: float = 30.0) -> Optional[dict]:
    """POST the report as JSON; returns the decoded response body, if any."""
    req = urllib.request.Request(
        url,
        data=report.model_dump_json().encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            body = response.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        raise ReportUploadError(f"HTTP {e.code} {e.reason}: {error_body}".rstrip(": ")) from e
    except urllib.error.URLError as e:
        raise ReportUploadError(f"could not connect to {url}: {e.reason}") from e
    if not body:
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise ReportUploadError(f"invalid JSON response from {url}: {e}") from e
