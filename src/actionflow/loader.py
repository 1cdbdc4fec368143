# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # PyYAML

from .errors import CIError, InvalidMatrixError, InvalidStepError, WorkflowLoadError
from .expressions import to_string
from .model import Job, MatrixSpec, Step, Strategy, Workflow
from .triggers import normalize_on

# ---------------------------------------------------------------------
# Two workflow formats:
#
#   *.yml / *.yaml   the GitHub Actions subset (jobs/steps/strategy/needs)
#   *.py             a module defining workflow() or WORKFLOW (see dsl.py)
#
# Keys outside the subset (runs-on, permissions, services, ...) are ignored.
# ---------------------------------------------------------------------

YAML_SUFFIXES = (".yml", ".yaml")

DISCOVERY_PATTERNS = (
    "*_workflow.py",
    ".actionflow.yml",
    ".actionflow.yaml",
    ".github/workflows/*.yml",
    ".github/workflows/*.yaml",
)


def discover_workflows(root: str | Path = ".") -> List[Path]:
    """Workflow files under root, in discovery-pattern order."""
    base = Path(root)
    found: List[Path] = []
    for pattern in DISCOVERY_PATTERNS:
        for p in sorted(base.glob(pattern)):
            if p.is_file() and p not in found:
                found.append(p)
    return found


def load_workflow(path: str | Path) -> Workflow:
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(f"workflow file not found: {wf_path}", kind="not_found",
                                details={"path": str(wf_path)})
    if wf_path.suffix in YAML_SUFFIXES:
        return load_yaml(wf_path)
    if wf_path.suffix == ".py":
        return load_python(wf_path)
    raise WorkflowLoadError(
        f"workflow must be a .yml, .yaml or .py file, got: {wf_path.name}",
        kind="unsupported_format",
        details={"path": str(wf_path)},
    )


# ----------------------------------------------------------------------
# YAML
# ----------------------------------------------------------------------

def load_yaml(path: str | Path) -> Workflow:
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise WorkflowLoadError(f"invalid YAML: {e}", kind="yaml_error", details={"path": str(p)}) from e
    try:
        return workflow_from_dict(data, source=str(p), default_name=p.stem)
    except CIError as e:
        e.details.setdefault("path", str(p))
        raise


def _mapping(value: Any, what: str, *, job: str = "") -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise WorkflowLoadError(f"{what} must be a mapping, got {type(value).__name__}", job=job)
    return value


def _str_env(value: Any, what: str, *, job: str = "") -> Dict[str, str]:
    return {str(k): to_string(v) for k, v in _mapping(value, what, job=job).items()}


def _flag(value: Any, what: str, *, job: str = "") -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise WorkflowLoadError(f"{what} must be true or false, got {value!r}", job=job)


def _minutes(value: Any, what: str, *, job: str = "") -> Optional[float]:
    if value is None:
        return None
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        raise WorkflowLoadError(f"{what} must be a number, got {value!r}", job=job) from None
    if minutes <= 0:
        raise WorkflowLoadError(f"{what} must be positive, got {value!r}", job=job)
    return minutes


def _condition(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_step(raw: Any, job_id: str, n: int) -> Step:
    if not isinstance(raw, dict):
        raise InvalidStepError(f"step {n + 1} must be a mapping", job=job_id)
    label = str(raw.get("name") or raw.get("id") or f"step {n + 1}")
    where = f"jobs.{job_id}.steps[{n}]"
    try:
        return Step(
            name=str(raw.get("name") or ""),
            run=None if raw.get("run") is None else str(raw["run"]),
            uses=None if raw.get("uses") is None else str(raw["uses"]),
            id=None if raw.get("id") is None else str(raw["id"]),
            with_=dict(_mapping(raw.get("with"), f"{where}.with", job=job_id)),
            env=_str_env(raw.get("env"), f"{where}.env", job=job_id),
            if_=_condition(raw.get("if")),
            shell=None if raw.get("shell") is None else str(raw["shell"]),
            working_directory=raw.get("working-directory"),
            continue_on_error=_flag(raw.get("continue-on-error"), f"{where}.continue-on-error", job=job_id),
            timeout_minutes=_minutes(raw.get("timeout-minutes"), f"{where}.timeout-minutes", job=job_id),
        )
    except InvalidStepError as e:
        raise InvalidStepError(e.message, job=job_id, step=e.step or label) from None


def _parse_matrix(raw: Any, job_id: str) -> Optional[MatrixSpec]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise InvalidMatrixError("strategy.matrix must be a mapping (expression matrices are not supported)",
                                 job=job_id)
    include = raw.get("include") or []
    exclude = raw.get("exclude") or []
    axes = {str(k): v for k, v in raw.items() if k not in ("include", "exclude")}
    return MatrixSpec(axes=axes, include=include, exclude=exclude)


def _parse_strategy(raw: Any, job_id: str) -> Strategy:
    data = _mapping(raw, f"jobs.{job_id}.strategy", job=job_id)
    max_parallel = data.get("max-parallel")
    if max_parallel is not None and (isinstance(max_parallel, bool) or not isinstance(max_parallel, int)):
        raise WorkflowLoadError(f"max-parallel must be an integer, got {max_parallel!r}", job=job_id,
                                kind="invalid_strategy")
    return Strategy(
        matrix=_parse_matrix(data.get("matrix"), job_id),
        fail_fast=_flag(data.get("fail-fast"), f"jobs.{job_id}.strategy.fail-fast", job=job_id),
        max_parallel=max_parallel,
    )


def _parse_job(job_id: str, raw: Any) -> Job:
    data = _mapping(raw, f"jobs.{job_id}", job=job_id)
    steps_raw = data.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise InvalidStepError(f"job '{job_id}' needs a non-empty 'steps' list", job=job_id)

    needs = data.get("needs") or []
    if isinstance(needs, str):
        needs = [needs]
    if not isinstance(needs, list):
        raise WorkflowLoadError(f"jobs.{job_id}.needs must be a job id or a list of job ids", job=job_id)

    outputs = _mapping(data.get("outputs"), f"jobs.{job_id}.outputs", job=job_id)
    return Job(
        id=job_id,
        name=None if data.get("name") is None else str(data["name"]),
        steps=[_parse_step(s, job_id, n) for n, s in enumerate(steps_raw)],
        needs=[str(n) for n in needs],
        if_=_condition(data.get("if")),
        env=_str_env(data.get("env"), f"jobs.{job_id}.env", job=job_id),
        strategy=_parse_strategy(data.get("strategy"), job_id),
        outputs={str(k): str(v) for k, v in outputs.items()},
        continue_on_error=_flag(data.get("continue-on-error"), f"jobs.{job_id}.continue-on-error", job=job_id),
        timeout_minutes=_minutes(data.get("timeout-minutes"), f"jobs.{job_id}.timeout-minutes", job=job_id),
    )


def workflow_from_dict(data: Any, *, source: Optional[str] = None, default_name: str = "workflow") -> Workflow:
    """Build a Workflow from an already-parsed YAML document."""
    if not isinstance(data, dict):
        raise WorkflowLoadError("workflow document must be a mapping")
    # YAML 1.1 reads a bare `on:` key as the boolean True
    on_raw = data.get("on", data.get(True))
    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise WorkflowLoadError("workflow needs a non-empty 'jobs' mapping")

    return Workflow(
        name=str(data.get("name") or default_name),
        jobs=[_parse_job(str(job_id), raw) for job_id, raw in jobs_raw.items()],
        env=_str_env(data.get("env"), "env"),
        on=normalize_on(on_raw),
        source=source,
    )


# ----------------------------------------------------------------------
# Python
# ----------------------------------------------------------------------

def load_python(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow (or a list of Jobs)
      - WORKFLOW = Workflow (or a list of Jobs)
    """
    wf_path = Path(path)
    module_name = f"actionflow_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except CIError:
        raise
    except Exception as e:
        raise WorkflowLoadError(
            f"error while executing {wf_path.name}: {type(e).__name__}: {e}",
            kind="python_error",
            details={"path": str(wf_path)},
        ) from e

    result: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except CIError:
            raise
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowLoadError(
                    "Your workflow() is being called with arguments (name collision with a helper). "
                    "Use the 'wf' helper instead: `from actionflow import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`",
                    kind="python_error",
                    details={"path": str(wf_path)},
                ) from e
            raise WorkflowLoadError(f"workflow() failed: {e}", kind="python_error",
                                    details={"path": str(wf_path)}) from e
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]

    if isinstance(result, list) and result and all(isinstance(j, Job) for j in result):
        result = Workflow(name=wf_path.stem, jobs=result)
    if not isinstance(result, Workflow):
        raise WorkflowLoadError(
            "Workflow file must return/define a Workflow. "
            "Define workflow() -> Workflow or WORKFLOW = wf(job(...), ...).",
            details={"path": str(wf_path)},
        )
    if result.source is None:
        result = Workflow(name=result.name, jobs=result.jobs, env=result.env, on=result.on, source=str(wf_path))
    return result
