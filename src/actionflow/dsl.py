# src/actionflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from .model import Job, MatrixSpec, Step, Strategy, Workflow
from .triggers import normalize_on


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: Optional[str] = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    if_: Optional[str] = None,
    shell: Optional[str] = None,
    continue_on_error: bool = False,
    timeout_minutes: Optional[float] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        working_directory=cwd,
        env=dict(env or {}),
        if_=if_,
        shell=shell,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


def uses(
    ref: str,
    name: str = "",
    *,
    id: Optional[str] = None,
    with_: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
    if_: Optional[str] = None,
    continue_on_error: bool = False,
    **inputs: Any,
) -> Step:
    """
    Create an action step. Inputs go in `with_` or as keyword arguments
    (underscores become dashes: node_version= -> node-version).
    """
    merged = dict(with_ or {})
    merged.update({k.replace("_", "-"): v for k, v in inputs.items()})
    return Step(
        name=name,
        uses=ref,
        id=id,
        with_=merged,
        env=dict(env or {}),
        if_=if_,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Dict[str, Iterable[Any]]] = None,
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **more_axes: Iterable[Any],
) -> MatrixSpec:
    """
    Example:
        matrix(os=["linux", "mac"], py=["3.11", "3.12"],
               exclude=[{"os": "mac", "py": "3.11"}])

    Axes keep the order they are written in.
    """
    all_axes: Dict[str, List[Any]] = {k: list(v) for k, v in (axes or {}).items()}
    all_axes.update({k: list(v) for k, v in more_axes.items()})
    return MatrixSpec(axes=all_axes, include=list(include or []), exclude=list(exclude or []))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    name: Optional[str] = None,
    needs: Optional[Iterable[str] | str] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
    matrix: Optional[MatrixSpec] = None,
    fail_fast: bool = False,
    max_parallel: Optional[int] = None,
    outputs: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout_minutes: Optional[float] = None,
    cwd: Optional[str] = None,  # default working directory for steps missing one
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.working_directory is not None else replace(s, working_directory=cwd)
                       for s in steps_final]

    if isinstance(needs, str):
        needs = [needs]

    return Job(
        id=id,
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        if_=if_,
        env={k: str(v) for k, v in (env or {}).items()},
        strategy=Strategy(matrix=matrix, fail_fast=fail_fast, max_parallel=max_parallel),
        outputs=dict(outputs or {}),
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._name: Optional[str] = None
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._if: Optional[str] = None
        self._matrix: Optional[MatrixSpec] = None
        self._fail_fast = False
        self._max_parallel: Optional[int] = None
        self._outputs: dict[str, str] = {}

    def named(self, name: str):
        self._name = name
        return self

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs: Any):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use(self, ref: str, name: str = "", **inputs: Any):
        self._steps.append(uses(ref, name, **inputs))
        return self

    def with_env(self, **env):
        # env values are always strings
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, spec: MatrixSpec, *, fail_fast: bool = False, max_parallel: Optional[int] = None):
        self._matrix = spec
        self._fail_fast = fail_fast
        self._max_parallel = max_parallel
        return self

    def output(self, name: str, template: str):
        self._outputs[name] = template
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            steps_list=self._steps,
            name=self._name,
            needs=self._needs,
            if_=self._if,
            env=self._env,
            matrix=self._matrix,
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
            outputs=self._outputs,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "workflow",
    env: Optional[Dict[str, Any]] = None,
    on: Any = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from actionflow import wf, job, sh

        def workflow():
            return wf(
                job("lint", sh("ruff", "ruff check .")),
                job("test", sh("pytest", "pytest"), needs=["lint"]),
                name="ci",
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf(job(...), job(...))
    """
    return Workflow(
        name=name,
        jobs=list(jobs),
        env={k: str(v) for k, v in (env or {}).items()},
        on=normalize_on(on) if on is not None else {},
    )
