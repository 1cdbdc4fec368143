"""Shared fixtures for actionflow tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from actionflow.actions import ActionRegistry, default_registry
from actionflow.context import JobScope, RunContext
from actionflow.model import JobInstance, Workflow
from actionflow.plan import build_plan
from actionflow.scheduler import Scheduler
from actionflow.secrets import MappingSecrets
from actionflow.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console() -> Console:
    """Quiet console so step output does not flood the test log."""
    c = Console(quiet=True)
    set_console(c)
    return c


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    monkeypatch.chdir(ws)
    return ws


@pytest.fixture
def registry(tmp_path: Path) -> ActionRegistry:
    return default_registry(cache_dir=tmp_path / "cache")


@pytest.fixture
def run_workflow(workspace: Path, registry: ActionRegistry, console: Console):
    """Plan and run a workflow in the temporary workspace; returns the RunResult."""

    def _run(workflow: Workflow, *, secrets=None, workers: int = 4, fail_fast: bool = False,
             event=None, timeout_minutes: float = 1.0, reg: ActionRegistry | None = None):
        reg = reg or registry
        plan = build_plan(workflow, reg)
        run = RunContext(workflow, event=event, secrets=MappingSecrets(secrets or {}), workspace=workspace)
        try:
            return Scheduler(
                plan,
                run,
                registry=reg,
                console=console,
                max_workers=workers,
                fail_fast=fail_fast,
                default_timeout_minutes=timeout_minutes,
                poll_interval=0.02,
            ).run()
        finally:
            run.close()

    return _run


@pytest.fixture
def make_scope(workspace: Path):
    """JobScope for the first instance of a one-job workflow."""
    contexts = []

    def _make(workflow: Workflow, *, secrets=None, instance: JobInstance | None = None) -> JobScope:
        run = RunContext(workflow, secrets=MappingSecrets(secrets or {}), workspace=workspace)
        contexts.append(run)
        if instance is None:
            instance = build_plan(workflow).instances[0]
        return JobScope(run, instance, set())

    yield _make
    for run in contexts:
        run.close()
