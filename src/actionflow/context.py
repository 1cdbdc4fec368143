# context.py
from __future__ import annotations

import os
import platform
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set

from .expressions import EvalContext, interpolate, to_string
from .model import JobInstance, Status, Workflow
from .secrets import Redactor, SecretsProvider, SecretsView, env_prefixes, known_secrets
from .triggers import Event

# ---------------------------------------------------------------------
# RunContext is the only state shared between workers.
#
# Publication is the single mutation point:
#   - step outputs are published by the worker running that instance
#   - job results/outputs are published once, when the instance is terminal
# Readers in other instances only see what was published, and the scheduler
# only exposes a job's publication to instances that (transitively) need it.
# ---------------------------------------------------------------------


@dataclass
class _JobPublication:
    index: int
    status: Status
    outputs: Dict[str, str] = field(default_factory=dict)


def aggregate_result(statuses: Iterable[Status]) -> str:
    """`needs.<job>.result` across a job's instances."""
    seen = list(statuses)
    if not seen:
        return Status.SKIPPED.value
    if Status.FAILURE in seen:
        return Status.FAILURE.value
    if Status.CANCELLED in seen:
        return Status.CANCELLED.value
    if all(s is Status.SKIPPED for s in seen):
        return Status.SKIPPED.value
    return Status.SUCCESS.value


class RunContext:
    """Layered state for one pipeline run."""

    def __init__(
        self,
        workflow: Workflow,
        *,
        event: Optional[Event] = None,
        secrets: Optional[SecretsProvider] = None,
        workspace: str | Path = ".",
        run_id: Optional[str] = None,
    ):
        self.workflow = workflow
        self.event = event or Event()
        self.workspace = Path(workspace).resolve()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.redactor = Redactor()
        for value in known_secrets(secrets).values():
            self.redactor.register(value)
        self.secrets = SecretsView(secrets, self.redactor)
        self._hidden_prefixes = env_prefixes(secrets)
        self.temp_dir = Path(tempfile.mkdtemp(prefix=f"actionflow-{self.run_id}-"))

        self._lock = threading.Lock()
        self._step_outputs: Dict[str, Dict[str, Dict[str, str]]] = {}
        self._jobs: Dict[str, Dict[str, _JobPublication]] = {}
        self._workflow_env: Optional[Dict[str, str]] = None

    # ---- namespaces ----

    def github(self) -> Dict[str, Any]:
        ev = self.event
        return {
            "event_name": ev.name,
            "event": dict(ev.payload),
            "ref": ev.ref,
            "ref_name": ev.ref_name,
            "ref_type": ev.ref_type,
            "sha": ev.sha,
            "repository": ev.repository,
            "workspace": str(self.workspace),
            "run_id": self.run_id,
            "workflow": self.workflow.name,
        }

    def runner(self) -> Dict[str, Any]:
        system = platform.system()
        return {
            "os": {"Darwin": "macOS"}.get(system, system),
            "arch": platform.machine(),
            "temp": str(self.temp_dir),
        }

    def host_env(self) -> Dict[str, str]:
        """The parent environment for step processes, minus secret variables."""
        return {k: v for k, v in os.environ.items() if not k.startswith(self._hidden_prefixes)}

    def base_namespaces(self) -> Dict[str, Any]:
        return {
            "github": self.github(),
            "runner": self.runner(),
            "secrets": self.secrets,
        }

    def workflow_env(self) -> Dict[str, str]:
        """Workflow-level env, interpolated once against github/secrets."""
        with self._lock:
            if self._workflow_env is None:
                ctx = EvalContext(self.base_namespaces(), workspace=self.workspace)
                env: Dict[str, str] = {}
                for k, v in self.workflow.env.items():
                    ctx.namespaces["env"] = dict(env)
                    env[k] = to_string(interpolate(str(v), ctx))
                self._workflow_env = env
            return dict(self._workflow_env)

    # ---- publication ----

    def publish_step(self, instance_id: str, step_id: str, outputs: Dict[str, str]) -> None:
        with self._lock:
            per_instance = self._step_outputs.setdefault(instance_id, {})
            # one writer per instance; a step id is only ever published once
            per_instance[step_id] = dict(outputs)

    def step_outputs(self, instance_id: str) -> Dict[str, Dict[str, str]]:
        with self._lock:
            return {k: dict(v) for k, v in self._step_outputs.get(instance_id, {}).items()}

    def publish_job(self, instance: JobInstance, status: Status, outputs: Dict[str, str]) -> None:
        with self._lock:
            self._jobs.setdefault(instance.job_id, {})[instance.id] = _JobPublication(
                index=instance.index, status=status, outputs=dict(outputs)
            )

    def needs_view(self, job_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """
        `needs` namespace restricted to job_ids.

        For a matrix job the outputs of its instances are merged in
        declaration order (later instances win).
        """
        view: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            for job_id in job_ids:
                pubs = sorted(self._jobs.get(job_id, {}).values(), key=lambda p: p.index)
                if not pubs:
                    continue
                outputs: Dict[str, str] = {}
                for p in pubs:
                    outputs.update(p.outputs)
                view[job_id] = {
                    "result": aggregate_result(p.status for p in pubs),
                    "outputs": outputs,
                }
        return view

    def job_guard_context(self, instance: JobInstance, visible: Set[str], status: str) -> EvalContext:
        ns = self.base_namespaces()
        ns.update(
            env=self.workflow_env(),
            matrix=dict(instance.bindings),
            needs=self.needs_view(visible),
        )
        return EvalContext(ns, status=status, workspace=self.workspace)

    def close(self) -> None:
        """End of run: drop secrets and published state."""
        self.redactor.clear()
        with self._lock:
            self._step_outputs.clear()
            self._jobs.clear()
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class JobScope:
    """
    Per-instance view of the run: matrix bindings, job env, this instance's
    own `steps`, and `needs` limited to the jobs the instance depends on.
    """

    def __init__(self, run: RunContext, instance: JobInstance, visible: Set[str]):
        self.run = run
        self.instance = instance
        self.visible = set(visible)
        self.status = Status.SUCCESS.value
        self.steps: Dict[str, Dict[str, Any]] = {}
        self._job_env: Optional[Dict[str, str]] = None

    @property
    def job_id(self) -> str:
        return self.instance.job_id

    def _namespaces(self, env: Dict[str, str]) -> Dict[str, Any]:
        ns = self.run.base_namespaces()
        ns.update(
            env=env,
            matrix=dict(self.instance.bindings),
            needs=self.run.needs_view(self.visible),
            steps={k: {"outputs": dict(v["outputs"]), "outcome": v["outcome"], "conclusion": v["conclusion"]}
                   for k, v in self.steps.items()},
            job={"status": self.status},
            strategy={"job-index": self.instance.index},
        )
        return ns

    def job_env(self) -> Dict[str, str]:
        if self._job_env is None:
            env = self.run.workflow_env()
            for k, v in self.instance.job.env.items():
                ctx = EvalContext(self._namespaces(env), status=self.status, workspace=self.run.workspace)
                env[k] = to_string(interpolate(str(v), ctx))
            self._job_env = env
        return dict(self._job_env)

    def export_env(self, values: Dict[str, str]) -> None:
        """Variables a step wrote to GITHUB_ENV; the following steps see them."""
        env = self.job_env()
        env.update(values)
        self._job_env = env

    def merged_env(self, step_env: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """workflow -> job -> step; later wins, each layer sees the ones before."""
        env = self.job_env()
        for k, v in (step_env or {}).items():
            ctx = EvalContext(self._namespaces(env), status=self.status, workspace=self.run.workspace)
            env[k] = to_string(interpolate(str(v), ctx))
        return env

    def eval_context(self, env: Optional[Dict[str, str]] = None) -> EvalContext:
        return EvalContext(
            self._namespaces(self.job_env() if env is None else env),
            status=self.status,
            workspace=self.run.workspace,
        )

    def record_step(self, step_id: Optional[str], outputs: Dict[str, str], outcome: Status,
                    conclusion: Status) -> None:
        """Make a finished step visible to the following steps and publish it."""
        if not step_id:
            return
        self.steps[step_id] = {
            "outputs": dict(outputs),
            "outcome": outcome.value,
            "conclusion": conclusion.value,
        }
        self.run.publish_step(self.instance.id, step_id, outputs)

    def step_outputs_merged(self) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        for v in self.steps.values():
            merged.update(v["outputs"])
        return merged

    def process_env(self) -> Dict[str, str]:
        """Variables every process started for this instance gets."""
        ev = self.run.event
        return {
            "CI": "true",
            "GITHUB_ACTIONS": "true",
            "GITHUB_WORKSPACE": str(self.run.workspace),
            "GITHUB_EVENT_NAME": ev.name,
            "GITHUB_REF": ev.ref,
            "GITHUB_REF_NAME": ev.ref_name,
            "GITHUB_SHA": ev.sha,
            "GITHUB_REPOSITORY": ev.repository,
            "GITHUB_RUN_ID": self.run.run_id,
            "GITHUB_JOB": self.job_id,
            "RUNNER_TEMP": str(self.run.temp_dir),
            "RUNNER_OS": self.run.runner()["os"],
        }

