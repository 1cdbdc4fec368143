# plan.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from .actions import ActionRegistry
from .dag import DependencyGraph, build_graph
from .errors import ExpressionSyntaxError, InvalidStepError, UnknownActionError, WorkflowLoadError
from .expressions import parse_guard, validate_template
from .matrix import MatrixPolicy, expand, instance_label
from .model import Job, JobInstance, Workflow

# ---------------------------------------------------------------------
# Everything that can be checked before a single process starts is checked
# here. Any error is a WorkflowLoadError and the run never begins.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Plan:
    workflow: Workflow
    graph: DependencyGraph
    instances: List[JobInstance]

    @property
    def by_job(self) -> Dict[str, List[JobInstance]]:
        out: Dict[str, List[JobInstance]] = {j.id: [] for j in self.workflow.jobs}
        for inst in self.instances:
            out[inst.job_id].append(inst)
        return out

    def instance(self, instance_id: str) -> JobInstance:
        for inst in self.instances:
            if inst.id == instance_id:
                return inst
        raise KeyError(instance_id)


def _check_expressions(job: Job) -> None:
    def located(fn, value, step: Optional[str] = None):
        try:
            fn(value)
        except ExpressionSyntaxError as e:
            raise e.located(job=job.id, step=step) from None

    located(parse_guard, job.if_)
    located(validate_template, job.name or "")
    located(validate_template, job.env)
    located(validate_template, job.outputs)
    for step in job.steps:
        label = step.label
        located(parse_guard, step.if_, label)
        located(validate_template, step.name, label)
        located(validate_template, step.run or "", label)
        located(validate_template, step.with_, label)
        located(validate_template, step.env, label)
        located(validate_template, step.working_directory or "", label)


def _check_steps(job: Job, registry: Optional[ActionRegistry]) -> None:
    if not job.steps:
        raise InvalidStepError(f"job '{job.id}' has no steps", job=job.id)
    cap = job.strategy.max_parallel
    if cap is not None and cap < 1:
        raise WorkflowLoadError(f"max-parallel must be at least 1, got {cap}", kind="invalid_strategy",
                                job=job.id)
    seen = set()
    for step in job.steps:
        if step.id:
            if step.id in seen:
                raise InvalidStepError(f"duplicate step id '{step.id}'", job=job.id, step=step.id)
            seen.add(step.id)
        if step.uses and registry is not None:
            # local and container actions are not supported
            local = step.uses.startswith(("./", "docker://"))
            if local or registry.resolve(step.uses) is None:
                raise UnknownActionError(step.uses, job=job.id, step=step.label, known=registry.names())


def build_plan(
    workflow: Workflow,
    registry: Optional[ActionRegistry] = None,
    policy: MatrixPolicy = MatrixPolicy(),
) -> Plan:
    """
    Validate the workflow and expand it into schedulable job instances.

    Instances are numbered in declaration order: jobs as declared, and
    within a job in matrix expansion order.
    """
    for job in workflow.jobs:
        _check_steps(job, registry)
        _check_expressions(job)
    graph = build_graph(workflow.jobs)

    instances: List[JobInstance] = []
    for job in workflow.jobs:
        bindings_list = expand(job.matrix, policy, job=job.id)
        labels = [instance_label(job.id, b) for b in bindings_list]
        for n, bindings in enumerate(bindings_list):
            label = labels[n]
            if labels.count(label) > 1:
                # e.g. 1 and "1" render the same
                label = f"{label} #{n + 1}"
            instances.append(JobInstance(job=job, bindings=bindings, id=label, index=len(instances)))
    return Plan(workflow=workflow, graph=graph, instances=instances)
