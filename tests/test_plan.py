from __future__ import annotations

import pytest

from actionflow.dsl import job, matrix, sh, uses, wf
from actionflow.errors import (
    CyclicDependencyError,
    ExpressionSyntaxError,
    InvalidStepError,
    UnknownActionError,
    WorkflowLoadError,
)
from actionflow.model import Step
from actionflow.plan import build_plan


def test_instances_in_declaration_order(registry):
    workflow = wf(
        job("lint", sh("lint", "true")),
        job("test", sh("t", "true"), needs=["lint"], matrix=matrix(os=["a", "b"], ver=[1, 2])),
    )
    plan = build_plan(workflow, registry)
    assert [i.id for i in plan.instances] == [
        "lint", "test (a, 1)", "test (a, 2)", "test (b, 1)", "test (b, 2)",
    ]
    assert [i.index for i in plan.instances] == [0, 1, 2, 3, 4]
    assert [i.id for i in plan.by_job["test"]][0] == "test (a, 1)"
    assert plan.instance("test (b, 2)").bindings == {"os": "b", "ver": 2}


def test_colliding_labels_are_numbered():
    workflow = wf(job("t", sh("x", "true"), matrix=matrix(v=[1, "1"])))
    ids = [i.id for i in build_plan(workflow).instances]
    assert ids == ["t (1) #1", "t (1) #2"]


def test_step_needs_run_or_uses():
    with pytest.raises(InvalidStepError):
        Step(name="both", run="echo", uses="actions/checkout@v4")
    with pytest.raises(InvalidStepError):
        Step(name="neither")


def test_duplicate_step_ids():
    workflow = wf(job("a", sh("one", "true", id="s"), sh("two", "true", id="s")))
    with pytest.raises(InvalidStepError) as exc:
        build_plan(workflow)
    assert exc.value.job == "a"


def test_bad_expression_is_located():
    workflow = wf(job("a", sh("one", "echo ${{ matrix.os == }}")))
    with pytest.raises(ExpressionSyntaxError) as exc:
        build_plan(workflow)
    assert exc.value.job == "a"
    assert exc.value.step == "one"


def test_bad_guard_fails_before_anything_runs():
    workflow = wf(job("a", sh("one", "true")), job("b", sh("two", "true"), if_="needs.a.result ==", needs="a"))
    with pytest.raises(ExpressionSyntaxError) as exc:
        build_plan(workflow)
    assert exc.value.job == "b"


def test_unknown_action(registry):
    workflow = wf(job("a", uses("acme/does-not-exist@v1")))
    with pytest.raises(UnknownActionError) as exc:
        build_plan(workflow, registry)
    assert "actions/checkout" in exc.value.details["known"]


def test_local_actions_are_rejected(registry):
    workflow = wf(job("a", uses("./my-action")))
    with pytest.raises(UnknownActionError):
        build_plan(workflow, registry)


def test_cycle_is_a_load_error():
    workflow = wf(job("a", sh("x", "true"), needs="b"), job("b", sh("y", "true"), needs="a"))
    with pytest.raises(WorkflowLoadError) as exc:
        build_plan(workflow)
    assert isinstance(exc.value, CyclicDependencyError)


def test_max_parallel_must_be_positive():
    workflow = wf(job("a", sh("x", "true"), matrix=matrix(v=[1, 2]), max_parallel=0))
    with pytest.raises(WorkflowLoadError) as exc:
        build_plan(workflow)
    assert exc.value.kind == "invalid_strategy"
