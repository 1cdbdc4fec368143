from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from actionflow.dsl import JobBuilder, build, job, matrix, sh, uses, wf
from actionflow.errors import InvalidStepError, WorkflowLoadError
from actionflow.loader import discover_workflows, load_workflow, workflow_from_dict
from actionflow.model import Workflow
from actionflow.plan import build_plan

CI_YAML = """
name: CI
on:
  push:
    branches: [main]
env:
  GREETING: hello
  RETRIES: 3
jobs:
  lint:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - name: Lint
        run: ruff check .
  test:
    needs: lint
    runs-on: ${{ matrix.os }}
    strategy:
      fail-fast: true
      max-parallel: 2
      matrix:
        os: [ubuntu-latest, macos-latest]
        py: ["3.11", "3.12"]
        exclude:
          - os: macos-latest
            py: "3.11"
    outputs:
      version: ${{ steps.ver.outputs.version }}
    steps:
      - id: ver
        run: echo "version=1" >> "$GITHUB_OUTPUT"
        working-directory: src
        continue-on-error: true
        timeout-minutes: 5
        if: github.ref == 'refs/heads/main'
        env:
          DEBUG: true
"""


def _write(tmp_path, name, text):
    p = tmp_path / name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(textwrap.dedent(text), encoding="utf-8")
    return p


class TestYaml:
    def test_full_document(self, tmp_path):
        workflow = load_workflow(_write(tmp_path, "ci.yml", CI_YAML))
        assert workflow.name == "CI"
        assert workflow.on == {"push": {"branches": ["main"]}}
        assert workflow.env == {"GREETING": "hello", "RETRIES": "3"}
        assert [j.id for j in workflow.jobs] == ["lint", "test"]

        lint, test = workflow.jobs
        assert lint.steps[0].uses == "actions/checkout@v4"
        assert lint.steps[1].run == "ruff check ."
        assert test.needs == ["lint"]
        assert test.strategy.fail_fast is True
        assert test.strategy.max_parallel == 2
        assert test.matrix.axes == {"os": ["ubuntu-latest", "macos-latest"], "py": ["3.11", "3.12"]}
        assert test.matrix.exclude == [{"os": "macos-latest", "py": "3.11"}]
        assert test.outputs == {"version": "${{ steps.ver.outputs.version }}"}

        step = test.steps[0]
        assert step.id == "ver"
        assert step.working_directory == "src"
        assert step.continue_on_error is True
        assert step.timeout_minutes == 5.0
        assert step.if_ == "github.ref == 'refs/heads/main'"
        assert step.env == {"DEBUG": "true"}
        assert workflow.source.endswith("ci.yml")

    def test_name_defaults_to_file_stem(self, tmp_path):
        p = _write(tmp_path, "build.yaml", "jobs: {a: {steps: [{run: 'true'}]}}")
        workflow = load_workflow(p)
        assert workflow.name == "build"
        assert workflow.on == {}

    def test_on_list_and_scalar(self):
        data = {"on": ["push", "pull_request"], "jobs": {"a": {"steps": [{"run": "true"}]}}}
        assert set(workflow_from_dict(data).on) == {"push", "pull_request"}
        # YAML 1.1 turns a bare `on` key into True
        data = {True: "push", "jobs": {"a": {"steps": [{"run": "true"}]}}}
        assert workflow_from_dict(data).on == {"push": {}}

    @pytest.mark.parametrize(
        ("doc", "kind"),
        [
            ("jobs: [", "yaml_error"),
            ("- just a list", "load_error"),
            ("name: nothing", "load_error"),
            ("jobs: {a: {steps: []}}", "invalid_step"),
            ("jobs: {a: {steps: [{name: x}]}}", "invalid_step"),
            ("jobs: {a: {steps: [{run: 'true', continue-on-error: maybe}]}}", "load_error"),
            ("jobs: {a: {strategy: {max-parallel: two}, steps: [{run: 'true'}]}}", "invalid_strategy"),
            ("jobs: {a: {strategy: {matrix: '${{ fromJSON(x) }}'}, steps: [{run: 'true'}]}}", "invalid_matrix"),
        ],
    )
    def test_errors(self, tmp_path, doc, kind):
        p = _write(tmp_path, "bad.yml", doc)
        with pytest.raises(WorkflowLoadError) as exc:
            load_workflow(p)
        assert exc.value.kind == kind
        assert exc.value.details["path"] == str(p.resolve())

    def test_step_error_names_job(self, tmp_path):
        p = _write(tmp_path, "bad.yml", "jobs: {build: {steps: [{name: both, run: x, uses: y}]}}")
        with pytest.raises(InvalidStepError) as exc:
            load_workflow(p)
        assert exc.value.job == "build"
        assert exc.value.step == "both"


class TestPython:
    def test_workflow_function(self, tmp_path):
        p = _write(tmp_path, "demo_workflow.py", """
            from actionflow import wf, job, sh

            def workflow():
                return wf(job("a", sh("hello", "echo hi")), name="demo")
        """)
        workflow = load_workflow(p)
        assert workflow.name == "demo"
        assert workflow.source == str(p.resolve())

    def test_workflow_constant_list_of_jobs(self, tmp_path):
        p = _write(tmp_path, "jobs_workflow.py", """
            from actionflow import job, sh

            WORKFLOW = [job("a", sh("x", "true")), job("b", sh("y", "true"), needs="a")]
        """)
        workflow = load_workflow(p)
        assert workflow.name == "jobs_workflow"
        assert [j.id for j in workflow.jobs] == ["a", "b"]

    def test_exception_is_wrapped(self, tmp_path):
        p = _write(tmp_path, "broken_workflow.py", "raise RuntimeError('nope')\n")
        with pytest.raises(WorkflowLoadError) as exc:
            load_workflow(p)
        assert exc.value.kind == "python_error"
        assert "nope" in exc.value.message

    def test_nothing_defined(self, tmp_path):
        p = _write(tmp_path, "empty_workflow.py", "X = 1\n")
        with pytest.raises(WorkflowLoadError):
            load_workflow(p)


def test_repository_workflow_plans(registry):
    workflow = load_workflow(Path(__file__).resolve().parents[1] / "actionflow_workflow.py")
    plan = build_plan(workflow, registry)
    assert [i.id for i in plan.instances] == ["lint", "test (3.11)", "test (3.12)", "summary"]
    assert plan.graph.layers() == [["lint"], ["test"], ["summary"]]


def test_missing_and_unsupported(tmp_path):
    with pytest.raises(WorkflowLoadError) as exc:
        load_workflow(tmp_path / "nope.yml")
    assert exc.value.kind == "not_found"
    p = _write(tmp_path, "ci.toml", "")
    with pytest.raises(WorkflowLoadError) as exc:
        load_workflow(p)
    assert exc.value.kind == "unsupported_format"


def test_discover_workflows(tmp_path):
    _write(tmp_path, "ci_workflow.py", "")
    _write(tmp_path, ".github/workflows/b.yml", "")
    _write(tmp_path, ".github/workflows/a.yaml", "")
    _write(tmp_path, "notes.yml", "")
    found = [p.relative_to(tmp_path).as_posix() for p in discover_workflows(tmp_path)]
    assert found == ["ci_workflow.py", ".github/workflows/b.yml", ".github/workflows/a.yaml"]


class TestDsl:
    def test_uses_keyword_inputs(self):
        step = uses("actions/setup-node@v4", node_version="20", with_={"cache": "npm"})
        assert step.with_ == {"cache": "npm", "node-version": "20"}

    def test_job_cwd_default(self):
        j = job("a", sh("one", "true"), sh("two", "true", cwd="other"), cwd="src")
        assert [s.working_directory for s in j.steps] == ["src", "other"]

    def test_job_requires_steps(self):
        with pytest.raises(ValueError):
            job("empty")

    def test_builder(self):
        j = (
            build("test")
            .named("Test ${{ matrix.py }}")
            .depends_on("lint")
            .when("always()")
            .with_env(DEBUG=1)
            .with_matrix(matrix(py=["3.11"]), fail_fast=True, max_parallel=1)
            .define_step("pytest", "pytest -q", id="pt")
            .use("actions/cache@v4", path="~/.cache", key="k")
            .output("result", "${{ steps.pt.outcome }}")
            .build()
        )
        assert isinstance(JobBuilder("x"), JobBuilder)
        assert j.name == "Test ${{ matrix.py }}"
        assert j.needs == ["lint"]
        assert j.if_ == "always()"
        assert j.env == {"DEBUG": "1"}
        assert j.strategy.fail_fast and j.strategy.max_parallel == 1
        assert [s.label for s in j.steps] == ["pytest", "Run actions/cache@v4"]
        assert j.outputs == {"result": "${{ steps.pt.outcome }}"}

    def test_wf_normalizes_on(self):
        workflow = wf(job("a", sh("x", "true")), on="push", env={"N": 1})
        assert isinstance(workflow, Workflow)
        assert workflow.on == {"push": {}}
        assert workflow.env == {"N": "1"}
