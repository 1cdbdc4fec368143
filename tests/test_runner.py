from __future__ import annotations

import sys
import threading
import time

import pytest

from actionflow.actions import ActionInput, ActionRegistry, ActionResult
from actionflow.context import JobScope, RunContext
from actionflow.dsl import job, sh, uses, wf
from actionflow.model import Status
from actionflow.plan import build_plan
from actionflow.runner import parse_command_file, run_instance, shell_command, tool_hint
from actionflow.secrets import MASK, ChainSecrets, EnvSecrets, MappingSecrets


def _run(make_scope, workflow, *, registry=None, secrets=None, cancel=None, timeout=1.0):
    scope = make_scope(workflow, secrets=secrets)
    result = run_instance(
        scope.instance, scope,
        registry=registry,
        default_timeout_minutes=timeout,
        cancel_event=cancel,
    )
    return result, scope


class TestCommandFile:
    def test_lines_and_heredocs(self):
        text = "a=1\nb=x=y\n\nnotes<<EOF\nline1\nline2\nEOF\na=2\n"
        assert parse_command_file(text) == {"a": "2", "b": "x=y", "notes": "line1\nline2"}

    def test_empty(self):
        assert parse_command_file("") == {}

    @pytest.mark.parametrize("text", ["no separator here", "k<<END\nnever closed\n"])
    def test_malformed(self, text):
        with pytest.raises(ValueError):
            parse_command_file(text)


def test_shell_command_variants(tmp_path):
    assert shell_command(None, "echo hi", tmp_path) == ("echo hi", True)
    args, use_shell = shell_command("bash", "echo hi", tmp_path)
    assert args[0] == "bash" and args[-1] == "echo hi" and "pipefail" in args
    assert use_shell is False
    assert shell_command("python", "print(1)", tmp_path)[0] == [sys.executable, "-c", "print(1)"]
    assert shell_command("zsh -x", "true", tmp_path)[0] == ["zsh", "-x", "-c", "true"]

    args, _ = shell_command("perl {0}", "print 1", tmp_path)
    assert args[0] == "perl"
    with open(args[1], encoding="utf-8") as f:
        assert f.read() == "print 1"


def test_tool_hint():
    assert tool_hint("sh: 1: npm: not found") == "Install Node.js (includes npm) or fix PATH."
    assert tool_hint("bash: line 1: frob: command not found") == "Install frob or fix PATH."
    assert "not found" in tool_hint("")


class TestShellSteps:
    def test_outputs_flow_to_later_steps_and_job_outputs(self, make_scope):
        workflow = wf(job(
            "a",
            sh("set", 'echo "v=1" >> "$GITHUB_OUTPUT"', id="s"),
            sh("multi", "printf 'notes<<EOF\\nl1\\nl2\\nEOF\\n' >> \"$GITHUB_OUTPUT\"", id="m"),
            sh("check", 'test "${{ steps.s.outputs.v }}" = 1'),
        ))
        result, _ = _run(make_scope, workflow)
        assert result.status is Status.SUCCESS
        assert result.steps[0].outputs == {"v": "1"}
        assert result.outputs == {"v": "1", "notes": "l1\nl2"}

    def test_declared_job_outputs(self, make_scope):
        workflow = wf(job(
            "a",
            sh("set", 'echo "v=42" >> "$GITHUB_OUTPUT"', id="s"),
            outputs={"answer": "${{ steps.s.outputs.v }}"},
        ))
        result, _ = _run(make_scope, workflow)
        assert result.outputs == {"answer": "42"}

    def test_github_env_reaches_later_steps(self, make_scope):
        workflow = wf(job(
            "a",
            sh("export", 'echo "GREETING=hello" >> "$GITHUB_ENV"'),
            sh("use", 'test "$GREETING" = hello'),
            sh("expr", 'test "${{ env.GREETING }}" = hello'),
        ))
        result, _ = _run(make_scope, workflow)
        assert result.status is Status.SUCCESS

    def test_malformed_output_file(self, make_scope):
        workflow = wf(job("a", sh("bad", 'echo "garbage" >> "$GITHUB_OUTPUT"')))
        result, _ = _run(make_scope, workflow)
        assert result.status is Status.FAILURE
        assert result.steps[0].error_kind == "invalid_output"

    def test_failure_skips_rest(self, make_scope):
        workflow = wf(job("a", sh("boom", "exit 3"), sh("after", "true"), sh("cleanup", "true", if_="always()")))
        result, _ = _run(make_scope, workflow)
        assert result.status is Status.FAILURE
        assert [s.status for s in result.steps] == [Status.FAILURE, Status.SKIPPED, Status.SUCCESS]
        assert result.exit_code == 3
        assert result.error_kind == "step_failure"

    def test_continue_on_error(self, make_scope):
        workflow = wf(job(
            "a",
            sh("flaky", "exit 1", id="f", continue_on_error=True),
            sh("next", 'test "${{ steps.f.outcome }}/${{ steps.f.conclusion }}" = failure/success'),
        ))
        result, _ = _run(make_scope, workflow)
        assert result.status is Status.SUCCESS
        assert result.steps[0].status is Status.FAILURE
        assert result.steps[0].conclusion is Status.SUCCESS

    def test_step_guard_on_output(self, make_scope):
        workflow = wf(job(
            "a",
            sh("flag", 'echo "flag=false" >> "$GITHUB_OUTPUT"', id="s"),
            sh("gated", "exit 1", if_="steps.s.outputs.flag == 'true'"),
        ))
        result, _ = _run(make_scope, workflow)
        assert result.status is Status.SUCCESS
        assert result.steps[1].status is Status.SKIPPED

    def test_timeout(self, make_scope):
        workflow = wf(job("a", sh("slow", "sleep 5", timeout_minutes=0.01)))
        result, _ = _run(make_scope, workflow)
        assert result.status is Status.FAILURE
        assert result.steps[0].error_kind == "timeout"

    def test_background_child_holding_pipes_times_out(self, make_scope):
        workflow = wf(job("a", sh("bg", "sleep 5 & echo started", timeout_minutes=0.01)))
        started = time.monotonic()
        result, _ = _run(make_scope, workflow)
        assert time.monotonic() - started < 4
        step = result.steps[0]
        assert step.status is Status.FAILURE
        assert step.error_kind == "timeout"
        assert step.stdout == "started"

    def test_missing_command_exits_127(self, make_scope):
        workflow = wf(job("a", sh("missing", "definitely-not-a-command-xyz")))
        result, _ = _run(make_scope, workflow)
        step = result.steps[0]
        assert step.exit_code == 127
        assert "not found" in step.stderr
        assert tool_hint(step.stderr) == "Install definitely-not-a-command-xyz or fix PATH."

    def test_missing_working_directory(self, make_scope):
        workflow = wf(job("a", sh("cd", "true", cwd="nope")))
        result, _ = _run(make_scope, workflow)
        assert result.steps[0].error_kind == "missing_directory"

    def test_working_directory(self, make_scope, workspace):
        (workspace / "sub").mkdir()
        workflow = wf(job("a", sh("pwd", "pwd", cwd="sub")))
        result, _ = _run(make_scope, workflow)
        assert result.steps[0].stdout.endswith("/sub")

    def test_python_shell(self, make_scope):
        workflow = wf(job("a", sh("py", "print('from python')", shell="python")))
        result, _ = _run(make_scope, workflow)
        assert result.steps[0].stdout == "from python"


class TestRedaction:
    def test_secret_values_are_masked(self, make_scope):
        workflow = wf(job("a", sh("leak", "echo token=${{ secrets.TOKEN }}")))
        result, _ = _run(make_scope, workflow, secrets={"TOKEN": "s3cr3t-value"})
        assert result.steps[0].stdout == f"token={MASK}"

    def test_listed_secrets_are_masked_without_lookup(self, make_scope):
        workflow = wf(job("a", sh("leak", "echo token=s3cr3t-value")))
        result, _ = _run(make_scope, workflow, secrets={"TOKEN": "s3cr3t-value"})
        assert result.steps[0].stdout == f"token={MASK}"

    def test_env_secrets_stay_out_of_step_processes(self, workspace, monkeypatch):
        monkeypatch.setenv("ACTIONFLOW_SECRET_TOKEN", "hunter2-very-secret")
        workflow = wf(job(
            "a",
            sh("env", 'echo "token is $ACTIONFLOW_SECRET_TOKEN"'),
            sh("literal", "echo hunter2-very-secret"),
            sh("mapped", 'test "$MAPPED" = hunter2-very-secret', env={"MAPPED": "${{ secrets.TOKEN }}"}),
        ))
        run = RunContext(workflow, secrets=ChainSecrets(MappingSecrets({}), EnvSecrets()), workspace=workspace)
        try:
            scope = JobScope(run, build_plan(workflow).instances[0], set())
            result = run_instance(scope.instance, scope, default_timeout_minutes=1.0)
        finally:
            run.close()
        assert result.status is Status.SUCCESS
        assert [s.stdout for s in result.steps[:2]] == ["token is ", MASK]
        assert "ACTIONFLOW_SECRET_TOKEN" not in run.host_env()

    def test_add_mask_command(self, make_scope):
        workflow = wf(job("a", sh("mask", 'echo "::add-mask::hidden-thing"; echo "value hidden-thing"')))
        result, _ = _run(make_scope, workflow)
        assert "hidden-thing" not in result.steps[0].stdout
        assert f"value {MASK}" in result.steps[0].stdout


class TestCancellation:
    def test_remaining_steps_are_skipped(self, make_scope):
        cancel = threading.Event()
        cancel.set()
        workflow = wf(job(
            "a",
            sh("normal", "true"),
            sh("always", "true", if_="always()"),
            sh("on-cancel", "true", if_="cancelled()"),
        ))
        result, _ = _run(make_scope, workflow, cancel=cancel)
        assert result.status is Status.CANCELLED
        assert [s.status for s in result.steps] == [Status.SKIPPED, Status.SKIPPED, Status.SKIPPED]
        assert result.error_kind == "cancelled"


@pytest.fixture
def acme():
    reg = ActionRegistry()
    calls = []

    def recorder(tag):
        def execute(call):
            return ActionResult(outputs={"tag": tag, "junk": "x"}, post=lambda: calls.append(tag))
        return execute

    reg.action("acme/first", outputs=["tag"])(recorder("first"))
    reg.action("acme/second", outputs=["tag"])(recorder("second"))

    @reg.action("acme/greet", inputs={"who": ActionInput(required=True)}, outputs=["greeting"])
    def greet(call):
        call.log(f"greeting {call.inputs['who']}")
        return ActionResult(outputs={"greeting": f"hi {call.inputs['who']}"})

    @reg.action("acme/explode")
    def explode(call):
        raise RuntimeError("kaboom")

    @reg.action("acme/hang")
    def hang(call):
        call.log("waiting")
        time.sleep(3)
        call.log("too late")
        return ActionResult()

    @reg.action("acme/bad-post")
    def bad_post(call):
        def post():
            raise OSError("disk full")
        return ActionResult(post=post)

    reg.calls = calls
    return reg


class TestActionSteps:
    def test_outputs_filtered_and_posts_reversed(self, make_scope, acme):
        workflow = wf(job("a", uses("acme/first@v1", id="f"), uses("acme/second@v1", id="s")))
        result, _ = _run(make_scope, workflow, registry=acme)
        assert result.status is Status.SUCCESS
        assert result.steps[0].outputs == {"tag": "first"}
        assert acme.calls == ["second", "first"]

    def test_posts_skipped_when_job_failed(self, make_scope, acme):
        workflow = wf(job("a", uses("acme/first@v1"), sh("boom", "exit 1")))
        _run(make_scope, workflow, registry=acme)
        assert acme.calls == []

    def test_inputs_are_interpolated(self, make_scope, acme):
        workflow = wf(job("a", uses("acme/greet@v1", id="g", who="${{ github.event_name }}")))
        result, _ = _run(make_scope, workflow, registry=acme)
        assert result.outputs == {"greeting": "hi push"}
        assert result.steps[0].stdout == "greeting push"

    def test_missing_required_input(self, make_scope, acme):
        workflow = wf(job("a", uses("acme/greet@v1")))
        result, _ = _run(make_scope, workflow, registry=acme)
        assert result.status is Status.FAILURE
        assert result.steps[0].error_kind == "missing_input"

    def test_action_exception(self, make_scope, acme):
        workflow = wf(job("a", uses("acme/explode@v1")))
        result, _ = _run(make_scope, workflow, registry=acme)
        assert result.steps[0].error_kind == "action_error"
        assert "kaboom" in result.steps[0].error

    def test_post_failure_fails_job(self, make_scope, acme):
        workflow = wf(job("a", uses("acme/bad-post@v1")))
        result, _ = _run(make_scope, workflow, registry=acme)
        assert result.status is Status.FAILURE
        assert result.error_kind == "post_failure"
        assert result.steps[0].status is Status.SUCCESS

    def test_action_timeout(self, make_scope, acme):
        workflow = wf(job("a", uses("acme/hang@v1"), timeout_minutes=0.01))
        started = time.monotonic()
        result, _ = _run(make_scope, workflow, registry=acme)
        assert time.monotonic() - started < 2.5
        step = result.steps[0]
        assert step.status is Status.FAILURE
        assert step.error_kind == "timeout"
        assert step.stdout == "waiting"
