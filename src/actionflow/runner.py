# runner.py
from __future__ import annotations

import os
import re
import shlex
import signal
import subprocess
import sys
import tempfile
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .actions import ActionCall, ActionRegistry, ActionResult
from .actions.builtin import TOOL_HINTS
from .context import JobScope
from .errors import CIError, CancelledError, StepFailure, StepTimeout
from .expressions import evaluate_guard, interpolate, to_string
from .model import JobInstance, JobResult, Status, Step, StepResult
from .ui.console import Console, get_console

# ---------------------------------------------------------------------
# One worker runs one job instance end to end:
#
#   for each step:   guard -> run | uses -> outputs -> record
#   after steps:     post hooks (reverse order, only when still success)
#   at the end:      job outputs
#
# Nothing here raises for a failing step. Failures are written into the
# StepResult / JobResult; the scheduler decides what happens next.
# ---------------------------------------------------------------------

DEFAULT_STEP_TIMEOUT_MINUTES = 360
TAIL_BYTES = 64 * 1024
PIPE_GRACE_SECONDS = 5.0

SHELLS: Dict[str, List[str]] = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
    "sh": ["sh", "-e", "-c"],
    "python": [sys.executable, "-c"],
}

_NOT_FOUND_RE = re.compile(r"(?:^|[\s:])([\w.+-]+): (?:command )?not found")


class _Tail:
    """Last `limit` bytes of a stream, kept line by line."""

    def __init__(self, limit: int = TAIL_BYTES):
        self.limit = limit
        self._lines: Deque[str] = deque()
        self._size = 0
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
            self._size += len(line) + 1
            while self._size > self.limit and len(self._lines) > 1:
                self._size -= len(self._lines.popleft()) + 1

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)


# ----------------------------------------------------------------------
# GITHUB_OUTPUT / GITHUB_ENV files
# ----------------------------------------------------------------------

def parse_command_file(text: str) -> Dict[str, str]:
    """
    Parse `key=value` lines and `key<<DELIM ... DELIM` blocks.

    Later keys win. Raises ValueError on a line that is neither, or on a
    block whose delimiter never appears.
    """
    out: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        heredoc = "<<" in line and ("=" not in line or line.index("<<") < line.index("="))
        if heredoc:
            key, delim = line.split("<<", 1)
            key, delim = key.strip(), delim.strip()
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"missing delimiter '{delim}' for '{key}'")
            i += 1
            out[key] = "\n".join(body)
        elif "=" in line:
            key, value = line.split("=", 1)
            out[key.strip()] = value
        else:
            raise ValueError(f"invalid line {line!r}")
    return out


def _read_command_file(path: Path) -> Dict[str, str]:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return {}
    return parse_command_file(text)


def _new_command_file(scope: JobScope, kind: str) -> Path:
    fd, name = tempfile.mkstemp(prefix=f"{kind}_", dir=str(scope.run.temp_dir))
    os.close(fd)
    return Path(name)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def tool_hint(stderr: str) -> Optional[str]:
    """Hint for exit 127: name the missing tool when the shell reported it."""
    m = _NOT_FOUND_RE.search(stderr or "")
    if not m:
        return "A command was not found. Check that it is installed and on PATH."
    tool = m.group(1)
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


def shell_command(shell: Optional[str], script: str, script_dir: Path) -> Tuple[object, bool]:
    """
    Returns (args, use_shell) for Popen.

    No shell -> the platform shell (shell=True). A custom shell containing
    `{0}` gets the script written to a file whose path replaces `{0}`.
    """
    if not shell:
        return script, True
    if shell in SHELLS:
        return SHELLS[shell] + [script], False
    if "{0}" in shell:
        fd, name = tempfile.mkstemp(prefix="script_", dir=str(script_dir))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(script)
        return [a.replace("{0}", name) for a in shlex.split(shell)], False
    return shlex.split(shell) + ["-c", script], False


def _timeout_seconds(step: Step, scope: JobScope, default_minutes: float) -> float:
    minutes = step.timeout_minutes
    if minutes is None:
        minutes = scope.instance.job.timeout_minutes
    if minutes is None:
        minutes = default_minutes
    return float(minutes) * 60.0


def _kill_tree(proc: subprocess.Popen) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def _call_with_timeout(
    execute: Callable[[ActionCall], ActionResult], call: ActionCall, timeout_s: float,
) -> Tuple[bool, Optional[ActionResult], Optional[Exception]]:
    """
    Run an action on a daemon thread and wait at most timeout_s.

    Returns (finished, result, error). An action still running at the
    deadline is abandoned; it cannot be killed like a process group.
    """
    box: Dict[str, Any] = {}

    def target() -> None:
        try:
            box["result"] = execute(call)
        except Exception as e:
            box["error"] = e

    t = threading.Thread(target=target, name=f"action-{call.job}", daemon=True)
    t.start()
    t.join(timeout_s)
    if t.is_alive():
        return False, None, None
    return True, box.get("result"), box.get("error")


def _fail(result: StepResult, err: CIError, redact: Callable[[str], str]) -> StepResult:
    result.error_kind = err.kind
    result.error = redact(err.message)
    if isinstance(err, StepFailure) and err.exit_code is not None:
        result.exit_code = err.exit_code
    result.finish(Status.FAILURE)
    return result


# ----------------------------------------------------------------------
# Step execution
# ----------------------------------------------------------------------

def _stream(pipe, tail: _Tail, on_line: Callable[[str], None]) -> None:
    with pipe:
        for raw in iter(pipe.readline, ""):
            line = raw.rstrip("\r\n")
            on_line(line)
            tail.append(line)


def _run_command(
    step: Step,
    scope: JobScope,
    result: StepResult,
    *,
    env: Dict[str, str],
    console: Console,
    timeout_s: float,
) -> StepResult:
    run = scope.run
    redact = run.redactor.redact
    ctx = scope.eval_context(env)
    script = to_string(interpolate(step.run or "", ctx))

    cwd = run.workspace
    if step.working_directory:
        cwd = (run.workspace / to_string(interpolate(step.working_directory, ctx))).resolve()
    if not cwd.is_dir():
        return _fail(result, StepFailure(
            scope.instance.id, result.name, f"working directory not found: {cwd}",
            kind="missing_directory",
        ), redact)

    output_file = _new_command_file(scope, "output")
    env_file = _new_command_file(scope, "env")
    proc_env = scope.run.host_env()
    proc_env.update(scope.process_env())
    proc_env.update(env)
    proc_env["GITHUB_OUTPUT"] = str(output_file)
    proc_env["GITHUB_ENV"] = str(env_file)

    args, use_shell = shell_command(step.shell, script, run.temp_dir)
    job_label = scope.instance.id

    def on_stdout(line: str) -> None:
        if line.startswith("::add-mask::"):
            run.redactor.register(line[len("::add-mask::"):])
            return
        console.print_step_line(job_label, redact(line))

    def on_stderr(line: str) -> None:
        console.print_step_line(job_label, redact(line), err=True)

    try:
        proc = subprocess.Popen(
            args,
            shell=use_shell,
            cwd=str(cwd),
            env=proc_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        result.stderr = f"{e.filename}: not found" if e.filename else str(e)
        return _fail(result, StepFailure(
            job_label, result.name, f"could not start process: {e}",
            exit_code=127, cmd=redact(script),
        ), redact)

    out_tail, err_tail = _Tail(), _Tail()
    readers = [
        threading.Thread(target=_stream, args=(proc.stdout, out_tail, on_stdout), daemon=True),
        threading.Thread(target=_stream, args=(proc.stderr, err_tail, on_stderr), daemon=True),
    ]
    for t in readers:
        t.start()

    deadline = time.monotonic() + timeout_s
    timed_out = False
    try:
        proc.wait(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_tree(proc)
        proc.wait()
    # a background child can hold the pipes open after the shell exits
    for t in readers:
        t.join(max(0.0, deadline - time.monotonic()))
    if any(t.is_alive() for t in readers):
        timed_out = True
        _kill_tree(proc)
        for t in readers:
            t.join(PIPE_GRACE_SECONDS)

    result.exit_code = proc.returncode
    result.stdout = redact(out_tail.text())
    result.stderr = redact(err_tail.text())

    if timed_out:
        return _fail(result, StepTimeout(job_label, result.name, timeout_s, cmd=redact(script)), redact)
    if proc.returncode != 0:
        return _fail(result, StepFailure(
            job_label, result.name, f"process exited with code {proc.returncode}",
            exit_code=proc.returncode, cmd=redact(script),
        ), redact)

    try:
        result.outputs = _read_command_file(output_file)
        scope.export_env(_read_command_file(env_file))
    except ValueError as e:
        return _fail(result, StepFailure(
            job_label, result.name, f"malformed command file: {e}", kind="invalid_output",
        ), redact)
    result.finish(Status.SUCCESS)
    return result


def _run_action(
    step: Step,
    scope: JobScope,
    result: StepResult,
    *,
    env: Dict[str, str],
    registry: ActionRegistry,
    console: Console,
    posts: List[Tuple[str, Callable[[], None]]],
    timeout_s: float,
) -> StepResult:
    run = scope.run
    redact = run.redactor.redact
    job_label = scope.instance.id
    action = registry.resolve(step.uses or "")
    if action is None:
        return _fail(result, StepFailure(
            job_label, result.name, f"no action registered for '{step.uses}'", kind="unknown_action",
        ), redact)

    ctx = scope.eval_context(env)
    inputs = {k: to_string(v) for k, v in interpolate(dict(step.with_), ctx).items()}
    for name in inputs:
        if name not in action.inputs:
            console.print_warning(f"[{job_label}] {action.name} does not declare input '{name}'")
    for name, spec in action.inputs.items():
        if name not in inputs and spec.default is not None:
            inputs[name] = spec.default
        if spec.required and not inputs.get(name):
            return _fail(result, StepFailure(
                job_label, result.name, f"missing required input '{name}' for {action.name}",
                kind="missing_input",
            ), redact)

    log_tail = _Tail()
    expired = threading.Event()

    def log(line: str) -> None:
        if expired.is_set():
            return
        line = redact(str(line))
        console.print_step_line(job_label, line)
        log_tail.append(line)

    proc_env = scope.run.host_env()
    proc_env.update(scope.process_env())
    proc_env.update(env)
    call = ActionCall(inputs=inputs, env=proc_env, workspace=run.workspace, job=job_label,
                      step=result.name, log=log)
    finished, outcome, error = _call_with_timeout(action.execute, call, timeout_s)
    if not finished:
        expired.set()
        result.stdout = log_tail.text()
        return _fail(result, StepTimeout(job_label, result.name, timeout_s, cmd=step.uses), redact)
    if error is not None:
        result.stdout = log_tail.text()
        return _fail(result, StepFailure(
            job_label, result.name, f"{action.name} raised {type(error).__name__}: {error}", kind="action_error",
        ), redact)

    result.stdout = log_tail.text()
    result.exit_code = outcome.exit_code
    result.outputs = {k: to_string(v) for k, v in outcome.outputs.items() if k in action.outputs}
    if not outcome.ok:
        return _fail(result, StepFailure(
            job_label, result.name, outcome.message or f"{action.name} failed",
            exit_code=outcome.exit_code, kind="action_failure",
        ), redact)
    if outcome.post is not None:
        posts.append((result.name, outcome.post))
    result.finish(Status.SUCCESS)
    return result


def run_step(
    step: Step,
    scope: JobScope,
    *,
    index: int = 0,
    registry: Optional[ActionRegistry] = None,
    console: Optional[Console] = None,
    default_timeout_minutes: float = DEFAULT_STEP_TIMEOUT_MINUTES,
    posts: Optional[List[Tuple[str, Callable[[], None]]]] = None,
) -> StepResult:
    """
    Run one step whose guard already passed.

    The returned result is success or failure; `conclusion` is left for the
    caller (continue-on-error is a job-level decision).
    """
    console = console or get_console()
    env = scope.merged_env(step.env)
    ctx = scope.eval_context(env)
    name = scope.run.redactor.redact(to_string(interpolate(step.label, ctx)))
    result = StepResult(name=name, step_id=step.id, index=index)
    result.start()
    console.print_step(scope.instance.id, name)

    timeout_s = _timeout_seconds(step, scope, default_timeout_minutes)
    if step.uses:
        if registry is None:
            from .actions import default_registry
            registry = default_registry()
        return _run_action(step, scope, result, env=env, registry=registry, console=console,
                           posts=posts if posts is not None else [], timeout_s=timeout_s)
    return _run_command(step, scope, result, env=env, console=console, timeout_s=timeout_s)


# ----------------------------------------------------------------------
# Job instance execution
# ----------------------------------------------------------------------

def display_name(instance: JobInstance, scope: JobScope) -> str:
    if not instance.job.name:
        return instance.id
    return to_string(interpolate(instance.job.name, scope.eval_context()))


def job_outputs(scope: JobScope) -> Dict[str, str]:
    """Declared `outputs:` templates, or the merged step outputs when none are declared."""
    job = scope.instance.job
    if not job.outputs:
        return scope.step_outputs_merged()
    ctx = scope.eval_context()
    return {k: to_string(interpolate(str(v), ctx)) for k, v in job.outputs.items()}


def run_instance(
    instance: JobInstance,
    scope: JobScope,
    *,
    registry: Optional[ActionRegistry] = None,
    console: Optional[Console] = None,
    default_timeout_minutes: float = DEFAULT_STEP_TIMEOUT_MINUTES,
    cancel_event: Optional[threading.Event] = None,
) -> JobResult:
    """
    Run every step of one instance in order and return its result.

    A cancel request is honored between steps: the current step finishes,
    the job status becomes cancelled, and every remaining step is skipped
    whatever its guard says.
    """
    console = console or get_console()
    job = instance.job
    redact = scope.run.redactor.redact
    result = JobResult(
        instance_id=instance.id,
        job_id=job.id,
        name=redact(display_name(instance, scope)),
        bindings=dict(instance.bindings),
        required=not job.continue_on_error,
    )
    result.start()
    console.print_job_start(instance.id)

    posts: List[Tuple[str, Callable[[], None]]] = []
    first_error: Optional[StepResult] = None

    for n, step in enumerate(job.steps):
        if cancel_event is not None and cancel_event.is_set():
            scope.status = Status.CANCELLED.value

        halted = scope.status == Status.CANCELLED.value
        if halted or not evaluate_guard(step.if_, scope.eval_context()):
            skipped = StepResult(name=redact(step.label), step_id=step.id, index=n)
            skipped.finish(Status.SKIPPED)
            scope.record_step(step.id, {}, Status.SKIPPED, Status.SKIPPED)
            console.print_step_skipped(instance.id, skipped.name)
            result.steps.append(skipped)
            continue

        step_result = run_step(
            step, scope, index=n, registry=registry, console=console,
            default_timeout_minutes=default_timeout_minutes, posts=posts,
        )
        conclusion = step_result.status
        if step_result.status is Status.FAILURE:
            if step.continue_on_error:
                conclusion = Status.SUCCESS
                console.print_warning(f"[{instance.id}] {step_result.name} failed (continue-on-error)")
            else:
                if first_error is None:
                    first_error = step_result
                if scope.status == Status.SUCCESS.value:
                    scope.status = Status.FAILURE.value
                hint = tool_hint(step_result.stderr) if step_result.exit_code == 127 else None
                console.print_failure(f"{instance.id} / {step_result.name}", step_result.error or "",
                                      exit_code=step_result.exit_code, hint=hint)
        step_result.conclusion = conclusion
        scope.record_step(step.id, step_result.outputs, step_result.status, conclusion)
        result.steps.append(step_result)

    if scope.status == Status.SUCCESS.value:
        for label, post in reversed(posts):
            try:
                post()
            except Exception as e:
                scope.status = Status.FAILURE.value
                result.error_kind = "post_failure"
                result.error = redact(f"post step for '{label}' failed: {e}")
                console.print_failure(f"{instance.id} / Post {label}", result.error)
                break

    if first_error is not None and result.error is None:
        result.error_kind = first_error.error_kind
        result.error = first_error.error
        result.exit_code = first_error.exit_code

    result.outputs = job_outputs(scope)

    final = Status(scope.status)
    result.finish(final)
    if final is Status.CANCELLED:
        if result.error is None:
            cancelled = CancelledError(instance.id)
            result.error_kind, result.error = cancelled.kind, cancelled.message
        console.print_job_cancelled(instance.id)
    elif final is Status.FAILURE:
        console.print_failure(instance.id, result.error or "", is_job=True)
    else:
        console.print_job_finished(instance.id, final.value, result.duration)
    return result
