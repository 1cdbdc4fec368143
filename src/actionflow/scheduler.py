# scheduler.py
from __future__ import annotations

import os
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Deque, Dict, List, Optional, Set, Tuple

from .actions import ActionRegistry
from .context import JobScope, RunContext
from .expressions import evaluate_guard
from .model import JobInstance, JobResult, RunResult, Status
from .plan import Plan
from .runner import DEFAULT_STEP_TIMEOUT_MINUTES, run_instance
from .ui.console import Console, get_console

# ---------------------------------------------------------------------
# Instance lifecycle:
#
#   pending -> blocked -> ready -> running -> success | failure | cancelled
#   pending | blocked -> skipped | cancelled
#
# The dispatcher is the calling thread. Workers only run instances; every
# state change, publication and dependent resolution happens here, so the
# state table needs no lock beyond the transition log.
# ---------------------------------------------------------------------

Transition = Tuple[int, str, Optional[str], str]


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """Runs a Plan on a bounded thread pool, in dependency order."""

    def __init__(
        self,
        plan: Plan,
        run: RunContext,
        *,
        registry: Optional[ActionRegistry] = None,
        console: Optional[Console] = None,
        max_workers: Optional[int] = None,
        fail_fast: bool = False,
        default_timeout_minutes: float = DEFAULT_STEP_TIMEOUT_MINUTES,
        poll_interval: float = 0.2,
    ):
        self.plan = plan
        self.run_context = run
        self.registry = registry
        self.console = console or get_console()
        self.max_workers = max_workers or default_workers()
        self.fail_fast = fail_fast
        self.default_timeout_minutes = default_timeout_minutes
        self.poll_interval = poll_interval

        self._cancel = threading.Event()
        self._interrupted = False
        self._log_lock = threading.Lock()
        self._transitions: List[Transition] = []
        self._states: Dict[str, Status] = {}
        self._results: Dict[str, JobResult] = {}
        self._by_job = plan.by_job
        self._visible: Dict[str, Set[str]] = {j.id: plan.graph.ancestors(j.id) for j in plan.workflow.jobs}

    # ---- control ----

    def cancel(self) -> None:
        """
        Request cancellation (safe from any thread).

        Running instances finish their current step and report cancelled;
        everything not started yet is cancelled without running.
        """
        self._interrupted = True
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def state(self, instance_id: str) -> Status:
        return self._states[instance_id]

    @property
    def transitions(self) -> List[Transition]:
        with self._log_lock:
            return list(self._transitions)

    # ---- state table ----

    def _transition(self, inst: JobInstance, to: Status) -> None:
        frm = self._states.get(inst.id)
        self._states[inst.id] = to
        with self._log_lock:
            seq = len(self._transitions) + 1
            self._transitions.append((seq, inst.id, frm.value if frm else None, to.value))
        self.console.print_debug(f"#{seq} {inst.id}: {frm.value if frm else '-'} -> {to.value}")

    def _complete(self, inst: JobInstance, result: JobResult) -> None:
        self._results[inst.id] = result
        self.run_context.publish_job(inst, result.status, result.outputs)
        self._transition(inst, result.status)

    def _finish_unstarted(self, inst: JobInstance, status: Status, reason: str) -> None:
        result = JobResult(
            instance_id=inst.id,
            job_id=inst.job_id,
            name=inst.id,
            bindings=dict(inst.bindings),
            required=not inst.job.continue_on_error,
        )
        result.finish(status)
        if status is Status.CANCELLED:
            result.error_kind = "cancelled"
            result.error = reason
            self.console.print_job_cancelled(inst.id)
        else:
            self.console.print_job_skipped(inst.id, reason)
        self._complete(inst, result)

    # ---- resolution ----

    def _needs_status(self, inst: JobInstance) -> Optional[str]:
        """Aggregate status of every instance of every needed job, or None while any is not terminal."""
        statuses = []
        for job_id in inst.job.needs:
            for pred in self._by_job[job_id]:
                st = self._states[pred.id]
                if not st.terminal:
                    return None
                statuses.append(st)
        if Status.FAILURE in statuses:
            return Status.FAILURE.value
        if Status.CANCELLED in statuses:
            return Status.CANCELLED.value
        if Status.SKIPPED in statuses:
            return Status.SKIPPED.value
        return Status.SUCCESS.value

    def _resolve_blocked(self, ready: Deque[JobInstance]) -> None:
        changed = True
        while changed:
            changed = False
            for inst in self.plan.instances:
                if self._states[inst.id] is not Status.BLOCKED:
                    continue
                status = self._needs_status(inst)
                if status is None:
                    continue
                changed = True
                ctx = self.run_context.job_guard_context(inst, self._visible[inst.job_id], status)
                if evaluate_guard(inst.job.if_, ctx):
                    self._transition(inst, Status.READY)
                    ready.append(inst)
                else:
                    reason = "condition false" if inst.job.if_ else f"needs {status}"
                    self._finish_unstarted(inst, Status.SKIPPED, reason)

    def _cancel_unstarted(self, ready: Deque[JobInstance], only_job: Optional[str] = None,
                          reason: str = "run cancelled") -> None:
        for inst in self.plan.instances:
            if only_job is not None and inst.job_id != only_job:
                continue
            if self._states[inst.id] in (Status.PENDING, Status.BLOCKED, Status.READY):
                if inst in ready:
                    ready.remove(inst)
                self._finish_unstarted(inst, Status.CANCELLED, reason)

    def _on_result(self, inst: JobInstance, result: JobResult, ready: Deque[JobInstance]) -> None:
        self._complete(inst, result)
        if result.status is not Status.FAILURE:
            return
        if inst.job.strategy.fail_fast:
            self._cancel_unstarted(ready, only_job=inst.job_id, reason=f"sibling {inst.id} failed")
        if self.fail_fast and result.required:
            self._cancel.set()

    # ---- dispatch ----

    def _next_ready(self, ready: Deque[JobInstance], running: Dict[str, int]) -> Optional[JobInstance]:
        for inst in ready:
            cap = inst.job.strategy.max_parallel
            if cap is None or running.get(inst.job_id, 0) < cap:
                ready.remove(inst)
                return inst
        return None

    def _execute(self, inst: JobInstance) -> JobResult:
        scope = JobScope(self.run_context, inst, self._visible[inst.job_id])
        return run_instance(
            inst,
            scope,
            registry=self.registry,
            console=self.console,
            default_timeout_minutes=self.default_timeout_minutes,
            cancel_event=self._cancel,
        )

    def _crashed(self, inst: JobInstance, exc: BaseException) -> JobResult:
        result = JobResult(
            instance_id=inst.id,
            job_id=inst.job_id,
            name=inst.id,
            bindings=dict(inst.bindings),
            required=not inst.job.continue_on_error,
            error_kind="internal_error",
            error=self.run_context.redactor.redact(f"{type(exc).__name__}: {exc}"),
        )
        result.finish(Status.FAILURE)
        self.console.print_exception(exc)
        return result

    def run(self) -> RunResult:
        ready: Deque[JobInstance] = deque()
        for inst in self.plan.instances:
            self._transition(inst, Status.PENDING)
        for inst in self.plan.instances:
            if inst.job.needs:
                self._transition(inst, Status.BLOCKED)
            else:
                self._transition(inst, Status.READY)
                ready.append(inst)

        self.console.print_run_started(self.plan.workflow.name, len(self.plan.instances), self.max_workers)

        running: Dict[str, int] = {}
        in_flight: Dict[Future, JobInstance] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                if self._cancel.is_set():
                    self._cancel_unstarted(ready)
                else:
                    self._resolve_blocked(ready)

                # submit only what a worker can take now so the queue order stays ours
                while len(in_flight) < self.max_workers and not self._cancel.is_set():
                    inst = self._next_ready(ready, running)
                    if inst is None:
                        break
                    self._transition(inst, Status.RUNNING)
                    running[inst.job_id] = running.get(inst.job_id, 0) + 1
                    in_flight[pool.submit(self._execute, inst)] = inst

                if not in_flight:
                    if all(s.terminal for s in self._states.values()):
                        break
                    if not ready and not self._cancel.is_set():
                        # unreachable for an acyclic plan
                        raise RuntimeError("scheduler stalled with blocked instances")
                    continue

                try:
                    done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.console.print_warning("interrupted, cancelling run")
                    self.cancel()
                    continue

                for fut in sorted(done, key=lambda f: in_flight[f].index):
                    inst = in_flight.pop(fut)
                    running[inst.job_id] -= 1
                    try:
                        result = fut.result()
                    except Exception as e:
                        result = self._crashed(inst, e)
                    self._on_result(inst, result, ready)

        return self._run_result()

    def _run_result(self) -> RunResult:
        jobs = {inst.id: self._results[inst.id] for inst in self.plan.instances}
        if self._interrupted:
            status = Status.CANCELLED
        elif any(r.required and r.status in (Status.FAILURE, Status.CANCELLED) for r in jobs.values()):
            status = Status.FAILURE
        else:
            status = Status.SUCCESS
        return RunResult(
            workflow=self.plan.workflow.name,
            status=status,
            jobs=jobs,
            transitions=self.transitions,
        )


def run_dag(
    plan: Plan,
    run: RunContext,
    *,
    registry: Optional[ActionRegistry] = None,
    console: Optional[Console] = None,
    max_workers: Optional[int] = None,
    fail_fast: bool = False,
    default_timeout_minutes: float = DEFAULT_STEP_TIMEOUT_MINUTES,
) -> RunResult:
    """Run every instance of the plan and return the run result."""
    return Scheduler(
        plan,
        run,
        registry=registry,
        console=console,
        max_workers=max_workers,
        fail_fast=fail_fast,
        default_timeout_minutes=default_timeout_minutes,
    ).run()
