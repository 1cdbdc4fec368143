from .loader import load_workflow
from .plan import build_plan
from .scheduler import Scheduler, run_dag
from .context import RunContext
from .model import Job, Step, Workflow, Status, RunResult
from .actions import ActionRegistry, ActionResult, ActionInput, default_registry
from .dsl import job, sh, uses, matrix, wf, JobBuilder, build

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "JobBuilder", "build",
    "load_workflow", "build_plan", "Scheduler", "run_dag", "RunContext",
    "Job", "Step", "Workflow", "Status", "RunResult",
    "ActionRegistry", "ActionResult", "ActionInput", "default_registry",
]
