# cli.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Tuple

import click

from actionflow.actions import default_registry
from actionflow.config import RunConfig
from actionflow.context import RunContext
from actionflow.errors import CIError
from actionflow.loader import DISCOVERY_PATTERNS, discover_workflows, load_workflow
from actionflow.model import Status
from actionflow.plan import Plan, build_plan
from actionflow.report import ReportUploadError, build_report, post_report, write_report
from actionflow.scheduler import Scheduler
from actionflow.secrets import ChainSecrets, EnvSecrets, MappingSecrets
from actionflow.triggers import SUPPORTED_EVENTS, Event, matches
from actionflow.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Args:
        workflow_arg: Optional workflow argument from CLI

    Returns:
        Path to workflow file

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n"
                           "  actionflow run --workflow .github/workflows/ci.yml",
            )
            sys.exit(EXIT_FAILED)
        return workflow_path

    # Otherwise, try to discover workflow
    workflow_files = discover_workflows(".")

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:"] + [f"  {p}" for p in DISCOVERY_PATTERNS],
            suggestion="Create a workflow file or specify one explicitly:\n"
                       "  actionflow run --workflow my_workflow.py",
        )
        sys.exit(EXIT_FAILED)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  actionflow run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_FAILED)

    return workflow_files[0]


def parse_secrets(values: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--secret")
        out[name.strip()] = value
    return out


def _load_plan(workflow_arg: str | None, config: RunConfig) -> Plan:
    """Load and validate; any load error ends the command with exit 1."""
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    registry = default_registry(config.cache_dir, config.cache_keep)
    try:
        workflow = load_workflow(workflow_path)
        return build_plan(workflow, registry)
    except CIError as e:
        details = [f"{k}: {v}" for k, v in e.details.items()]
        if e.job:
            details.insert(0, f"job: {e.job}" + (f", step: {e.step}" if e.step else ""))
        console.print_error("Invalid workflow", f"{workflow_path}: {e.message}", details=details)
        sys.exit(EXIT_FAILED)


def _config(ctx: click.Context, **overrides) -> RunConfig:
    try:
        return RunConfig.from_env().override(**overrides)
    except ValueError as e:
        get_console().print_error("Invalid configuration", str(e))
        ctx.exit(EXIT_FAILED)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """actionflow: run GitHub-Actions-style workflows locally."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); discovered when omitted")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel the run after the first required failure")
@click.option("--event", "event_name", default="push", show_default=True, type=click.Choice(SUPPORTED_EVENTS),
              help="Event that triggers the run")
@click.option("--ref", default=None, help="Git ref for the event (defaults to the current branch)")
@click.option("--force", is_flag=True, default=False, help="Run even if the trigger filters do not match")
@click.option("--secret", "secrets", multiple=True, metavar="NAME=VALUE", help="Secret value (repeatable)")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False),
              help="Write a JSON report to this path")
@click.option("--report-url", default=None, help="POST the JSON report to this URL")
@click.option("--timeout-minutes", default=None, type=click.FloatRange(min=0, min_open=True),
              help="Default step timeout in minutes")
@click.option("--cache-dir", default=None, help="Directory for actions/cache artifacts")
@click.option("--quiet", is_flag=True, default=False, help="Do not echo step output")
@click.pass_context
def run(ctx, workflow, workers, fail_fast, event_name, ref, force, secrets, report_path, report_url,
        timeout_minutes, cache_dir, quiet):
    """Run a workflow."""
    console = get_console()
    console.quiet = quiet
    config = _config(ctx, workers=workers, fail_fast=fail_fast, cache_dir=cache_dir,
                     step_timeout_minutes=timeout_minutes)
    secret_values = parse_secrets(secrets)
    plan = _load_plan(workflow, config)

    event = Event.from_git(event_name, ref=ref, workspace=".")
    if not matches(plan.workflow.on, event, workspace="."):
        if not force:
            console.print_info(
                f"Workflow '{plan.workflow.name}' is not triggered by {event.name} on "
                f"'{event.ref_name or '(no ref)'}'. Use --force to run it anyway."
            )
            ctx.exit(EXIT_OK)
        console.print_warning("trigger filters do not match, running because of --force")

    provider = ChainSecrets(MappingSecrets(secret_values), EnvSecrets(prefix=config.secret_prefix))
    run_context = RunContext(plan.workflow, event=event, secrets=provider, workspace=".")
    try:
        scheduler = Scheduler(
            plan,
            run_context,
            registry=default_registry(config.cache_dir, config.cache_keep),
            console=console,
            max_workers=config.workers,
            fail_fast=config.fail_fast,
            default_timeout_minutes=config.step_timeout_minutes,
        )
        result = scheduler.run()
        console.print_results(result)

        if report_path or report_url:
            report = build_report(
                result,
                run_id=run_context.run_id,
                event=event.name,
                ref=event.ref,
                sha=event.sha,
                redact=run_context.redactor.redact,
            )
            if report_path:
                console.print_info(f"Report written to {write_report(report, report_path)}")
            if report_url:
                try:
                    post_report(report, report_url)
                    console.print_info(f"Report sent to {report_url}")
                except ReportUploadError as e:
                    console.print_error("Report upload failed", str(e),
                                        suggestion="Verify the report URL is correct and the server is running.")
    except Exception as e:
        console.print_exception(e)
        ctx.exit(EXIT_FAILED)
    finally:
        run_context.close()

    if result.status is Status.CANCELLED:
        ctx.exit(EXIT_INTERRUPTED)
    ctx.exit(EXIT_OK if result.ok else EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); discovered when omitted")
@click.pass_context
def plan(ctx, workflow):
    """Print the dependency layers and the job instances of a workflow."""
    console = get_console()
    config = _config(ctx)
    p = _load_plan(workflow, config)
    console.print_header(f"Plan: {p.workflow.name}")
    console.print_plan(p.graph.layers(), {job: [i.id for i in insts] for job, insts in p.by_job.items()})


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); discovered when omitted")
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow without running anything."""
    console = get_console()
    config = _config(ctx)
    p = _load_plan(workflow, config)
    console.print_info(
        f"OK: workflow '{p.workflow.name}' has {len(p.workflow.jobs)} job(s), "
        f"{len(p.instances)} instance(s)"
    )


@cli.command("actions")
@click.pass_context
def list_actions(ctx):
    """List the built-in actions."""
    console = get_console()
    config = _config(ctx)
    registry = default_registry(config.cache_dir, config.cache_keep)
    for name in registry.names():
        action = registry.resolve(name)
        inputs = ", ".join(
            f"{k}{'*' if spec.required else ''}" for k, spec in action.inputs.items()
        )
        console.print_info(f"{name}  inputs: {inputs or '-'}  outputs: {', '.join(action.outputs) or '-'}")
        if action.description:
            console.print_info(f"    {action.description.splitlines()[0]}")


if __name__ == "__main__":
    cli()
