# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

import click

from ciflow.errors import CIError
from ciflow.git_facts.git import changed_paths, current_ref, head_sha
from ciflow.loader import find_workflow_files, load_workflow
from ciflow.model import TriggerEvent, WorkflowDefinition
from ciflow.runner import RunResult, build_orchestrator
from ciflow.scheduler import plan_workflow
from ciflow.settings import Settings
from ciflow.ui.console import Console, ConsoleListener, get_console, set_console


def discover_workflow(workflow_arg: str | None, directory: str = ".") -> Path:
    """
    Resolve the workflow file from the CLI argument or by discovery.

    Raises:
        SystemExit: If no workflow, or more than one, can be found
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  ciflow run my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files(directory)

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  *_workflow.py",
                "  .ciflow/workflows/*.yml",
            ],
            suggestion="Create a workflow file:\n  ci_workflow.py\n\nOr pass one explicitly:\n  ciflow run path/to/workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  ciflow run {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def parse_static_runners(values: tuple[str, ...]) -> Dict[str, int]:
    runners: Dict[str, int] = {}
    for value in values:
        label, sep, count = value.partition("=")
        if not sep or not label or not count.isdigit() or int(count) < 1:
            raise click.BadParameter(f"expected LABEL=N with N >= 1, got {value!r}", param_hint="--static-runner")
        runners[label] = int(count)
    return runners


def _load(ctx: click.Context, workflow: str | None) -> WorkflowDefinition:
    settings: Settings = ctx.obj["settings"]
    path = discover_workflow(workflow, settings.workflows_dir)
    return load_workflow(path)


def _fail(ctx: click.Context, e: Exception) -> None:
    console = get_console()
    if isinstance(e, CIError):
        console.print_error(e.kind, e.message, details=[f"{k}: {v}" for k, v in e.details.items()] or None)
        if e.job:
            console.print_info(f"job: {e.job}" + (f", step: {e.step}" if e.step else ""))
    else:
        console.print_exception(e)
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and debug logs)",
)
@click.pass_context
def cli(ctx, debug):
    """ciflow: run CI workflows locally with matrix, DAG and concurrency semantics."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    try:
        settings = Settings.from_env()
    except CIError as e:
        _fail(ctx, e)
    level = logging.DEBUG if debug else getattr(logging, settings.log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("workflow", required=False)
@click.option("--event", "event_kind", default="push", show_default=True, help="Event kind to simulate")
@click.option("--ref", default=None, help="Git ref (defaults to the checked-out branch)")
@click.option("--base-ref", default=None, help="Target branch for pull_request events")
@click.option("--action", default=None, help="pull_request activity type (opened, synchronize, ...)")
@click.option("--changed", multiple=True, help="Changed path (repeatable)")
@click.option("--git-diff/--no-git-diff", default=False, help="Take changed paths from git")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--force", is_flag=True, default=False, help="Run even if the trigger filters do not match")
@click.option("--workers", default=None, type=int, help="Number of parallel job instances")
@click.option("--static-runner", "static_runner", multiple=True, metavar="LABEL=N", help="Static runner pool (repeatable)")
@click.option("--archive/--no-archive", default=True, help="Record the run in the run store")
@click.option("--artifacts-dir", default=None, help="Directory uploaded artifacts are copied to")
@click.option("--artifacts-url", default=None, help="Reporting service artifacts are POSTed to")
@click.pass_context
def run(
    ctx, workflow, event_kind, ref, base_ref, action, changed, git_diff, compare_ref, force, workers, static_runner,
    archive, artifacts_dir, artifacts_url,
):
    """Run a workflow for a simulated trigger event."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    overrides = {"max_workers": workers, "artifacts_dir": artifacts_dir, "artifacts_url": artifacts_url}
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        settings = settings.model_copy(update=overrides)

    try:
        runners = parse_static_runners(static_runner)
        wf = _load(ctx, workflow)
        event = _build_event(event_kind, ref, base_ref, action, list(changed), git_diff, compare_ref)

        listener = ConsoleListener(console)
        orchestrator = build_orchestrator(settings, static_runners=runners, listener=listener, archive=archive)
        # ConfigError (cycles, bad matrix) before anything starts
        orchestrator.scheduler.plan(wf)

        pending = orchestrator.create_run(wf, event, force=force)
        if pending is None:
            console.print_info(f"{wf.name}: event '{event.kind}' on {event.ref} does not trigger this workflow")
            return

        outcome: dict = {}

        def _execute() -> None:
            try:
                outcome["result"] = orchestrator.execute(pending)
            except BaseException as e:  # re-raised on the main thread
                outcome["error"] = e

        worker = threading.Thread(target=_execute, name="ciflow-run", daemon=True)
        worker.start()
        try:
            while worker.is_alive():
                worker.join(0.2)
        except KeyboardInterrupt:
            console.print_info("\nInterrupted by user, cancelling run...")
            orchestrator.cancel(pending.id, "interrupted")
            worker.join()
            console.print_results(pending.job_statuses(), pending.status.value)
            sys.exit(130)

        if "error" in outcome:
            raise outcome["error"]
        result: RunResult = outcome["result"]
        console.print_results(result.jobs, result.status.value if result.status else None)
        if not result.ok:
            sys.exit(1)
    except click.BadParameter:
        raise
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(ctx, e)


def _build_event(
    kind: str,
    ref: Optional[str],
    base_ref: Optional[str],
    action: Optional[str],
    changed: List[str],
    git_diff: bool,
    compare_ref: str,
) -> TriggerEvent:
    console = get_console()
    sha = None
    if ref is None or git_diff:
        try:
            ref = ref or current_ref()
            sha = head_sha()
            if git_diff:
                changed = sorted(set(changed) | set(changed_paths(compare_ref)))
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_debug("not a git checkout; using refs/heads/main")
            ref = ref or "refs/heads/main"
    if kind == "pull_request" and action is None:
        action = "opened"
    return TriggerEvent(
        kind=kind,
        ref=ref,
        changed_paths=tuple(changed),
        base_ref=base_ref,
        action=action,
        sha=sha,
    )


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def plan(ctx, workflow):
    """Show expanded job instances grouped by dependency stage."""
    console = get_console()
    try:
        wf = _load(ctx, workflow)
        p = plan_workflow(wf)
    except Exception as e:
        _fail(ctx, e)
    console.print_header(f"{wf.name}: {len(p.all_instances())} job instance(s)")
    console.print_plan(p.stages, {job_id: [i.key for i in insts] for job_id, insts in p.instances.items()})


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow file without running it."""
    console = get_console()
    try:
        wf = _load(ctx, workflow)
        p = plan_workflow(wf)
    except Exception as e:
        _fail(ctx, e)
    console.print_info(f"OK: {wf.name} ({len(wf.jobs)} jobs, {len(p.all_instances())} instances)")


if __name__ == "__main__":
    cli()
