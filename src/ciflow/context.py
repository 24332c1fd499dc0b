# context.py
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .expressions import ExpressionContext, interpolate_value, to_string
from .model import WorkflowRun


def _ref_name(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def github_context(run: WorkflowRun) -> Dict[str, Any]:
    """Run metadata, exposed as `github.*` to match existing workflow files."""
    event = run.event
    return {
        "workflow": run.workflow.name,
        "event_name": event.kind,
        "ref": event.ref,
        "ref_name": _ref_name(event.ref),
        "base_ref": event.base_ref or "",
        "sha": event.sha or "",
        "run_id": run.id,
        "run_attempt": run.attempt,
        "action": event.action or "",
    }


def base_context(run: WorkflowRun, secrets: Optional[Mapping[str, str]] = None) -> ExpressionContext:
    return ExpressionContext(
        values={
            "github": github_context(run),
            "env": dict(run.env),
            "secrets": dict(secrets or {}),
        },
        cancelled=run.cancelled,
    )


def resolve_workflow_env(run: WorkflowRun, secrets: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Resolve workflow-level variables once per run. Values may reference
    `github.*`, `secrets.*` and variables declared above them.
    """
    resolved: Dict[str, str] = {}
    ctx = base_context(run, secrets)
    for name, value in run.workflow.env.items():
        ctx = ctx.with_values(env=dict(resolved))
        resolved[name] = to_string(interpolate_value(value, ctx))
    return resolved
