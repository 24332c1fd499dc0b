from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import CIError, ConfigError
from ..loader import find_workflow_files, load_workflow
from ..model import TriggerEvent, WorkflowDefinition, WorkflowRun
from ..runner import Orchestrator, build_orchestrator
from ..settings import Settings

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: str = Field(..., description="push | pull_request | workflow_dispatch")
    ref: str = "refs/heads/main"
    changed_paths: list[str] = Field(default_factory=list)
    base_ref: str | None = None
    action: str | None = None
    sha: str | None = None
    workflow: str | None = Field(default=None, description="Only consider this workflow")
    force: bool = False

class TriggeredRun(BaseModel):
    workflow: str
    run_id: str

class EventResponse(BaseModel):
    triggered: bool
    runs: list[TriggeredRun] = Field(default_factory=list)

class JobView(BaseModel):
    key: str
    job: str
    status: str
    matrix: dict[str, Any] = Field(default_factory=dict)
    runner: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    error: str | None = None

class RunView(BaseModel):
    id: str
    workflow: str
    status: str
    event: str
    ref: str
    group: str | None = None
    attempt: int = 1
    error: str | None = None
    created_at: datetime | None = None
    finished_at: datetime | None = None
    jobs: list[JobView] = Field(default_factory=list)

class CancelResponse(BaseModel):
    id: str
    cancelled: bool


def live_view(run: WorkflowRun) -> RunView:
    return RunView(
        id=run.id,
        workflow=run.workflow.name,
        status=run.status.value,
        event=run.event.kind,
        ref=run.event.ref,
        group=run.group,
        attempt=run.attempt,
        error=run.error,
        jobs=[
            JobView(
                key=inst.key,
                job=inst.job.id,
                status=inst.status.value,
                matrix=dict(inst.matrix),
                runner=getattr(inst.runner, "label", None),
                outputs=dict(inst.outputs),
                error=inst.error,
            )
            for inst in run.instances.values()
        ],
    )


def load_workflows(directory: str) -> Dict[str, WorkflowDefinition]:
    workflows: Dict[str, WorkflowDefinition] = {}
    for path in find_workflow_files(directory):
        wf = load_workflow(path)
        workflows[wf.name] = wf
    return workflows


# -------------------- App --------------------

def create_app(
    orchestrator: Orchestrator,
    workflows: Mapping[str, WorkflowDefinition],
) -> FastAPI:
    app = FastAPI(title="ciflow control plane")
    app.state.orchestrator = orchestrator
    app.state.workflows = dict(workflows)

    @app.exception_handler(ConfigError)
    async def config_error(_request: Request, exc: ConfigError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.message, "kind": exc.kind, **exc.details})

    @app.exception_handler(CIError)
    async def ci_error(_request: Request, exc: CIError) -> JSONResponse:
        return JSONResponse(status_code=500, content={"detail": exc.message, "kind": exc.kind})

    @app.get("/workflows")
    def list_workflows() -> list[str]:
        return sorted(app.state.workflows)

    @app.post("/events", response_model=EventResponse)
    def post_event(req: EventRequest):
        workflows: Dict[str, WorkflowDefinition] = app.state.workflows
        if req.workflow is not None:
            if req.workflow not in workflows:
                raise HTTPException(status_code=404, detail=f"Unknown workflow '{req.workflow}'")
            candidates = {req.workflow: workflows[req.workflow]}
        else:
            candidates = workflows

        event = TriggerEvent(
            kind=req.kind,
            ref=req.ref,
            changed_paths=tuple(req.changed_paths),
            base_ref=req.base_ref,
            action=req.action,
            sha=req.sha,
        )
        runs: List[TriggeredRun] = []
        for name, wf in candidates.items():
            # a bad graph or matrix is reported to the caller, not to a background thread
            orchestrator.scheduler.plan(wf)
            run = orchestrator.submit(wf, event, force=req.force)
            if run is not None:
                runs.append(TriggeredRun(workflow=name, run_id=run.id))
        logger.info("event %s on %s: %d run(s) triggered", req.kind, req.ref, len(runs))
        return EventResponse(triggered=bool(runs), runs=runs)

    @app.get("/runs", response_model=list[RunView])
    def list_runs(limit: int = 50, workflow: Optional[str] = None):
        views: Dict[str, RunView] = {}
        if orchestrator.store is not None:
            for record in orchestrator.store.list(limit=limit, workflow=workflow):
                views[record["id"]] = RunView(**record)
        for run in orchestrator.runs():
            if workflow is None or run.workflow.name == workflow:
                archived = views.get(run.id)
                view = live_view(run)
                if archived is not None:
                    view.created_at = archived.created_at
                    view.finished_at = archived.finished_at
                views[run.id] = view
        return list(views.values())[:limit]

    @app.get("/runs/{run_id}", response_model=RunView)
    def get_run(run_id: str):
        run = orchestrator.get(run_id)
        if run is not None:
            return live_view(run)
        if orchestrator.store is not None:
            record = orchestrator.store.get(run_id)
            if record is not None:
                return RunView(**record)
        raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        run = orchestrator.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        if run.status.terminal:
            raise HTTPException(status_code=409, detail=f"Run already {run.status.value}")
        return CancelResponse(id=run_id, cancelled=orchestrator.cancel(run_id))

    return app


def app_from_env() -> FastAPI:
    """Factory for `uvicorn --factory ciflow.cloud.main:app_from_env`."""
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level.upper())
    return create_app(build_orchestrator(settings), load_workflows(settings.workflows_dir))
