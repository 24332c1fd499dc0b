# loader.py
"""
Workflow document loading.

Two sources are supported:

  * YAML files shaped like GitHub Actions workflows (`on`, `env`,
    `concurrency`, `jobs.<id>.{runs-on, needs, if, strategy, steps, ...}`),
    validated with pydantic and converted into a WorkflowDefinition.
  * Python files defining `workflow() -> WorkflowDefinition` or
    `WORKFLOW = wf(...)` (see ciflow.dsl).

Everything that can be checked statically is checked here so that a bad
document fails with ConfigError before any job is dispatched.
"""
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .actions import ActionRegistry, default_registry
from .dag import validate_dag
from .errors import ConfigError
from .executor import SHELLS
from .expressions import check_condition, check_template
from .model import (
    ConcurrencySpec,
    EphemeralSelector,
    JobSpec,
    Step,
    Strategy,
    TriggerSpec,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class StepDoc(_Doc):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    if_: Union[bool, str, None] = Field(default=None, alias="if")
    env: Dict[str, Any] = Field(default_factory=dict)
    shell: Optional[str] = None
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)

    @field_validator("run", mode="before")
    @classmethod
    def _run_to_str(cls, v: Any) -> Any:
        return _scalar(v) if v is not None else None

    @model_validator(mode="after")
    def _run_or_uses(self) -> "StepDoc":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.shell is not None and self.shell not in SHELLS:
            raise ValueError(f"unknown shell '{self.shell}' (known: {', '.join(sorted(SHELLS))})")
        return self


class EphemeralDoc(_Doc):
    image_family: str = Field(alias="image-family")
    machine_type: str = Field(alias="machine-type")
    zone: str
    prefix: str = "ciflow-runner"


class RunsOnDoc(_Doc):
    ephemeral: EphemeralDoc


class StrategyDoc(_Doc):
    matrix: Dict[str, Any] = Field(default_factory=dict)
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)
    # accepted for compatibility; sibling instances always run to completion
    fail_fast: bool = Field(default=False, alias="fail-fast")


class JobDoc(_Doc):
    name: Optional[str] = None
    runs_on: Union[str, RunsOnDoc] = Field(default="local", alias="runs-on")
    needs: Union[str, List[str]] = Field(default_factory=list)
    if_: Union[bool, str, None] = Field(default=None, alias="if")
    env: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    strategy: Optional[StrategyDoc] = None
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    steps: List[StepDoc] = Field(min_length=1)


class ConcurrencyDoc(_Doc):
    group: str
    cancel_in_progress: bool = Field(default=False, alias="cancel-in-progress")


class TriggerDoc(_Doc):
    branches: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = Field(default=None, alias="branches-ignore")
    paths: Optional[List[str]] = None
    paths_ignore: Optional[List[str]] = Field(default=None, alias="paths-ignore")
    types: Optional[List[str]] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _exclusive_filters(self) -> "TriggerDoc":
        if self.branches is not None and self.branches_ignore is not None:
            raise ValueError("use either 'branches' or 'branches-ignore', not both")
        if self.paths is not None and self.paths_ignore is not None:
            raise ValueError("use either 'paths' or 'paths-ignore', not both")
        return self


class WorkflowDoc(_Doc):
    name: Optional[str] = None
    on: Dict[str, Optional[TriggerDoc]] = Field(default_factory=dict)
    env: Dict[str, Any] = Field(default_factory=dict)
    concurrency: Union[str, ConcurrencyDoc, None] = None
    jobs: Dict[str, JobDoc] = Field(min_length=1)

    @field_validator("on", mode="before")
    @classmethod
    def _normalize_on(cls, v: Any) -> Any:
        # `on: push` / `on: [push, pull_request]`
        if isinstance(v, str):
            return {v: None}
        if isinstance(v, list):
            return {str(k): None for k in v}
        return v


# ---------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------

def _condition(value: Union[bool, str, None]) -> Optional[str]:
    if value is None:
        return None
    return _scalar(value)


def _to_step(doc: StepDoc, index: int) -> Step:
    name = doc.name or doc.run or doc.uses or ""
    return Step(
        name=(name.strip().splitlines() or [f"step {index + 1}"])[0],
        run=doc.run,
        uses=doc.uses,
        with_=dict(doc.with_),
        id=doc.id,
        if_=_condition(doc.if_),
        env={k: _scalar(v) for k, v in doc.env.items()},
        shell=doc.shell,
        working_directory=doc.working_directory,
        continue_on_error=doc.continue_on_error,
        timeout_minutes=doc.timeout_minutes,
    )


def _to_strategy(doc: Optional[StrategyDoc]) -> Strategy:
    if doc is None:
        return Strategy()
    dims = dict(doc.matrix)
    include = _as_list(dims.pop("include", None))
    exclude = _as_list(dims.pop("exclude", None))
    return Strategy(matrix=dims, include=include, exclude=exclude, max_parallel=doc.max_parallel)


def _to_job(job_id: str, doc: JobDoc) -> JobSpec:
    if isinstance(doc.runs_on, RunsOnDoc):
        e = doc.runs_on.ephemeral
        runs_on: Any = EphemeralSelector(
            image_family=e.image_family, machine_type=e.machine_type, zone=e.zone, name_prefix=e.prefix
        )
    else:
        runs_on = doc.runs_on
    return JobSpec(
        id=job_id,
        name=doc.name,
        steps=[_to_step(s, i) for i, s in enumerate(doc.steps)],
        needs=[str(n) for n in _as_list(doc.needs)],
        strategy=_to_strategy(doc.strategy),
        if_=_condition(doc.if_),
        runs_on=runs_on,
        env={k: _scalar(v) for k, v in doc.env.items()},
        outputs={k: _scalar(v) for k, v in doc.outputs.items()},
        timeout_minutes=doc.timeout_minutes,
    )


def _to_workflow(doc: WorkflowDoc, default_name: str) -> WorkflowDefinition:
    on: Dict[str, TriggerSpec] = {}
    for kind, t in doc.on.items():
        t = t or TriggerDoc()
        on[kind] = TriggerSpec(
            branches=t.branches,
            branches_ignore=t.branches_ignore,
            paths=t.paths,
            paths_ignore=t.paths_ignore,
            types=t.types,
        )

    concurrency = None
    if isinstance(doc.concurrency, str):
        concurrency = ConcurrencySpec(group=doc.concurrency)
    elif doc.concurrency is not None:
        concurrency = ConcurrencySpec(
            group=doc.concurrency.group, cancel_in_progress=doc.concurrency.cancel_in_progress
        )

    return WorkflowDefinition(
        name=doc.name or default_name,
        jobs=[_to_job(job_id, j) for job_id, j in doc.jobs.items()],
        on=on,
        env={k: _scalar(v) for k, v in doc.env.items()},
        concurrency=concurrency,
    )


def _validation_details(err: ValidationError) -> List[str]:
    out = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()))
        out.append(f"{loc}: {e.get('msg')}")
    return out


def parse_workflow(data: Any, *, name: str = "workflow") -> WorkflowDefinition:
    """Validate a decoded YAML document and build the WorkflowDefinition."""
    if not isinstance(data, dict):
        raise ConfigError(message="Workflow document must be a mapping")
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data = dict(data)
        data["on"] = data.pop(True)
    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            message=f"Invalid workflow '{data.get('name', name)}'",
            details={"errors": _validation_details(e)},
        ) from e
    return _to_workflow(doc, name)


# ---------------------------------------------------------------------
# Static checks
# ---------------------------------------------------------------------

def check_workflow(workflow: WorkflowDefinition, actions: Optional[ActionRegistry] = None) -> None:
    """
    Raise ConfigError for anything wrong that does not need a run:
    graph shape, expression syntax, unknown actions and shells.
    """
    actions = actions or default_registry()
    validate_dag(workflow.jobs)

    if workflow.concurrency is not None:
        check_template(workflow.concurrency.group)
    for value in workflow.env.values():
        check_template(value)

    for job in workflow.jobs:
        try:
            if job.if_ is not None:
                check_condition(job.if_)
            if isinstance(job.runs_on, str):
                check_template(job.runs_on)
            for value in list(job.env.values()) + list(job.outputs.values()):
                check_template(str(value))
            for step in job.steps:
                _check_step(step, actions)
        except ConfigError as e:
            e.job = e.job or job.id
            raise


def _check_step(step: Step, actions: ActionRegistry) -> None:
    try:
        if step.if_ is not None:
            check_condition(step.if_)
        if step.run is not None:
            check_template(step.run)
        for value in list(step.env.values()) + [v for v in step.with_.values() if isinstance(v, str)]:
            check_template(value)
        if step.uses is not None and step.uses not in actions:
            raise ConfigError(message=f"Unknown action '{step.uses}'", details={"known": actions.names()})
        if step.shell is not None and step.shell not in SHELLS:
            raise ConfigError(message=f"Unknown shell '{step.shell}'")
    except ConfigError as e:
        e.step = e.step or step.name
        raise


# ---------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------

def load_yaml_workflow(path: Path) -> WorkflowDefinition:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(message=f"Could not parse {path.name}", details={"yaml": str(e)}) from e
    return parse_workflow(data, name=path.stem)


def load_python_workflow(path: Path) -> WorkflowDefinition:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> WorkflowDefinition
      - WORKFLOW = wf(...)
    """
    module_name = f"ciflow_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    wf = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            wf = globals_dict["workflow"]()
        except TypeError as e:
            if "positional arguments but" in str(e) and "was given" in str(e):
                raise ConfigError(
                    message=(
                        "Your workflow() is being called with arguments (name collision with the helper). "
                        "Use the 'wf' helper instead: `from ciflow import wf, job, sh` then "
                        "`def workflow(): return wf(job(...), job(...))`"
                    )
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]

    if not isinstance(wf, WorkflowDefinition):
        raise ConfigError(
            message=(
                "Workflow must return/define a WorkflowDefinition. "
                "Define workflow() -> wf(...) or WORKFLOW = wf(...)."
            ),
            details={"file": str(path)},
        )
    return wf


def load_workflow(
    path: str | Path,
    *,
    check: bool = True,
    actions: Optional[ActionRegistry] = None,
) -> WorkflowDefinition:
    """Load a `.py`, `.yml` or `.yaml` workflow file and check it."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(message=f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        workflow = load_yaml_workflow(wf_path)
    elif wf_path.suffix == ".py":
        workflow = load_python_workflow(wf_path)
    else:
        raise ConfigError(message=f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")

    if check:
        check_workflow(workflow, actions)
    logger.debug("loaded workflow %s from %s (%d jobs)", workflow.name, wf_path, len(workflow.jobs))
    return workflow


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """
    Workflow files in `directory`: `ciflow_workflow.py`, `*_workflow.py`
    and any `*.yml`/`*.yaml` under `.ciflow/workflows/`.
    """
    root = Path(directory)
    found = set(root.glob("*_workflow.py"))
    wf_dir = root / ".ciflow" / "workflows"
    if wf_dir.is_dir():
        for suffix in YAML_SUFFIXES:
            found.update(wf_dir.glob(f"*{suffix}"))
    return sorted(found)
