# src/ciflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional, Union

from .model import (
    ConcurrencySpec,
    EphemeralSelector,
    JobSpec,
    RunnerSelector,
    Step,
    Strategy,
    TriggerSpec,
    WorkflowDefinition,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    shell: str | None = None,
    if_: str | None = None,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout_minutes: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        if_=if_,
        env=env or {},
        shell=shell,
        working_directory=cwd,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


def uses(name: str, action: str, /, *, if_: str | None = None, id: str | None = None, **inputs: Any) -> Step:
    """
    Create a step running a built-in action. Input names use underscores
    here and dashes in the action (`if_no_files_found` -> `if-no-files-found`).
    `name=` is an action input (the artifact name), not the step name.
    """
    with_ = {k.replace("_", "-"): v for k, v in inputs.items()}
    return Step(name=name, uses=action, with_=with_, if_=if_, id=id)


# ---------------------------------------------------------------------
# Runner / strategy helpers
# ---------------------------------------------------------------------

def ephemeral(image_family: str, machine_type: str, zone: str, *, prefix: str = "ciflow-runner") -> EphemeralSelector:
    return EphemeralSelector(image_family=image_family, machine_type=machine_type, zone=zone, name_prefix=prefix)


def matrix(
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    max_parallel: int | None = None,
    **dimensions: List[Any],
) -> Strategy:
    """
    Example:
        matrix(rust=["stable", "prev"], include=[{"rust": "stable", "coverage": "--enable-coverage"}])
    """
    return Strategy(
        matrix={k: list(v) for k, v in dimensions.items()},
        include=list(include or []),
        exclude=list(exclude or []),
        max_parallel=max_parallel,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    runs_on: Union[RunnerSelector, str] = "local",
    strategy: Optional[Strategy] = None,
    if_: str | None = None,
    env: Optional[Dict[str, str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    name: str | None = None,
    timeout_minutes: float | None = None,
    cwd: str | None = None,  # default working directory for steps missing one
) -> JobSpec:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.working_directory is not None else replace(s, working_directory=cwd)
            for s in steps_final
        ]

    return JobSpec(
        id=id,
        steps=steps_final,
        needs=list(needs or []),
        strategy=strategy or Strategy(),
        if_=if_,
        runs_on=runs_on,
        env={k: str(v) for k, v in (env or {}).items()},
        outputs=dict(outputs or {}),
        name=name,
        timeout_minutes=timeout_minutes,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._runs_on: Union[RunnerSelector, str] = "local"
        self._strategy: Strategy = Strategy()
        self._if: str | None = None
        self._timeout: float | None = None

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, *, if_: str | None = None, id: str | None = None):
        self._steps.append(Step(name=name, run=run, working_directory=cwd, if_=if_, id=id))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_output(self, name: str, expression: str):
        self._outputs[name] = expression
        return self

    def on(self, runner: Union[RunnerSelector, str]):
        self._runs_on = runner
        return self

    def with_matrix(self, strategy: Strategy):
        self._strategy = strategy
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def timeout(self, minutes: float):
        self._timeout = minutes
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return JobSpec(
            id=self.id,
            steps=list(self._steps),
            needs=list(self._needs),
            strategy=self._strategy,
            if_=self._if,
            runs_on=self._runs_on,
            env=dict(self._env),
            outputs=dict(self._outputs),
            timeout_minutes=self._timeout,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def on_push(
    *,
    branches: Optional[List[str]] = None,
    branches_ignore: Optional[List[str]] = None,
    paths: Optional[List[str]] = None,
    paths_ignore: Optional[List[str]] = None,
) -> TriggerSpec:
    return TriggerSpec(branches=branches, branches_ignore=branches_ignore, paths=paths, paths_ignore=paths_ignore)


def on_pull_request(
    *,
    types: Optional[List[str]] = None,
    branches: Optional[List[str]] = None,
    paths: Optional[List[str]] = None,
    paths_ignore: Optional[List[str]] = None,
) -> TriggerSpec:
    return TriggerSpec(types=types, branches=branches, paths=paths, paths_ignore=paths_ignore)


def wf(
    *jobs: JobSpec,
    name: str = "workflow",
    on: Optional[Dict[str, TriggerSpec]] = None,
    env: Optional[Dict[str, Any]] = None,
    concurrency: Union[ConcurrencySpec, str, None] = None,
    cancel_in_progress: bool = True,
) -> WorkflowDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from ciflow import wf, job, sh

        def workflow():
            return wf(
                job("build", sh("Build", "make")),
                job("test", sh("Test", "make test"), needs=["build"]),
                name="CI",
                concurrency="${{ github.workflow }}-${{ github.ref }}",
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf(job(...), job(...))
    """
    if isinstance(concurrency, str):
        concurrency = ConcurrencySpec(group=concurrency, cancel_in_progress=cancel_in_progress)
    return WorkflowDefinition(
        name=name,
        jobs=list(jobs),
        on=dict(on or {"push": TriggerSpec(), "workflow_dispatch": TriggerSpec()}),
        env={k: str(v) for k, v in (env or {}).items()},
        concurrency=concurrency,
    )
