# runner.py
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .concurrency import ConcurrencyCoordinator
from .context import base_context, resolve_workflow_env
from .errors import CancellationError, CIError, ConfigError
from .events import RunListener
from .executor import CommandRunner, JobExecutor
from .expressions import interpolate
from .model import RunStatus, TriggerEvent, WorkflowDefinition, WorkflowRun
from .provisioner import CloudProvider, RunnerProvisioner, StaticRunnerPool
from .scheduler import DependencyScheduler
from .settings import Settings
from .sinks import ArtifactSink, DirectorySink, HttpSink
from .store import RunStore
from .triggers import should_trigger

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """What a caller gets back for one trigger event."""
    triggered: bool
    run_id: str | None = None
    status: RunStatus | None = None
    jobs: Dict[str, str] = field(default_factory=dict)
    group: str | None = None
    superseded: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.triggered or self.status is RunStatus.SUCCESS

    @classmethod
    def from_run(cls, run: WorkflowRun, superseded: Optional[WorkflowRun] = None) -> "RunResult":
        return cls(
            triggered=True,
            run_id=run.id,
            status=run.status,
            jobs=run.job_statuses(),
            group=run.group,
            superseded=superseded.id if superseded is not None else None,
            error=run.error,
        )


class Orchestrator:
    """
    Trigger event -> admitted, scheduled, archived WorkflowRun.

    One Orchestrator (and so one ConcurrencyCoordinator) per process; runs
    may be executed inline (`trigger`) or on background threads (`submit`).
    """

    def __init__(
        self,
        scheduler: DependencyScheduler,
        *,
        coordinator: Optional[ConcurrencyCoordinator] = None,
        store: Optional[RunStore] = None,
        secrets: Optional[Mapping[str, str]] = None,
    ):
        self.scheduler = scheduler
        self.coordinator = coordinator or ConcurrencyCoordinator()
        self.store = store
        self.secrets = dict(secrets or {})
        self._lock = threading.Lock()
        self._runs: Dict[str, WorkflowRun] = {}

    # ------------------------------------------------------------------

    def create_run(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        *,
        force: bool = False,
        attempt: int = 1,
    ) -> Optional[WorkflowRun]:
        """A new pending run, or None if the event does not match the workflow's triggers."""
        if not force and not should_trigger(workflow, event):
            return None
        run = WorkflowRun(workflow=workflow, event=event, attempt=attempt)
        with self._lock:
            self._runs[run.id] = run
        return run

    def group_key(self, run: WorkflowRun) -> Optional[str]:
        spec = run.workflow.concurrency
        if spec is None:
            return None
        ctx = base_context(run, self.secrets)
        ctx = ctx.with_values(env=resolve_workflow_env(run, self.secrets))
        key = interpolate(spec.group, ctx).strip()
        return key or None

    def execute(self, run: WorkflowRun) -> RunResult:
        """Admit `run` into its concurrency group, schedule it, archive it."""
        spec = run.workflow.concurrency
        group = None
        superseded = None
        try:
            group = self.group_key(run)
            superseded = self.coordinator.admit(
                group, run, cancel_in_progress=spec.cancel_in_progress if spec else True
            )
            if superseded is not None:
                logger.info("run %s supersedes run %s in group %s", run.id, superseded.id, group)
            self.scheduler.run(run)
        except CancellationError as e:
            # cancelled while waiting for its group
            run.error = e.message
            run.finish(RunStatus.CANCELLED)
        except ConfigError as e:
            if not run.status.terminal:
                run.error = str(e)
                run.finish(RunStatus.FAILED)
            raise
        finally:
            self.coordinator.release(group, run)
            self._archive(run)
        return RunResult.from_run(run, superseded)

    def trigger(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        *,
        force: bool = False,
    ) -> RunResult:
        run = self.create_run(workflow, event, force=force)
        if run is None:
            logger.info("%s: event %s on %s did not trigger a run", workflow.name, event.kind, event.ref)
            return RunResult(triggered=False)
        return self.execute(run)

    def submit(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        *,
        force: bool = False,
    ) -> Optional[WorkflowRun]:
        """Like `trigger`, but runs on a background thread. Returns the pending run."""
        run = self.create_run(workflow, event, force=force)
        if run is None:
            return None
        t = threading.Thread(target=self._execute_logged, args=(run,), name=f"ciflow-run-{run.id}", daemon=True)
        t.start()
        return run

    def _execute_logged(self, run: WorkflowRun) -> None:
        try:
            self.execute(run)
        except CIError as e:
            logger.error("run %s failed: %s", run.id, e)
        except Exception:
            logger.exception("run %s crashed", run.id)
            if not run.status.terminal:
                run.finish(RunStatus.FAILED)

    # ------------------------------------------------------------------

    def get(self, run_id: str) -> Optional[WorkflowRun]:
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> List[WorkflowRun]:
        with self._lock:
            return list(self._runs.values())

    def cancel(self, run_id: str, reason: str = "cancelled by user") -> bool:
        run = self.get(run_id)
        if run is None or run.status.terminal:
            return False
        logger.info("cancelling run %s: %s", run_id, reason)
        run.cancel(reason)
        return True

    def _archive(self, run: WorkflowRun) -> None:
        if self.store is None:
            return
        try:
            self.store.save(run)
        except Exception:
            logger.exception("could not archive run %s", run.id)


def artifact_sink(settings: Settings) -> ArtifactSink:
    if settings.artifacts_url:
        return HttpSink(settings.artifacts_url, token=settings.artifacts_token)
    return DirectorySink(settings.artifacts_dir)


def build_orchestrator(
    settings: Settings,
    *,
    static_runners: Optional[Dict[str, int]] = None,
    cloud: Optional[CloudProvider] = None,
    command_runner: Optional[CommandRunner] = None,
    listener: Optional[RunListener] = None,
    workdir: str = ".",
    archive: bool = True,
) -> Orchestrator:
    """
    Wire the engine together from settings.

    Without explicit static runners every `runs-on` label maps to a pool on
    this machine sized like the worker pool; with them, unknown labels fail.
    """
    workers = settings.max_workers or max(1, (os.cpu_count() or 2) - 1)
    if static_runners:
        pool = StaticRunnerPool(static_runners)
    else:
        pool = StaticRunnerPool(default_capacity=workers)

    provisioner = RunnerProvisioner(
        pool,
        cloud,
        retries=settings.provision_retries,
        backoff=settings.provision_backoff,
    )
    executor = JobExecutor(
        command_runner,
        workdir=workdir,
        sink=artifact_sink(settings),
        listener=listener,
    )
    scheduler = DependencyScheduler(executor, provisioner, max_workers=workers, listener=listener)
    store = RunStore(settings.database_url) if archive else None
    return Orchestrator(scheduler, store=store)
