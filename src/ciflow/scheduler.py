# scheduler.py
from __future__ import annotations

import logging
import os
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Deque, Dict, List, Mapping, Optional, Set

from .cancellation import CancellationToken
from .context import base_context, resolve_workflow_env
from .dag import build_dag, topo_levels
from .errors import CancellationError, CIError, ConfigError
from .events import RunListener
from .executor import JobExecutor
from .expressions import ExpressionContext, evaluate_condition, interpolate, interpolate_value
from .matrix import MatrixExpander
from .model import (
    JobInstance,
    JobResult,
    JobSpec,
    JobStatus,
    RunStatus,
    RunnerSelector,
    StaticSelector,
    WorkflowDefinition,
    WorkflowRun,
)
from .provisioner import RunnerProvisioner

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2


@dataclass
class RunPlan:
    """A validated job graph with every job expanded into instances."""
    workflow: WorkflowDefinition
    stages: List[List[str]]
    adj: Dict[str, Set[str]]
    instances: Dict[str, List[JobInstance]] = field(default_factory=dict)

    def all_instances(self) -> List[JobInstance]:
        return [inst for job in self.workflow.jobs for inst in self.instances[job.id]]


def plan_workflow(workflow: WorkflowDefinition) -> RunPlan:
    """
    Validate the job graph and expand every job's matrix.
    Raises ConfigError before anything is dispatched.
    """
    adj, indeg = build_dag(workflow.jobs)
    stages = topo_levels(adj, indeg)

    plan = RunPlan(workflow=workflow, stages=stages, adj=adj)
    seen_keys: Set[str] = set()
    for job in workflow.jobs:
        entries = MatrixExpander(job=job.id).expand(job.strategy)
        instances: List[JobInstance] = []
        for i, entry in enumerate(entries):
            inst = JobInstance(job=job, matrix=entry, index=i)
            if inst.key in seen_keys:
                inst.key = f"{inst.key} #{i + 1}"
            seen_keys.add(inst.key)
            instances.append(inst)
        plan.instances[job.id] = instances
    return plan


def aggregate_result(instances: List[JobInstance]) -> str:
    """`needs.<job>.result` for a (possibly matrix) job."""
    statuses = {i.status for i in instances}
    if JobStatus.FAILED in statuses:
        return "failure"
    if JobStatus.CANCELLED in statuses:
        return "cancelled"
    if statuses and statuses <= {JobStatus.SKIPPED}:
        return "skipped"
    return "success"


class DependencyScheduler:
    """
    Scheduler + orchestrator for one workflow run:

    - Expands jobs into instances and validates the DAG up front.
    - A job's instances become ready once every instance of every needed
      job is terminal and the job's `if` holds; otherwise they are skipped.
    - Ready instances run in parallel on a thread pool, each holding a
      runner lease for its whole execution.
    - All status bookkeeping happens on the calling thread.
    """

    def __init__(
        self,
        executor: JobExecutor,
        provisioner: RunnerProvisioner,
        *,
        max_workers: int | None = None,
        listener: Optional[RunListener] = None,
        secrets: Optional[Mapping[str, str]] = None,
    ):
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.executor = executor
        self.provisioner = provisioner
        self.max_workers = max_workers
        self.listener = listener or RunListener()
        self.secrets = dict(secrets or {})

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(self, workflow: WorkflowDefinition) -> RunPlan:
        return plan_workflow(workflow)

    def run(self, run: WorkflowRun, plan: Optional[RunPlan] = None) -> WorkflowRun:
        try:
            plan = plan or self.plan(run.workflow)
            run.env = resolve_workflow_env(run, self.secrets)
        except ConfigError as e:
            logger.error("%s: invalid workflow: %s", run.workflow.name, e.message)
            run.error = str(e)
            run.finish(RunStatus.FAILED)
            self.listener.run_finished(run)
            raise

        run.instances = {inst.key: inst for inst in plan.all_instances()}
        run.status = RunStatus.RUNNING
        logger.info("run %s (%s): %d job instance(s)", run.id, run.workflow.name, len(run.instances))
        self.listener.run_started(run)

        _RunLoop(self, run, plan).execute()

        run.finish(self._final_status(run))
        logger.info("run %s finished: %s", run.id, run.status.value)
        self.listener.run_finished(run)
        return run

    @staticmethod
    def _final_status(run: WorkflowRun) -> RunStatus:
        statuses = {inst.status for inst in run.instances.values()}
        if run.cancelled:
            return RunStatus.CANCELLED
        if JobStatus.FAILED in statuses:
            return RunStatus.FAILED
        if JobStatus.CANCELLED in statuses:
            return RunStatus.CANCELLED
        return RunStatus.SUCCESS

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def resolve_selector(self, job: JobSpec, ctx: ExpressionContext) -> RunnerSelector:
        if isinstance(job.runs_on, str):
            label = interpolate(job.runs_on, ctx).strip()
            if not label:
                raise ConfigError(
                    message=f"runs-on '{job.runs_on}' resolved to an empty label",
                    job=job.id,
                )
            return StaticSelector(label)
        sel = job.runs_on
        return replace(
            sel,
            image_family=interpolate(sel.image_family, ctx),
            machine_type=interpolate(sel.machine_type, ctx),
            zone=interpolate(sel.zone, ctx),
        )

    def execute_instance(
        self,
        run: WorkflowRun,
        inst: JobInstance,
        ctx: ExpressionContext,
        token: CancellationToken,
    ) -> JobResult:
        timer: threading.Timer | None = None
        if inst.job.timeout_minutes:
            timer = threading.Timer(inst.job.timeout_minutes * 60, token.cancel, args=("timeout",))
            timer.daemon = True
            timer.start()
        try:
            selector = self.resolve_selector(inst.job, ctx)
            with self.provisioner.lease(
                selector,
                owner=f"{run.id}/{inst.key}",
                token=token,
                run_id=run.id,
                attempt=run.attempt,
            ) as handle:
                inst.runner = handle
                logger.info("[%s] running on %s", inst.key, handle.label)
                result = self.executor.run(inst, handle, context=ctx, run_id=run.id, token=token)
        except CancellationError as e:
            result = JobResult(status=JobStatus.CANCELLED, error=e.message)
        except CIError as e:
            logger.error("[%s] %s", inst.key, e)
            result = JobResult(status=JobStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception("[%s] unexpected error", inst.key)
            result = JobResult(status=JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
        finally:
            if timer is not None:
                timer.cancel()
            token.detach()

        if result.status is JobStatus.CANCELLED and token.reason == "timeout" and not run.cancelled:
            result.status = JobStatus.FAILED
            result.error = f"job timed out after {inst.job.timeout_minutes} minute(s)"
        return result


class _RunLoop:
    """DAG bookkeeping for a single run. Only touched by the coordinator thread."""

    def __init__(self, scheduler: DependencyScheduler, run: WorkflowRun, plan: RunPlan):
        self.s = scheduler
        self.run = run
        self.plan = plan
        self.jobs: Dict[str, JobSpec] = {j.id: j for j in plan.workflow.jobs}
        self.waiting_on: Dict[str, Set[str]] = {j.id: set(j.needs) for j in plan.workflow.jobs}
        self.ready: Deque[JobInstance] = deque()
        self.in_flight: Dict[Future, JobInstance] = {}
        self.running_per_job: Dict[str, int] = {j.id: 0 for j in plan.workflow.jobs}
        self.contexts: Dict[str, ExpressionContext] = {}  # instance key -> context

    # ---- helpers ----

    def _instances(self, job_id: str) -> List[JobInstance]:
        return self.plan.instances[job_id]

    def _job_done(self, job_id: str) -> bool:
        return all(i.status.terminal for i in self._instances(job_id))

    def _finish(self, inst: JobInstance, status: JobStatus, error: str | None = None) -> None:
        inst.status = status
        if error:
            inst.error = error
        logger.debug("[%s] -> %s", inst.key, status.value)
        self.s.listener.job_finished(self.run, inst)

    def _needs_context(self, job: JobSpec) -> Dict[str, Any]:
        needs: Dict[str, Any] = {}
        for need in job.needs:
            outputs: Dict[str, str] = {}
            for inst in self._instances(need):
                outputs.update(inst.outputs)
            needs[need] = {"result": aggregate_result(self._instances(need)), "outputs": outputs}
        return needs

    def _job_context(self, job: JobSpec) -> ExpressionContext:
        needs = self._needs_context(job)
        results = {n["result"] for n in needs.values()}
        ctx = base_context(self.run, self.s.secrets)
        ctx = ctx.with_values(needs=needs)
        ctx.failed = "failure" in results
        ctx.incomplete = bool(results & {"cancelled", "skipped"})
        ctx.cancelled = self.run.cancelled
        return ctx

    # ---- transitions ----

    def _release(self, job_id: str) -> None:
        """All needs of `job_id` are terminal: decide run or skip."""
        job = self.jobs[job_id]
        instances = self._instances(job_id)

        if self.run.cancelled:
            for inst in instances:
                self._finish(inst, JobStatus.CANCELLED, self.run.token.reason)
            return

        ctx = self._job_context(job)
        # the job `if` sees each instance's own matrix bindings
        for inst in instances:
            try:
                inst_ctx = ctx.with_values(matrix=interpolate_value(dict(inst.matrix), ctx))
                should_run = evaluate_condition(job.if_, inst_ctx)
            except ConfigError as e:
                self._finish(inst, JobStatus.FAILED, e.message)
                continue

            if not should_run:
                logger.info("[%s] skipped (condition not met)", inst.key)
                self._finish(inst, JobStatus.SKIPPED)
                continue

            inst_ctx.failed = inst_ctx.incomplete = False
            self.contexts[inst.key] = inst_ctx
            inst.status = JobStatus.READY
            self.ready.append(inst)

    def _settle(self, finished_jobs: List[str]) -> None:
        """Propagate terminal jobs to their dependents (transitively for skips)."""
        work = deque(finished_jobs)
        while work:
            done = work.popleft()
            for dependent in sorted(self.plan.adj.get(done, ())):
                waiting = self.waiting_on[dependent]
                waiting.discard(done)
                if waiting or any(i.status is not JobStatus.BLOCKED for i in self._instances(dependent)):
                    continue
                self._release(dependent)
                if self._job_done(dependent):
                    work.append(dependent)

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        deferred: Deque[JobInstance] = deque()
        while self.ready:
            inst = self.ready.popleft()
            cap = inst.job.strategy.max_parallel
            if cap is not None and self.running_per_job[inst.job.id] >= cap:
                deferred.append(inst)
                continue

            inst_ctx = self.contexts.pop(inst.key)
            inst.status = JobStatus.RUNNING
            self.running_per_job[inst.job.id] += 1
            self.s.listener.job_started(self.run, inst)
            fut = pool.submit(self.s.execute_instance, self.run, inst, inst_ctx, self.run.token.child())
            self.in_flight[fut] = inst
        self.ready = deferred

    def _cancel_waiting(self) -> List[str]:
        reason = self.run.token.reason
        touched: List[str] = []
        while self.ready:
            inst = self.ready.popleft()
            self._finish(inst, JobStatus.CANCELLED, reason)
            touched.append(inst.job.id)
        for job_id in self.jobs:
            for inst in self._instances(job_id):
                if inst.status in (JobStatus.PENDING, JobStatus.BLOCKED):
                    self._finish(inst, JobStatus.CANCELLED, reason)
                    touched.append(job_id)
        return touched

    # ---- main loop ----

    def execute(self) -> None:
        for job in self.plan.workflow.jobs:
            for inst in self._instances(job.id):
                inst.status = JobStatus.BLOCKED

        roots = [j.id for j in self.plan.workflow.jobs if not j.needs]
        for job_id in roots:
            self._release(job_id)
        self._settle([j for j in roots if self._job_done(j)])

        with ThreadPoolExecutor(max_workers=self.s.max_workers, thread_name_prefix="ciflow-job") as pool:
            while True:
                if self.run.cancelled:
                    self._cancel_waiting()
                else:
                    self._dispatch(pool)

                if not self.in_flight:
                    break

                done, _ = wait(list(self.in_flight), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                finished_jobs: List[str] = []
                for fut in done:
                    inst = self.in_flight.pop(fut)
                    self.running_per_job[inst.job.id] -= 1
                    result: JobResult = fut.result()
                    inst.outputs = dict(result.outputs)
                    inst.steps = list(result.steps)
                    self._finish(inst, result.status, result.error)
                    if self._job_done(inst.job.id):
                        finished_jobs.append(inst.job.id)
                self._settle(finished_jobs)

        for inst in self.plan.all_instances():
            if inst.status.terminal:
                continue
            if self.run.cancelled:
                self._finish(inst, JobStatus.CANCELLED, self.run.token.reason)
            else:
                logger.error("[%s] never became ready", inst.key)
                self._finish(inst, JobStatus.FAILED, "not started: the job never became ready")
