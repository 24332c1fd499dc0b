# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .cancellation import CancellationToken


class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED)


# ---------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (or built-in action) inside a CI job."""
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    if_: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    shell: str | None = None
    working_directory: str | None = None
    continue_on_error: bool = False
    timeout_minutes: float | None = None


@dataclass(frozen=True)
class StaticSelector:
    """A label of a fixed-capacity runner pool (e.g. `ubuntu-22.04`)."""
    label: str

    def describe(self) -> str:
        return self.label


@dataclass(frozen=True)
class EphemeralSelector:
    """An on-demand cloud instance, keyed by image/type/zone."""
    image_family: str
    machine_type: str
    zone: str
    name_prefix: str = "ciflow-runner"

    def describe(self) -> str:
        return f"ephemeral({self.image_family}, {self.machine_type}, {self.zone})"


RunnerSelector = Union[StaticSelector, EphemeralSelector]


@dataclass
class Strategy:
    """Matrix dimensions (declaration order kept) plus include/exclude overrides."""
    matrix: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)
    max_parallel: int | None = None


@dataclass
class JobSpec:
    """
    A declared job: steps + dependencies + matrix strategy.

    `runs_on` is either a selector or a string; strings containing `${{ }}`
    are resolved at dispatch time against dependency outputs.
    """
    id: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    strategy: Strategy = field(default_factory=Strategy)
    if_: str | None = None
    runs_on: Union[RunnerSelector, str] = "local"
    env: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    name: str | None = None
    timeout_minutes: float | None = None


@dataclass
class TriggerSpec:
    branches: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = None
    paths: Optional[List[str]] = None
    paths_ignore: Optional[List[str]] = None
    types: Optional[List[str]] = None


@dataclass
class ConcurrencySpec:
    group: str
    cancel_in_progress: bool = False


@dataclass
class WorkflowDefinition:
    name: str
    jobs: List[JobSpec]
    on: Dict[str, TriggerSpec] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    concurrency: ConcurrencySpec | None = None

    def job(self, job_id: str) -> JobSpec:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)


# ---------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerEvent:
    """The event that may create a workflow run."""
    kind: str                                  # "push" | "pull_request" | "workflow_dispatch"
    ref: str = "refs/heads/main"
    changed_paths: tuple = ()
    base_ref: str | None = None                # pull requests: the target branch
    action: str | None = None                  # pull requests: opened, synchronize, ...
    sha: str | None = None


@dataclass
class StepResult:
    name: str
    status: JobStatus
    exit_code: int | None = None
    outputs: Dict[str, str] = field(default_factory=dict)
    error: str | None = None


@dataclass
class JobResult:
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    error: str | None = None


@dataclass
class JobInstance:
    """One concrete matrix expansion of a JobSpec."""
    job: JobSpec
    matrix: Dict[str, Any] = field(default_factory=dict)
    index: int = 0
    status: JobStatus = JobStatus.PENDING
    runner: Any = None
    outputs: Dict[str, str] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    error: str | None = None
    key: str = ""

    def __post_init__(self) -> None:
        if not self.key:
            self.key = instance_key(self.job.id, self.matrix)


def instance_key(job_id: str, matrix: Dict[str, Any]) -> str:
    if not matrix:
        return job_id
    values = ", ".join(str(v) for v in matrix.values())
    return f"{job_id} ({values})"


@dataclass
class WorkflowRun:
    workflow: WorkflowDefinition
    event: TriggerEvent
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    attempt: int = 1
    group: str | None = None
    status: RunStatus = RunStatus.PENDING
    env: Dict[str, str] = field(default_factory=dict)
    instances: Dict[str, JobInstance] = field(default_factory=dict)
    token: CancellationToken = field(default_factory=CancellationToken)
    error: str | None = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def finish(self, status: RunStatus) -> None:
        self.status = status
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def job_statuses(self) -> Dict[str, str]:
        return {key: inst.status.value for key, inst in self.instances.items()}
