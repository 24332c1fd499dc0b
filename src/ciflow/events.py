# events.py
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .model import JobInstance, Step, StepResult, WorkflowRun


class RunListener:
    """
    Lifecycle hooks for a workflow run. The default implementation ignores
    everything; the CLI console and tests override what they need.

    Hooks are called from worker threads; implementations must be thread-safe.
    """

    def run_started(self, run: "WorkflowRun") -> None:
        pass

    def run_finished(self, run: "WorkflowRun") -> None:
        pass

    def job_started(self, run: "WorkflowRun", instance: "JobInstance") -> None:
        pass

    def job_finished(self, run: "WorkflowRun", instance: "JobInstance") -> None:
        pass

    def step_started(self, instance: "JobInstance", step: "Step") -> None:
        pass

    def step_finished(self, instance: "JobInstance", step: "Step", result: "StepResult") -> None:
        pass
