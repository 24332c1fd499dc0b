from .dsl import job, sh, uses, matrix, wf, ephemeral, on_push, on_pull_request, JobBuilder, build
from .errors import CIError, ConfigError, ProvisionError, QuotaError, StepFailure, CancellationError
from .loader import load_workflow
from .model import JobSpec, Step, Strategy, TriggerEvent, WorkflowDefinition, JobStatus, RunStatus
from .runner import Orchestrator, RunResult, build_orchestrator

workflow = wf  # alias (avoid naming your own function workflow if you use it)

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "workflow", "ephemeral", "on_push", "on_pull_request",
    "JobBuilder", "build", "load_workflow", "Orchestrator", "RunResult", "build_orchestrator",
    "JobSpec", "Step", "Strategy", "TriggerEvent", "WorkflowDefinition", "JobStatus", "RunStatus",
    "CIError", "ConfigError", "ProvisionError", "QuotaError", "StepFailure", "CancellationError",
]
