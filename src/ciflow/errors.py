# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - API responses
      - debugging without full tracebacks
    """
    message: str
    kind: str = "ci_error"
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class ConfigError(CIError):
    """Malformed workflow: bad matrix, dependency cycle, unknown `needs`, bad expression."""
    kind: str = "config_error"


@dataclass(eq=False)
class RunnerError(CIError):
    kind: str = "runner_error"


@dataclass(eq=False)
class ProvisionError(RunnerError):
    """Transient runner acquisition failure. Retried with backoff."""
    kind: str = "provision_error"


@dataclass(eq=False)
class QuotaError(RunnerError):
    """Fatal acquisition failure for one job instance. Never retried."""
    kind: str = "quota_error"


@dataclass(eq=False)
class UnknownRunnerError(QuotaError):
    kind: str = "unknown_runner"


@dataclass(eq=False)
class StepFailure(CIError):
    kind: str = "step_failure"
    command: str = ""
    exit_code: int = 1

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.command}"


@dataclass(eq=False)
class CancellationError(CIError):
    """Raised into in-flight work when its run is superseded or cancelled."""
    kind: str = "cancelled"


@dataclass(eq=False)
class SinkError(CIError):
    """Artifact upload failed."""
    kind: str = "sink_error"
