# executor.py
from __future__ import annotations

import logging
import os
import platform
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .actions import ActionContext, ActionRegistry, default_registry
from .cancellation import CancellationToken
from .errors import CIError, ConfigError
from .events import RunListener
from .expressions import ExpressionContext, evaluate_condition, interpolate, interpolate_value, to_string
from .model import JobInstance, JobResult, JobStatus, Step, StepResult
from .provisioner import RunnerHandle
from .sinks import ArtifactSink

logger = logging.getLogger(__name__)

SHELLS: Dict[str, List[str]] = {
    "sh": ["sh", "-e", "-c"],
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
    "pwsh": ["pwsh", "-NoProfile", "-Command"],
    "powershell": ["powershell", "-NoProfile", "-Command"],
    "python": ["python", "-c"],
}
DEFAULT_SHELL = "pwsh" if os.name == "nt" else "sh"

OUTPUT_TAIL = 4000


# ----------------------------------------------------------------------
# Command execution
# ----------------------------------------------------------------------

@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    cancelled: bool = False


class CommandRunner(Protocol):
    """Runs one command on the acquired runner and blocks until it exits."""

    def run(
        self,
        argv: List[str],
        *,
        env: Dict[str, str],
        cwd: Path,
        token: CancellationToken,
        handle: Optional[RunnerHandle] = None,
    ) -> CommandResult:
        ...


class LocalCommandRunner:
    """
    Run commands as local subprocesses.

    The process group is killed when `token` is cancelled, so a cancelled
    run does not leave build processes behind.
    """

    poll_interval = 0.1

    def run(
        self,
        argv: List[str],
        *,
        env: Dict[str, str],
        cwd: Path,
        token: CancellationToken,
        handle: Optional[RunnerHandle] = None,
    ) -> CommandResult:
        if not cwd.exists():
            raise FileNotFoundError(f"working directory not found: {cwd}")

        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=(os.name != "nt"),
        )
        cancelled = False
        while True:
            try:
                out, err = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if token.cancelled:
                    cancelled = True
                    self._kill(proc)
                    out, err = proc.communicate()
                    break

        return CommandResult(
            exit_code=proc.returncode,
            stdout=(out or "")[-OUTPUT_TAIL:],
            stderr=(err or "")[-OUTPUT_TAIL:],
            cancelled=cancelled,
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        if os.name != "nt":
            try:
                os.killpg(proc.pid, signal.SIGKILL)
                return
            except (ProcessLookupError, PermissionError):
                pass
        proc.kill()


# ----------------------------------------------------------------------
# Output / env files
# ----------------------------------------------------------------------

def parse_key_value_file(path: Path) -> Dict[str, str]:
    """
    Parse `key=value` lines and `key<<DELIM` ... `DELIM` blocks.
    Later keys win.
    """
    if not path.exists():
        return {}
    values: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delim = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ConfigError(message=f"Unterminated '{delim}' block for key '{key}' in {path.name}")
            i += 1
            values[key.strip()] = "\n".join(body)
        elif "=" in line:
            key, value = line.split("=", 1)
            values[key.strip()] = value
        else:
            raise ConfigError(message=f"Invalid line in {path.name}: {line!r}")
    return values


# ----------------------------------------------------------------------
# Job executor
# ----------------------------------------------------------------------

def _to_env(values: Dict[str, Any]) -> Dict[str, str]:
    return {k: to_string(v) for k, v in values.items()}


class JobExecutor:
    """
    run(JobInstance, RunnerHandle) -> JobResult

    Steps run strictly in declared order. A step's `if` is evaluated against
    the accumulated context; a failing step fails the job (and the following
    `success()`-conditioned steps are skipped) unless it has
    `continue_on_error`. After cancellation only steps that ask for it
    (`cancelled()`, `always()`) run, with a fresh token so teardown is not
    itself interrupted.
    """

    def __init__(
        self,
        command_runner: Optional[CommandRunner] = None,
        *,
        workdir: str | Path = ".",
        actions: Optional[ActionRegistry] = None,
        sink: Optional[ArtifactSink] = None,
        listener: Optional[RunListener] = None,
        inherit_env: bool = True,
    ):
        self.command_runner = command_runner or LocalCommandRunner()
        self.workdir = Path(workdir).resolve()
        self.actions = actions or default_registry()
        self.sink = sink
        self.listener = listener or RunListener()
        self.inherit_env = inherit_env

    def run(
        self,
        instance: JobInstance,
        handle: RunnerHandle,
        *,
        context: Optional[ExpressionContext] = None,
        run_id: str = "local",
        token: Optional[CancellationToken] = None,
    ) -> JobResult:
        token = token or CancellationToken()
        base = context or ExpressionContext()
        job = instance.job

        values = dict(base.values)
        values.setdefault("matrix", dict(instance.matrix))
        values["runner"] = {"name": handle.id, "label": handle.label, "os": platform.system()}
        job_ctx = ExpressionContext(values=values)

        env: Dict[str, str] = dict(values.get("env") or {})
        env.update(_to_env({k: interpolate_value(v, job_ctx) for k, v in job.env.items()}))

        steps_ctx: Dict[str, Dict[str, Any]] = {}
        results: List[StepResult] = []
        failed = False
        first_error: str | None = None

        with tempfile.TemporaryDirectory(prefix="ciflow-") as tmp:
            env_file = Path(tmp) / "env"
            env_file.touch()

            for index, step in enumerate(job.steps):
                step_id = step.id or f"__step{index}"
                ctx = ExpressionContext(
                    values={**values, "env": dict(env), "steps": steps_ctx},
                    failed=failed,
                    cancelled=token.cancelled,
                )
                try:
                    should_run = evaluate_condition(step.if_, ctx)
                except ConfigError as e:
                    result = StepResult(name=step.name, status=JobStatus.FAILED, error=e.message)
                    should_run = False
                else:
                    result = StepResult(name=step.name, status=JobStatus.SKIPPED)

                if should_run:
                    step_token = token.child() if not token.cancelled else CancellationToken()
                    self.listener.step_started(instance, step)
                    try:
                        result = self._run_step(
                            instance, step, ctx, env, env_file, Path(tmp) / f"output-{index}",
                            run_id=run_id, token=step_token, handle=handle,
                        )
                    finally:
                        step_token.detach()
                    self.listener.step_finished(instance, step, result)
                    env.update(parse_key_value_file(env_file))

                outcome = result.status
                if outcome is JobStatus.FAILED and step.continue_on_error:
                    conclusion = JobStatus.SUCCESS
                    logger.info("[%s] step '%s' failed, continuing", instance.key, step.name)
                else:
                    conclusion = outcome
                if conclusion is JobStatus.FAILED:
                    failed = True
                    if first_error is None:
                        first_error = result.error or f"step '{step.name}' failed"

                steps_ctx[step_id] = {
                    "outputs": dict(result.outputs),
                    "outcome": _status_word(outcome),
                    "conclusion": _status_word(conclusion),
                }
                results.append(result)

            final_ctx = ExpressionContext(
                values={**values, "env": dict(env), "steps": steps_ctx},
                failed=failed,
                cancelled=token.cancelled,
            )
            outputs: Dict[str, str] = {}
            for name, template in job.outputs.items():
                try:
                    outputs[name] = interpolate(str(template), final_ctx)
                except ConfigError as e:
                    logger.warning("[%s] output '%s' could not be evaluated: %s", instance.key, name, e.message)

        if token.cancelled:
            status = JobStatus.CANCELLED
            first_error = first_error or token.reason
        elif failed:
            status = JobStatus.FAILED
        else:
            status = JobStatus.SUCCESS
        return JobResult(status=status, steps=results, outputs=outputs, error=first_error)

    # ------------------------------------------------------------------

    def _run_step(
        self,
        instance: JobInstance,
        step: Step,
        ctx: ExpressionContext,
        env: Dict[str, str],
        env_file: Path,
        output_file: Path,
        *,
        run_id: str,
        token: CancellationToken,
        handle: RunnerHandle,
    ) -> StepResult:
        timer: threading.Timer | None = None
        if step.timeout_minutes:
            timer = threading.Timer(step.timeout_minutes * 60, token.cancel, args=("timeout",))
            timer.daemon = True
            timer.start()
        started = time.monotonic()
        try:
            step_env = dict(env)
            step_env.update(_to_env({k: interpolate_value(v, ctx) for k, v in step.env.items()}))
            step_ctx = ctx.with_values(env=step_env)
            cwd = self.workdir / (step.working_directory or ".")

            if step.uses:
                return self._run_action(instance, step, step_ctx, step_env, cwd, run_id)

            command = interpolate(step.run or "", step_ctx)
            shell = step.shell or DEFAULT_SHELL
            if shell not in SHELLS:
                raise ConfigError(message=f"Unknown shell '{shell}'", job=instance.key, step=step.name)
            argv = [*SHELLS[shell], command]

            proc_env = dict(os.environ) if self.inherit_env else {}
            proc_env.update(step_env)
            proc_env.update({
                "CI": "true",
                "CIFLOW": "true",
                "CIFLOW_RUN_ID": run_id,
                "CIFLOW_JOB": instance.job.id,
                "CIFLOW_WORKSPACE": str(self.workdir),
                "CIFLOW_OUTPUT": str(output_file),
                "CIFLOW_ENV": str(env_file),
            })
            output_file.touch()

            logger.info("[%s] ▶ %s", instance.key, step.name)
            res = self.command_runner.run(argv, env=proc_env, cwd=cwd, token=token, handle=handle)

            if res.cancelled:
                timed_out = token.reason == "timeout"
                return StepResult(
                    name=step.name,
                    status=JobStatus.FAILED if timed_out else JobStatus.CANCELLED,
                    exit_code=res.exit_code,
                    error=f"step '{step.name}' timed out" if timed_out else "cancelled",
                )
            if res.exit_code != 0:
                logger.info("[%s] step '%s' failed (exit=%s)", instance.key, step.name, res.exit_code)
                return StepResult(
                    name=step.name,
                    status=JobStatus.FAILED,
                    exit_code=res.exit_code,
                    error=(res.stderr or res.stdout or "").strip() or f"exit code {res.exit_code}",
                )
            return StepResult(
                name=step.name,
                status=JobStatus.SUCCESS,
                exit_code=0,
                outputs=parse_key_value_file(output_file),
            )
        except CIError as e:
            return StepResult(name=step.name, status=JobStatus.FAILED, error=e.message)
        except OSError as e:
            return StepResult(name=step.name, status=JobStatus.FAILED, error=str(e))
        finally:
            if timer is not None:
                timer.cancel()
            logger.debug("[%s] step '%s' took %.2fs", instance.key, step.name, time.monotonic() - started)

    def _run_action(
        self,
        instance: JobInstance,
        step: Step,
        ctx: ExpressionContext,
        env: Dict[str, str],
        cwd: Path,
        run_id: str,
    ) -> StepResult:
        action = self.actions.get(step.uses or "")
        inputs = {k: interpolate_value(v, ctx) for k, v in step.with_.items()}
        logger.info("[%s] ▶ %s (uses %s)", instance.key, step.name, step.uses)
        outputs = action(ActionContext(
            job=instance.key,
            step=step.name,
            run_id=run_id,
            inputs=inputs,
            workdir=cwd,
            env=env,
            sink=self.sink,
        ))
        return StepResult(name=step.name, status=JobStatus.SUCCESS, exit_code=0, outputs=dict(outputs or {}))


def _status_word(status: JobStatus) -> str:
    return "failure" if status is JobStatus.FAILED else status.value
