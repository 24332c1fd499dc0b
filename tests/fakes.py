"""Test doubles: scripted commands, a fake cloud and a counting provisioner."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ciflow.cancellation import CancellationToken
from ciflow.errors import ProvisionError, QuotaError
from ciflow.executor import CommandResult
from ciflow.provisioner import CloudInstance, RunnerHandle, RunnerProvisioner

REPO_ROOT = Path(__file__).resolve().parent.parent

# what a scripted command does:
#   int                  exit code
#   dict                 exit 0 and write these step outputs
#   "block"              wait until cancelled
#   CommandResult        returned as is
#   callable             (command, env, token) -> any of the above
Action = Union[int, Dict[str, str], str, CommandResult, Callable[..., Any]]


class ScriptedCommandRunner:
    """CommandRunner that records commands and answers from a script instead of a shell."""

    def __init__(self, script: Optional[Dict[str, Action]] = None, default: Action = 0):
        self.script: List[Tuple[str, Action]] = list((script or {}).items())
        self.default = default
        self.calls: List[Dict[str, Any]] = []
        self.blocking = threading.Event()
        self._lock = threading.Lock()

    def run(
        self,
        argv: List[str],
        *,
        env: Dict[str, str],
        cwd: Path,
        token: CancellationToken,
        handle: Optional[RunnerHandle] = None,
    ) -> CommandResult:
        command = argv[-1]
        with self._lock:
            self.calls.append({
                "command": command,
                "argv": list(argv),
                "env": dict(env),
                "runner": getattr(handle, "label", None),
            })

        action = self.default
        for needle, candidate in self.script:
            if needle in command:
                action = candidate
                break
        if callable(action):
            action = action(command, env, token)

        if isinstance(action, CommandResult):
            return action
        if action == "block":
            self.blocking.set()
            cancelled = token.wait(10)
            return CommandResult(exit_code=-9 if cancelled else 0, cancelled=cancelled)
        if isinstance(action, dict):
            with open(env["CIFLOW_OUTPUT"], "a", encoding="utf-8") as f:
                for key, value in action.items():
                    f.write(f"{key}={value}\n")
            return CommandResult(exit_code=0)
        return CommandResult(exit_code=int(action), stderr="" if action == 0 else f"exit {action}")

    def commands(self) -> List[str]:
        with self._lock:
            return [c["command"] for c in self.calls]

    def ran(self, needle: str) -> bool:
        return any(needle in c for c in self.commands())


class FakeCloudProvider:
    """CloudProvider that counts create/delete calls."""

    def __init__(self, *, fail_times: int = 0, quota: bool = False, block: Optional[threading.Event] = None):
        self.fail_times = fail_times
        self.quota = quota
        self.block = block
        self.create_calls: List[str] = []
        self.requests: List[Tuple[str, str, str]] = []
        self.created: List[CloudInstance] = []
        self.deleted: List[str] = []
        self.creating = threading.Event()
        self._lock = threading.Lock()

    def create(self, image_family: str, machine_type: str, zone: str, *, name: str) -> CloudInstance:
        with self._lock:
            self.create_calls.append(name)
            self.requests.append((image_family, machine_type, zone))
        self.creating.set()
        if self.block is not None:
            self.block.wait(10)
        if self.quota:
            raise QuotaError(message="quota exceeded for g2-standard-4")
        with self._lock:
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ProvisionError(message="zone temporarily out of capacity")
        instance = CloudInstance(name=name, zone=zone, label=name)
        with self._lock:
            self.created.append(instance)
        return instance

    def delete(self, instance: CloudInstance) -> None:
        with self._lock:
            self.deleted.append(instance.name)


class CountingProvisioner(RunnerProvisioner):
    """RunnerProvisioner that counts successful acquires and first releases."""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.acquired: List[str] = []
        self.released: List[str] = []
        self._count_lock = threading.Lock()

    def acquire(self, selector, **kwargs):  # type: ignore[override]
        handle = super().acquire(selector, **kwargs)
        with self._count_lock:
            self.acquired.append(handle.id)
        return handle

    def release(self, handle: RunnerHandle) -> bool:
        first = super().release(handle)
        if first:
            with self._count_lock:
                self.released.append(handle.id)
        return first

