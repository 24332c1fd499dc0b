# actions.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigError, StepFailure
from .sinks import ArtifactSink, DirectorySink

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """What a built-in action sees when a `uses:` step runs."""
    job: str
    step: str
    run_id: str
    inputs: Dict[str, Any]
    workdir: Path
    env: Dict[str, str] = field(default_factory=dict)
    sink: Optional[ArtifactSink] = None


Action = Callable[[ActionContext], Dict[str, str]]


def _split_files(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    parts: List[str] = []
    for line in str(value or "").replace(",", "\n").splitlines():
        if line.strip():
            parts.append(line.strip())
    return parts


def upload_artifact(ctx: ActionContext) -> Dict[str, str]:
    """
    Hand files to the artifact sink.

    Inputs:
      files / path          newline- or comma-separated paths or globs
      name                  artifact name (default "artifact")
      if-no-files-found     error | warn | ignore (default error)
    """
    patterns = _split_files(ctx.inputs.get("files", ctx.inputs.get("path")))
    name = str(ctx.inputs.get("name") or "artifact")
    missing = str(ctx.inputs.get("if-no-files-found") or "error").lower()

    found: List[Path] = []
    for pattern in patterns:
        direct = ctx.workdir / pattern
        if direct.is_file():
            found.append(direct)
        else:
            found.extend(p for p in sorted(ctx.workdir.glob(pattern)) if p.is_file())

    if not found:
        msg = f"No files found for artifact '{name}': {patterns}"
        if missing == "error":
            raise StepFailure(message=msg, job=ctx.job, step=ctx.step, command=f"upload-artifact {name}")
        if missing == "warn":
            logger.warning(msg)
        return {"count": "0"}

    sink = ctx.sink or DirectorySink()
    stored = sink.upload(ctx.run_id, ctx.job, found, name=name)
    logger.info("[%s] uploaded %d file(s) as '%s'", ctx.job, len(stored), name)
    return {"count": str(len(stored))}


def action_name(uses: str) -> str:
    """`actions/upload-artifact@v4` -> `upload-artifact`."""
    return uses.split("@", 1)[0].rstrip("/").rsplit("/", 1)[-1]


class ActionRegistry:
    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}

    def register(self, name: str, action: Action) -> None:
        self._actions[name] = action

    def names(self) -> List[str]:
        return sorted(self._actions)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and action_name(name) in self._actions

    def get(self, name: str) -> Action:
        try:
            return self._actions[action_name(name)]
        except KeyError:
            raise ConfigError(
                message=f"Unknown action '{name}'",
                details={"known": self.names()},
            ) from None


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("upload-artifact", upload_artifact)
    return registry
