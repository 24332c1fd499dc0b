# triggers.py
from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence

from .model import TriggerEvent, TriggerSpec, WorkflowDefinition

logger = logging.getLogger(__name__)

DEFAULT_PULL_REQUEST_TYPES = ("opened", "synchronize", "reopened")


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern:
    """
    Translate a filter glob:
      *    any characters except '/'
      **   any characters including '/'
      ?    one character except '/'
      [..] character class
    """
    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            if pattern.startswith("**", i):
                i += 2
                # "dir/**/x" also matches "dir/x"
                if pattern.startswith("/", i):
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(path: str, pattern: str) -> bool:
    return _glob_regex(pattern).match(path) is not None


def filter_matches(value: str, patterns: Sequence[str]) -> bool:
    """
    Evaluate an ordered include/exclude pattern list for one value.

    Every pattern is checked (no short-circuit); the last matching pattern
    decides. `!pattern` excludes. Nothing matching means not included.
    """
    included = False
    for pattern in patterns:
        negated = pattern.startswith("!")
        glob = pattern[1:] if negated else pattern
        if glob_match(value, glob):
            included = not negated
    return included


def paths_match(
    changed: Iterable[str],
    paths: Optional[Sequence[str]] = None,
    paths_ignore: Optional[Sequence[str]] = None,
) -> bool:
    """True if at least one changed file passes the path filter."""
    changed = list(changed)
    if paths is None and paths_ignore is None:
        return True
    if paths is not None:
        return any(filter_matches(p, paths) for p in changed)
    return any(not filter_matches(p, paths_ignore) for p in changed)


def _branch_name(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def branches_match(
    ref: str,
    branches: Optional[Sequence[str]] = None,
    branches_ignore: Optional[Sequence[str]] = None,
) -> bool:
    name = _branch_name(ref)
    if branches is not None:
        return filter_matches(name, branches)
    if branches_ignore is not None:
        return not filter_matches(name, branches_ignore)
    return True


def should_trigger(workflow: WorkflowDefinition, event: TriggerEvent) -> bool:
    """Decide whether `event` creates a run of `workflow` at all."""
    spec: TriggerSpec | None = workflow.on.get(event.kind)
    if spec is None:
        logger.debug("%s: not triggered by %s", workflow.name, event.kind)
        return False

    if event.kind == "pull_request":
        types = spec.types or list(DEFAULT_PULL_REQUEST_TYPES)
        if event.action is not None and event.action not in types:
            logger.debug("%s: pull_request action %s not in %s", workflow.name, event.action, types)
            return False
        branch_ref = event.base_ref or event.ref
    else:
        branch_ref = event.ref

    if not branches_match(branch_ref, spec.branches, spec.branches_ignore):
        logger.debug("%s: ref %s filtered out", workflow.name, branch_ref)
        return False

    if not paths_match(event.changed_paths, spec.paths, spec.paths_ignore):
        logger.info("%s: no changed path matches the path filter", workflow.name)
        return False

    return True
