# concurrency.py
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from .errors import CancellationError
from .model import WorkflowRun

logger = logging.getLogger(__name__)


class ConcurrencyCoordinator:
    """
    Process-wide map of concurrency group -> active run.

    With cancel_in_progress the newcomer cancels the occupant and takes the
    group immediately. Without it the newcomer waits for the group to free
    up; only the newest waiter survives, older waiters are cancelled.

    Every read/write of the maps happens under one condition variable, so two
    simultaneous admissions for a key can never both become the occupant.
    """

    def __init__(self, poll_interval: float = 0.2):
        self._cond = threading.Condition()
        self._active: Dict[str, WorkflowRun] = {}
        self._pending: Dict[str, WorkflowRun] = {}
        self._poll = poll_interval

    def admit(
        self,
        group: Optional[str],
        run: WorkflowRun,
        *,
        cancel_in_progress: bool = True,
    ) -> Optional[WorkflowRun]:
        """
        Make `run` the occupant of `group`. Returns the run it cancelled, if any.
        Raises CancellationError if `run` is cancelled while waiting.
        """
        if not group:
            return None

        run.group = group
        with self._cond:
            if cancel_in_progress:
                previous = self._active.get(group)
                waiting = self._pending.pop(group, None)
                if waiting is not None and waiting is not run:
                    waiting.cancel(f"superseded by run {run.id}")
                if previous is not None and previous is not run:
                    logger.info("group %s: cancelling run %s for run %s", group, previous.id, run.id)
                    previous.cancel(f"superseded by run {run.id}")
                self._active[group] = run
                self._cond.notify_all()
                return previous if previous is not run else None

            superseded = self._pending.get(group)
            if superseded is not None and superseded is not run:
                logger.info("group %s: pending run %s superseded by %s", group, superseded.id, run.id)
                superseded.cancel(f"superseded by run {run.id}")
            self._pending[group] = run
            self._cond.notify_all()

            while group in self._active and self._active[group] is not run:
                if run.cancelled:
                    if self._pending.get(group) is run:
                        del self._pending[group]
                    raise CancellationError(message=run.token.reason or "cancelled")
                logger.debug("group %s: run %s waiting for %s", group, run.id, self._active[group].id)
                self._cond.wait(self._poll)

            if run.cancelled:
                if self._pending.get(group) is run:
                    del self._pending[group]
                raise CancellationError(message=run.token.reason or "cancelled")
            if self._pending.get(group) is run:
                del self._pending[group]
            self._active[group] = run
            return superseded if superseded is not run else None

    def release(self, group: Optional[str], run: WorkflowRun) -> bool:
        """Drop `run` from `group` if it is still the occupant."""
        if not group:
            return False
        with self._cond:
            if self._active.get(group) is not run:
                return False
            del self._active[group]
            self._cond.notify_all()
            logger.debug("group %s released by run %s", group, run.id)
            return True

    def active(self, group: str) -> Optional[WorkflowRun]:
        with self._cond:
            return self._active.get(group)

    def groups(self) -> Dict[str, str]:
        with self._cond:
            return {g: r.id for g, r in self._active.items()}
