# cancellation.py
from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .errors import CancellationError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation signal passed through every blocking call.

    Child tokens are cancelled with their parent but can be cancelled on
    their own (a single job timing out does not cancel the run).
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: str | None = None
        self._parent = parent
        self._follow: Optional[Callable[[], None]] = None
        if parent is not None:
            self._follow = lambda: self.cancel(parent.reason or "cancelled")
            parent.on_cancel(self._follow)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("cancellation callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register `callback`; runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Stop following the parent. Call once the work this token guarded is over."""
        if self._parent is not None and self._follow is not None:
            self._parent.remove_callback(self._follow)
            self._follow = None

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to `timeout` seconds. Returns True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, job: str | None = None) -> None:
        if self._event.is_set():
            raise CancellationError(message=self.reason or "cancelled", job=job)
