# provisioner.py
from __future__ import annotations

import logging
import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from .cancellation import CancellationToken
from .errors import CancellationError, ProvisionError, QuotaError, RunnerError, UnknownRunnerError
from .model import EphemeralSelector, RunnerSelector, StaticSelector

logger = logging.getLogger(__name__)

# GCE instance names: lowercase letters, digits, hyphens, at most 63 chars
_NAME_MAX = 63


# ---------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------

@dataclass
class RunnerHandle:
    """
    Execution capacity held by exactly one job instance.

    `release()` may be called from the normal completion path and from the
    cancellation path; only the first call tears anything down.
    """
    id: str
    label: str
    owner: str
    selector: RunnerSelector
    instance: Optional["CloudInstance"] = None
    _teardown: Optional[Callable[[], None]] = field(default=None, repr=False)
    _released: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        with self._lock:
            if self._released:
                return False
            self._released = True
            teardown, self._teardown = self._teardown, None
        if teardown is not None:
            teardown()
        logger.debug("released runner %s (%s) held by %s", self.id, self.label, self.owner)
        return True


# ---------------------------------------------------------------------
# Static pool
# ---------------------------------------------------------------------

class StaticRunnerPool:
    """
    Pre-existing runners, labeled by platform, with a fixed capacity each.

    `default_capacity` lets unknown labels get a pool on first use (handy
    when every label is really the local machine).
    """

    def __init__(self, capacities: Optional[Dict[str, int]] = None, *, default_capacity: int | None = None):
        self._lock = threading.Lock()
        self._capacity: Dict[str, int] = dict(capacities or {})
        self._slots: Dict[str, threading.BoundedSemaphore] = {
            label: threading.BoundedSemaphore(n) for label, n in self._capacity.items()
        }
        self.default_capacity = default_capacity

    def labels(self) -> List[str]:
        return sorted(self._capacity)

    def _semaphore(self, label: str) -> threading.BoundedSemaphore:
        with self._lock:
            sem = self._slots.get(label)
            if sem is None:
                if self.default_capacity is None:
                    raise UnknownRunnerError(
                        message=f"No runner pool for label '{label}'",
                        details={"known": sorted(self._capacity)},
                    )
                self._capacity[label] = self.default_capacity
                sem = self._slots[label] = threading.BoundedSemaphore(self.default_capacity)
            return sem

    def acquire(self, selector: StaticSelector, owner: str, token: CancellationToken) -> RunnerHandle:
        sem = self._semaphore(selector.label)
        while not sem.acquire(timeout=0.1):
            token.raise_if_cancelled(job=owner)
        if token.cancelled:
            sem.release()
            token.raise_if_cancelled(job=owner)
        return RunnerHandle(
            id=f"{selector.label}-{uuid.uuid4().hex[:8]}",
            label=selector.label,
            owner=owner,
            selector=selector,
            _teardown=sem.release,
        )


# ---------------------------------------------------------------------
# Ephemeral cloud runners
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CloudInstance:
    name: str
    zone: str
    label: str = ""


class CloudProvider(Protocol):
    """The cloud API boundary. Implementations may raise ProvisionError/QuotaError."""

    def create(self, image_family: str, machine_type: str, zone: str, *, name: str) -> CloudInstance:
        ...

    def delete(self, instance: CloudInstance) -> None:
        ...


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def instance_name(prefix: str, owner: str, run_id: str, attempt: int) -> str:
    tail = f"-{_slug(run_id)}-{attempt}"
    head = f"{_slug(prefix)}-{_slug(owner)}"[: _NAME_MAX - len(tail)].rstrip("-")
    return head + tail


class EphemeralProvisioner:
    """
    Creates one cloud instance per job instance and deletes it afterwards.

    The delete is recorded before `create` is called, so an instance that was
    partially created (create raised, or the run was cancelled while create
    was blocking) is still deleted.
    """

    def __init__(self, provider: CloudProvider):
        self.provider = provider

    def _teardown(self, instance: CloudInstance) -> Callable[[], None]:
        def delete() -> None:
            logger.info("deleting ephemeral runner %s (%s)", instance.name, instance.zone)
            try:
                self.provider.delete(instance)
            except Exception:
                logger.exception("failed to delete ephemeral runner %s", instance.name)
        return delete

    def acquire(
        self,
        selector: EphemeralSelector,
        owner: str,
        token: CancellationToken,
        *,
        run_id: str,
        attempt: int,
    ) -> RunnerHandle:
        name = instance_name(selector.name_prefix, owner, run_id, attempt)
        handle = RunnerHandle(
            id=name,
            label=name,
            owner=owner,
            selector=selector,
            _teardown=self._teardown(CloudInstance(name=name, zone=selector.zone, label=name)),
        )
        token.raise_if_cancelled(job=owner)
        logger.info("creating ephemeral runner %s for %s", name, owner)
        try:
            instance = self.provider.create(
                selector.image_family, selector.machine_type, selector.zone, name=name
            )
        except BaseException:
            handle.release()
            raise
        handle.instance = instance
        handle.label = instance.label or name
        handle._teardown = self._teardown(instance)

        if token.cancelled:
            handle.release()
            token.raise_if_cancelled(job=owner)
        return handle


# ---------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------

class RunnerProvisioner:
    """
    acquire(selector) -> RunnerHandle, release(handle).

    Transient ProvisionErrors are retried up to `retries` times with
    exponential backoff; QuotaError is raised immediately. Acquisition is
    idempotent per owner while the owner's handle is unreleased.
    """

    def __init__(
        self,
        static: Optional[StaticRunnerPool] = None,
        cloud: Optional[CloudProvider] = None,
        *,
        retries: int = 3,
        backoff: float = 2.0,
    ):
        self.static = static or StaticRunnerPool(default_capacity=1)
        self.ephemeral = EphemeralProvisioner(cloud) if cloud is not None else None
        self.retries = max(0, retries)
        self.backoff = backoff
        self._lock = threading.Lock()
        self._owned: Dict[str, RunnerHandle] = {}
        self._owner_locks: Dict[str, threading.Lock] = {}

    def _owner_lock(self, owner: str) -> threading.Lock:
        with self._lock:
            return self._owner_locks.setdefault(owner, threading.Lock())

    def acquire(
        self,
        selector: RunnerSelector,
        *,
        owner: str,
        token: Optional[CancellationToken] = None,
        run_id: str = "local",
        attempt: int = 1,
    ) -> RunnerHandle:
        token = token or CancellationToken()
        with self._owner_lock(owner):
            existing = self._owned.get(owner)
            if existing is not None and not existing.released:
                logger.debug("reusing runner %s for %s", existing.id, owner)
                return existing

            handle = self._acquire_with_retry(selector, owner, token, run_id, attempt)
            with self._lock:
                self._owned[owner] = handle
            return handle

    def _acquire_with_retry(
        self,
        selector: RunnerSelector,
        owner: str,
        token: CancellationToken,
        run_id: str,
        attempt: int,
    ) -> RunnerHandle:
        delay = self.backoff
        tries = 0
        while True:
            tries += 1
            try:
                return self._acquire_once(selector, owner, token, run_id, attempt)
            except ProvisionError as e:
                if tries > self.retries:
                    raise ProvisionError(
                        message=f"Runner provisioning failed after {tries} attempts: {e.message}",
                        job=owner,
                        details={"selector": selector.describe()},
                    ) from e
                logger.warning(
                    "provisioning %s for %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    selector.describe(), owner, tries, self.retries + 1, delay, e.message,
                )
                if token.wait(delay):
                    raise CancellationError(message=token.reason or "cancelled", job=owner) from e
                delay *= 2

    def _acquire_once(
        self,
        selector: RunnerSelector,
        owner: str,
        token: CancellationToken,
        run_id: str,
        attempt: int,
    ) -> RunnerHandle:
        if isinstance(selector, StaticSelector):
            return self.static.acquire(selector, owner, token)
        if isinstance(selector, EphemeralSelector):
            if self.ephemeral is None:
                raise QuotaError(
                    message="Ephemeral runner requested but no cloud provider is configured",
                    job=owner,
                )
            return self.ephemeral.acquire(selector, owner, token, run_id=run_id, attempt=attempt)
        raise RunnerError(message=f"Unsupported runner selector {selector!r}", job=owner)

    def release(self, handle: RunnerHandle) -> bool:
        released = handle.release()
        with self._lock:
            if self._owned.get(handle.owner) is handle:
                del self._owned[handle.owner]
                self._owner_locks.pop(handle.owner, None)
        return released

    @contextmanager
    def lease(
        self,
        selector: RunnerSelector,
        *,
        owner: str,
        token: Optional[CancellationToken] = None,
        run_id: str = "local",
        attempt: int = 1,
    ) -> Iterator[RunnerHandle]:
        """Acquire, yield, and release on every exit path (errors and cancellation included)."""
        handle = self.acquire(selector, owner=owner, token=token, run_id=run_id, attempt=attempt)
        try:
            yield handle
        finally:
            self.release(handle)

    def outstanding(self) -> List[RunnerHandle]:
        with self._lock:
            return [h for h in self._owned.values() if not h.released]
