"""Shared fixtures for the ciflow test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from ciflow.executor import JobExecutor
from ciflow.provisioner import StaticRunnerPool
from ciflow.scheduler import DependencyScheduler

from fakes import REPO_ROOT, CountingProvisioner, FakeCloudProvider, ScriptedCommandRunner


@pytest.fixture
def commands() -> ScriptedCommandRunner:
    """A command runner where every command succeeds unless scripted otherwise."""
    return ScriptedCommandRunner()


@pytest.fixture
def cloud() -> FakeCloudProvider:
    return FakeCloudProvider()


@pytest.fixture
def provisioner(cloud: FakeCloudProvider) -> CountingProvisioner:
    return CountingProvisioner(StaticRunnerPool(default_capacity=4), cloud, retries=2, backoff=0.01)


@pytest.fixture
def make_scheduler(tmp_path: Path, provisioner: CountingProvisioner):
    """Factory: scheduler wired to a scripted command runner and the counting provisioner."""

    def _make(runner: ScriptedCommandRunner, *, max_workers: int = 4, listener=None) -> DependencyScheduler:
        executor = JobExecutor(runner, workdir=tmp_path, inherit_env=False, listener=listener)
        return DependencyScheduler(executor, provisioner, max_workers=max_workers, listener=listener)

    return _make


@pytest.fixture
def burn_ci_path() -> Path:
    return REPO_ROOT / "workflows" / "burn_ci.yml"
