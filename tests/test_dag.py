"""Tests for job graph validation and staging."""

from __future__ import annotations

import pytest

from ciflow.dag import build_dag, topo_levels, validate_dag
from ciflow.dsl import job, sh
from ciflow.errors import ConfigError


def _job(job_id: str, *needs: str):
    return job(job_id, sh("noop", "true"), needs=list(needs))


@pytest.mark.unit
class TestDag:
    """Graph construction and topological stages."""

    def test_stages(self) -> None:
        """Jobs with satisfied needs land in the same stage."""
        jobs = [
            _job("prepare"),
            _job("quality", "prepare"),
            _job("docs", "prepare"),
            _job("tests", "prepare", "quality"),
        ]

        assert validate_dag(jobs) == [["prepare"], ["docs", "quality"], ["tests"]]

    def test_adjacency_points_to_dependents(self) -> None:
        """adj maps a job to the jobs that need it."""
        adj, indeg = build_dag([_job("a"), _job("b", "a"), _job("c", "a")])

        assert adj["a"] == {"b", "c"}
        assert indeg == {"a": 0, "b": 1, "c": 1}

    def test_cycle_rejected(self) -> None:
        """A cycle is reported with the jobs that are stuck in it."""
        adj, indeg = build_dag([_job("a", "c"), _job("b", "a"), _job("c", "b"), _job("d")])

        with pytest.raises(ConfigError, match="cycle") as exc:
            topo_levels(adj, indeg)

        assert exc.value.details["stuck"] == ["a", "b", "c"]

    def test_missing_need_rejected(self) -> None:
        """Needing an undeclared job is a configuration error on that job."""
        with pytest.raises(ConfigError, match="needs missing job 'build'") as exc:
            validate_dag([_job("test", "build")])

        assert exc.value.job == "test"

    def test_self_need_rejected(self) -> None:
        """A job cannot need itself."""
        with pytest.raises(ConfigError, match="needs itself"):
            validate_dag([_job("a", "a")])

    def test_duplicate_ids_rejected(self) -> None:
        """Job ids are unique."""
        with pytest.raises(ConfigError, match="Duplicate job ids"):
            validate_dag([_job("a"), _job("a")])
