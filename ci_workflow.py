# ci_workflow.py
# Workflow for ciflow itself: lint, tests on two Python versions, packaging check.
from __future__ import annotations

from ciflow.dsl import job, matrix, on_pull_request, on_push, sh, uses, wf
from ciflow.model import TriggerSpec

SOURCES = ["src/**", "tests/**", "pyproject.toml", "*.py"]


def workflow():
    return wf(
        job(
            "lint",
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
        ),

        job(
            "test",
            sh("Install package", "pip install -e '.[test]'", id="install"),
            sh("Run pytest", "python -m pytest -q --junitxml=report-${{ matrix.python }}.xml"),
            uses(
                "Upload test report",
                "upload-artifact",
                if_="always()",
                name="pytest-${{ matrix.python }}",
                files="report-${{ matrix.python }}.xml",
                if_no_files_found="warn",
            ),
            needs=["lint"],
            strategy=matrix(python=["3.11", "3.12"], max_parallel=1),
            env={"PYTHONDONTWRITEBYTECODE": "1"},
        ),

        job(
            "config-check",
            sh("Validate pyproject.toml", "python -c 'import tomllib; tomllib.load(open(\"pyproject.toml\", \"rb\"))'"),
            sh("Validate workflows", "ciflow validate workflows/burn_ci.yml"),
        ),

        name="ciflow",
        on={
            "push": on_push(branches=["main"], paths=SOURCES),
            "pull_request": on_pull_request(paths=SOURCES),
            "workflow_dispatch": TriggerSpec(),
        },
        concurrency="${{ github.workflow }}-${{ github.ref }}",
    )
