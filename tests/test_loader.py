"""Tests for loading YAML and Python workflow files."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
import yaml

from ciflow.dsl import job, sh, uses, wf
from ciflow.errors import ConfigError
from ciflow.loader import check_workflow, find_workflow_files, load_workflow, parse_workflow
from ciflow.model import EphemeralSelector

from fakes import REPO_ROOT


def _doc(text: str) -> dict:
    return yaml.safe_load(textwrap.dedent(text))


@pytest.mark.unit
class TestBurnCi:
    """The bundled mirror of a real CI file."""

    def test_loads(self, burn_ci_path: Path) -> None:
        workflow = load_workflow(burn_ci_path)

        assert workflow.name == "CI"
        assert set(workflow.on) == {"push", "pull_request", "workflow_dispatch"}
        assert workflow.on["pull_request"].types == ["opened", "synchronize"]
        assert workflow.concurrency is not None
        assert workflow.concurrency.group == "${{ github.workflow }}-${{ github.ref }}"
        assert workflow.concurrency.cancel_in_progress is True
        assert workflow.env["RUST_PREVIOUS_VERSION"] == "1.86.0"

    def test_job_details(self, burn_ci_path: Path) -> None:
        workflow = load_workflow(burn_ci_path)

        prepare = workflow.job("prepare-checks")
        assert prepare.steps[0].if_ == "false"
        assert prepare.outputs == {"rust-prev-version": "${{ env.RUST_PREVIOUS_VERSION }}"}

        tests = workflow.job("linux-std-tests")
        assert tests.needs == ["prepare-checks", "code-quality"]
        assert tests.strategy.matrix == {"rust": ["stable", "prev"]}
        assert len(tests.strategy.include) == 2
        assert tests.steps[-1].uses == "upload-artifact"
        assert tests.steps[-1].with_["if-no-files-found"] == "warn"

        cuda = workflow.job("linux-std-cuda-tests")
        assert isinstance(cuda.runs_on, EphemeralSelector)
        assert cuda.runs_on.name_prefix == "ci-runner-linux-std-cuda"
        assert cuda.runs_on.image_family == "${{ env.GCP_RUNNERS_IMAGE_FAMILY }}"


@pytest.mark.unit
class TestParse:
    """Schema validation of YAML documents."""

    def test_on_shorthands(self) -> None:
        single = parse_workflow(_doc("""
            on: push
            jobs:
              a:
                steps: [{run: make}]
        """))
        several = parse_workflow(_doc("""
            on: [push, pull_request]
            jobs:
              a:
                steps: [{run: make}]
        """))

        assert list(single.on) == ["push"]
        assert list(several.on) == ["push", "pull_request"]

    def test_name_defaults_to_argument(self) -> None:
        workflow = parse_workflow({"jobs": {"a": {"steps": [{"run": "make"}]}}}, name="nightly")

        assert workflow.name == "nightly"
        assert workflow.jobs[0].runs_on == "local"
        assert workflow.jobs[0].steps[0].name == "make"

    def test_needs_string(self) -> None:
        workflow = parse_workflow(_doc("""
            jobs:
              a:
                steps: [{run: make}]
              b:
                needs: a
                steps: [{run: make test}]
        """))

        assert workflow.job("b").needs == ["a"]

    def test_run_and_uses_rejected(self) -> None:
        with pytest.raises(ConfigError) as exc:
            parse_workflow({"jobs": {"a": {"steps": [{"run": "make", "uses": "upload-artifact"}]}}})

        assert any("exactly one of 'run' or 'uses'" in e for e in exc.value.details["errors"])

    def test_job_without_steps_rejected(self) -> None:
        with pytest.raises(ConfigError):
            parse_workflow({"jobs": {"a": {"steps": []}}})

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ConfigError) as exc:
            parse_workflow({"jobs": {"a": {"runs-in": "x", "steps": [{"run": "make"}]}}})

        assert any("runs-in" in e for e in exc.value.details["errors"])

    def test_paths_and_paths_ignore_rejected(self) -> None:
        with pytest.raises(ConfigError):
            parse_workflow({
                "on": {"push": {"paths": ["a"], "paths-ignore": ["b"]}},
                "jobs": {"a": {"steps": [{"run": "make"}]}},
            })

    def test_unknown_shell_rejected(self) -> None:
        with pytest.raises(ConfigError):
            parse_workflow({"jobs": {"a": {"steps": [{"run": "make", "shell": "fish"}]}}})

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ConfigError, match="must be a mapping"):
            parse_workflow(["jobs"])


@pytest.mark.unit
class TestCheck:
    """Static checks that need no run."""

    def test_unknown_action(self) -> None:
        workflow = wf(job("publish", uses("Publish", "actions/deploy-pages@v4")))

        with pytest.raises(ConfigError, match="Unknown action") as exc:
            check_workflow(workflow)

        assert exc.value.job == "publish"
        assert exc.value.step == "Publish"

    def test_versioned_builtin_action(self) -> None:
        check_workflow(wf(job("a", uses("Upload", "actions/upload-artifact@v4", files="x"))))

    def test_bad_condition(self) -> None:
        workflow = wf(job("a", sh("a", "make", if_="matrix.os ==")))

        with pytest.raises(ConfigError) as exc:
            check_workflow(workflow)

        assert exc.value.job == "a"

    def test_cycle(self) -> None:
        workflow = wf(job("a", sh("a", "a"), needs=["b"]), job("b", sh("b", "b"), needs=["a"]))

        with pytest.raises(ConfigError, match="cycle"):
            check_workflow(workflow)


@pytest.mark.unit
class TestFiles:
    """Workflow files on disk."""

    def test_python_workflow_function(self, tmp_path: Path) -> None:
        path = tmp_path / "nightly_workflow.py"
        path.write_text(
            textwrap.dedent("""
                from ciflow import wf, job, sh

                def workflow():
                    return wf(job("build", sh("Build", "make")), name="nightly")
            """),
            encoding="utf-8",
        )

        workflow = load_workflow(path)

        assert workflow.name == "nightly"
        assert [j.id for j in workflow.jobs] == ["build"]

    def test_python_workflow_constant(self, tmp_path: Path) -> None:
        path = tmp_path / "release_workflow.py"
        path.write_text(
            'from ciflow import wf, job, sh\nWORKFLOW = wf(job("tag", sh("Tag", "git tag")), name="release")\n',
            encoding="utf-8",
        )

        assert load_workflow(path).name == "release"

    def test_python_without_workflow(self, tmp_path: Path) -> None:
        path = tmp_path / "empty_workflow.py"
        path.write_text("X = 1\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="WorkflowDefinition"):
            load_workflow(path)

    def test_repo_workflow(self) -> None:
        """The project's own workflow file loads and checks."""
        workflow = load_workflow(REPO_ROOT / "ci_workflow.py")

        assert workflow.name == "ciflow"
        assert workflow.concurrency is not None

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yml"
        path.write_text("jobs: [unclosed\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="Could not parse"):
            load_workflow(path)

    def test_unsupported_suffix(self, tmp_path: Path) -> None:
        path = tmp_path / "ci.json"
        path.write_text("{}", encoding="utf-8")

        with pytest.raises(ConfigError, match=r"\.py, \.yml or \.yaml"):
            load_workflow(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_workflow(tmp_path / "nope.yml")

    def test_find_workflow_files(self, tmp_path: Path) -> None:
        (tmp_path / "ci_workflow.py").write_text("", encoding="utf-8")
        (tmp_path / "helpers.py").write_text("", encoding="utf-8")
        wf_dir = tmp_path / ".ciflow" / "workflows"
        wf_dir.mkdir(parents=True)
        (wf_dir / "ci.yml").write_text("", encoding="utf-8")
        (wf_dir / "notes.txt").write_text("", encoding="utf-8")

        found = [p.relative_to(tmp_path).as_posix() for p in find_workflow_files(tmp_path)]

        assert found == [".ciflow/workflows/ci.yml", "ci_workflow.py"]
