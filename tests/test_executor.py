"""Tests for the job executor."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from ciflow.cancellation import CancellationToken
from ciflow.dsl import job, sh, uses
from ciflow.errors import ConfigError
from ciflow.executor import JobExecutor, parse_key_value_file
from ciflow.expressions import ExpressionContext
from ciflow.model import JobInstance, JobStatus, StaticSelector
from ciflow.provisioner import RunnerHandle
from ciflow.sinks import DirectorySink

from fakes import ScriptedCommandRunner


def _handle() -> RunnerHandle:
    return RunnerHandle(id="local-1", label="local", owner="test", selector=StaticSelector("local"))


def _run(executor: JobExecutor, spec, *, matrix=None, token=None, context=None):
    instance = JobInstance(job=spec, matrix=matrix or {})
    return executor.run(instance, _handle(), context=context, run_id="r1", token=token)


@pytest.fixture
def executor(tmp_path: Path, commands: ScriptedCommandRunner) -> JobExecutor:
    return JobExecutor(commands, workdir=tmp_path, inherit_env=False)


@pytest.mark.unit
class TestSteps:
    """Step ordering, conditions and failure handling."""

    def test_steps_run_in_order(self, executor: JobExecutor, commands: ScriptedCommandRunner) -> None:
        spec = job("build", sh("one", "echo 1"), sh("two", "echo 2"), sh("three", "echo 3"))

        result = _run(executor, spec)

        assert result.status is JobStatus.SUCCESS
        assert commands.commands() == ["echo 1", "echo 2", "echo 3"]

    def test_failure_skips_rest(self, tmp_path: Path) -> None:
        """After a failing step only always()/failure() steps run."""
        commands = ScriptedCommandRunner({"cargo test": 101})
        executor = JobExecutor(commands, workdir=tmp_path, inherit_env=False)
        spec = job(
            "tests",
            sh("Tests", "cargo test"),
            sh("Coverage", "grcov ."),
            sh("Report failure", "notify", if_="failure()"),
            sh("Cleanup", "rm -rf target", if_="always()"),
        )

        result = _run(executor, spec)

        assert result.status is JobStatus.FAILED
        assert commands.commands() == ["cargo test", "notify", "rm -rf target"]
        assert [s.status for s in result.steps] == [
            JobStatus.FAILED,
            JobStatus.SKIPPED,
            JobStatus.SUCCESS,
            JobStatus.SUCCESS,
        ]
        assert result.error == "exit 101"

    def test_continue_on_error(self, tmp_path: Path) -> None:
        """A failing continue-on-error step does not fail the job."""
        commands = ScriptedCommandRunner({"flaky": 1})
        executor = JobExecutor(commands, workdir=tmp_path, inherit_env=False)
        spec = job(
            "tests",
            sh("Flaky", "flaky", id="flaky", continue_on_error=True),
            sh("Saw failure", "echo retry", if_="steps.flaky.outcome == 'failure'"),
            sh("Conclusion", "echo ok", if_="steps.flaky.conclusion == 'success'"),
        )

        result = _run(executor, spec)

        assert result.status is JobStatus.SUCCESS
        assert commands.commands() == ["flaky", "echo retry", "echo ok"]

    def test_matrix_and_env_interpolation(self, executor: JobExecutor, commands: ScriptedCommandRunner) -> None:
        spec = job(
            "tests",
            sh("Setup", "rustup toolchain install ${{ matrix.toolchain }}", env={"TOOL": "${{ matrix.toolchain }}"}),
            env={"DISABLE_WGPU": "1"},
        )

        _run(executor, spec, matrix={"rust": "prev", "toolchain": "1.86.0"})

        call = commands.calls[0]
        assert call["command"] == "rustup toolchain install 1.86.0"
        assert call["env"]["TOOL"] == "1.86.0"
        assert call["env"]["DISABLE_WGPU"] == "1"
        assert call["env"]["CI"] == "true"

    def test_step_condition_reads_env(self, executor: JobExecutor, commands: ScriptedCommandRunner) -> None:
        spec = job(
            "windows",
            sh("Setup Windows runner", "install dxc", if_="env.DISABLE_WGPU != '1'"),
            sh("Tests", "cargo test"),
            env={"DISABLE_WGPU": "1"},
        )

        result = _run(executor, spec)

        assert result.status is JobStatus.SUCCESS
        assert commands.commands() == ["cargo test"]

    def test_shell_selection(self, executor: JobExecutor, commands: ScriptedCommandRunner) -> None:
        spec = job("fmt", sh("Format", "cargo fmt", shell="bash"))

        _run(executor, spec)

        assert commands.calls[0]["argv"][0] == "bash"
        assert commands.calls[0]["argv"][-1] == "cargo fmt"

    def test_unknown_shell_fails_step(self, executor: JobExecutor) -> None:
        spec = job("fmt", sh("Format", "cargo fmt", shell="fish"))

        result = _run(executor, spec)

        assert result.status is JobStatus.FAILED
        assert "Unknown shell" in (result.steps[0].error or "")


@pytest.mark.unit
class TestOutputs:
    """Step outputs, env files and job outputs."""

    def test_step_outputs_feed_job_outputs(self, tmp_path: Path) -> None:
        commands = ScriptedCommandRunner({"detect": {"version": "1.86.0"}})
        executor = JobExecutor(commands, workdir=tmp_path, inherit_env=False)
        spec = job(
            "prepare-checks",
            sh("Detect", "detect", id="detect"),
            sh("Use", "echo ${{ steps.detect.outputs.version }}"),
            outputs={"rust-prev-version": "${{ steps.detect.outputs.version }}"},
        )

        result = _run(executor, spec)

        assert commands.commands()[1] == "echo 1.86.0"
        assert result.outputs == {"rust-prev-version": "1.86.0"}

    def test_env_file_exports_to_later_steps(self, tmp_path: Path) -> None:
        def export(command, env, token):
            with open(env["CIFLOW_ENV"], "a", encoding="utf-8") as f:
                f.write("GRCOV_VERSION=0.8.19\n")
            return 0

        commands = ScriptedCommandRunner({"export": export})
        executor = JobExecutor(commands, workdir=tmp_path, inherit_env=False)
        spec = job("cov", sh("Export", "export"), sh("Install grcov", "install grcov"))

        _run(executor, spec)

        assert commands.calls[1]["env"]["GRCOV_VERSION"] == "0.8.19"

    def test_parse_multiline_values(self, tmp_path: Path) -> None:
        path = tmp_path / "out"
        path.write_text("a=1\nnotes<<EOF\nline one\nline two\nEOF\nb=x=y\n", encoding="utf-8")

        assert parse_key_value_file(path) == {"a": "1", "notes": "line one\nline two", "b": "x=y"}

    def test_parse_unterminated_block(self, tmp_path: Path) -> None:
        path = tmp_path / "out"
        path.write_text("notes<<EOF\nline one\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="Unterminated"):
            parse_key_value_file(path)

    def test_context_values_visible(self, executor: JobExecutor, commands: ScriptedCommandRunner) -> None:
        """needs.* from the scheduler context reaches step commands."""
        ctx = ExpressionContext(values={"needs": {"prepare": {"result": "success", "outputs": {"v": "9"}}}})
        spec = job("use", sh("Use", "echo ${{ needs.prepare.outputs.v }}"))

        _run(executor, spec, context=ctx)

        assert commands.commands() == ["echo 9"]


@pytest.mark.unit
class TestCancellation:
    """Cancelled jobs still run their cleanup steps."""

    def test_cancelled_before_start(self, executor: JobExecutor, commands: ScriptedCommandRunner) -> None:
        token = CancellationToken()
        token.cancel("superseded")
        spec = job(
            "tests",
            sh("Tests", "cargo test"),
            sh("On cancel", "echo cancelled", if_="cancelled()"),
            sh("Cleanup", "echo cleanup", if_="always()"),
        )

        result = _run(executor, spec, token=token)

        assert result.status is JobStatus.CANCELLED
        assert commands.commands() == ["echo cancelled", "echo cleanup"]
        assert result.error == "superseded"

    def test_cancelled_mid_step(self, tmp_path: Path) -> None:
        commands = ScriptedCommandRunner({"cargo test": "block"})
        executor = JobExecutor(commands, workdir=tmp_path, inherit_env=False)
        token = CancellationToken()
        spec = job(
            "tests",
            sh("Tests", "cargo test"),
            sh("Next", "echo next"),
            sh("Cleanup", "echo cleanup", if_="cancelled()"),
        )

        def cancel() -> None:
            commands.blocking.wait(5)
            token.cancel("superseded")

        threading.Thread(target=cancel).start()
        result = _run(executor, spec, token=token)

        assert result.status is JobStatus.CANCELLED
        assert result.steps[0].status is JobStatus.CANCELLED
        assert commands.commands() == ["cargo test", "echo cleanup"]

    def test_step_timeout_fails_job(self, tmp_path: Path) -> None:
        """A step over its timeout fails; the job is not cancelled."""
        commands = ScriptedCommandRunner({"cargo test": "block"})
        executor = JobExecutor(commands, workdir=tmp_path, inherit_env=False)
        spec = job("tests", sh("Tests", "cargo test", timeout_minutes=0.002))

        result = _run(executor, spec)

        assert result.status is JobStatus.FAILED
        assert "timed out" in (result.error or "")


@pytest.mark.unit
class TestUploadArtifact:
    """The built-in upload-artifact action."""

    def test_upload(self, tmp_path: Path, commands: ScriptedCommandRunner) -> None:
        (tmp_path / "lcov.info").write_text("SF:src/lib.rs\n", encoding="utf-8")
        store = tmp_path / "artifacts"
        executor = JobExecutor(commands, workdir=tmp_path, sink=DirectorySink(store), inherit_env=False)
        spec = job("tests", uses("Upload lcov.info", "actions/upload-artifact@v4", name="coverage", files="lcov.info"))

        result = _run(executor, spec)

        assert result.status is JobStatus.SUCCESS
        assert result.steps[0].outputs == {"count": "1"}
        assert len(list(store.rglob("lcov.info"))) == 1

    def test_missing_files_warn(self, executor: JobExecutor) -> None:
        spec = job("tests", uses("Upload", "upload-artifact", files="nothing.txt", if_no_files_found="warn"))

        result = _run(executor, spec)

        assert result.status is JobStatus.SUCCESS
        assert result.steps[0].outputs == {"count": "0"}

    def test_missing_files_error(self, executor: JobExecutor) -> None:
        spec = job("tests", uses("Upload", "upload-artifact", files="nothing.txt"))

        result = _run(executor, spec)

        assert result.status is JobStatus.FAILED
        assert "No files found" in (result.error or "")
