"""Tests for the HTTP control plane."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from ciflow.cloud.main import create_app
from ciflow.dsl import job, on_push, sh, wf
from ciflow.runner import Orchestrator
from ciflow.store import RunStore

from fakes import ScriptedCommandRunner

CI = wf(
    job("build", sh("Build", "cargo build")),
    job("tests", sh("Tests", "cargo test"), needs=["build"]),
    name="CI",
    on={"push": on_push(paths=["**.rs"])},
    concurrency="${{ github.workflow }}-${{ github.ref }}",
)

CYCLE = wf(job("a", sh("a", "a"), needs=["b"]), job("b", sh("b", "b"), needs=["a"]), name="broken")


def _wait_status(client: TestClient, run_id: str, *statuses: str, timeout: float = 10.0) -> dict:
    deadline = time.monotonic() + timeout
    body: dict = {}
    while time.monotonic() < deadline:
        body = client.get(f"/runs/{run_id}").json()
        if body.get("status") in statuses:
            return body
        time.sleep(0.05)
    return body


@pytest.fixture
def commands() -> ScriptedCommandRunner:
    return ScriptedCommandRunner({"cargo test": "block"})


@pytest.fixture
def client(make_scheduler, commands: ScriptedCommandRunner) -> TestClient:
    orchestrator = Orchestrator(make_scheduler(commands), store=RunStore("sqlite://"))
    return TestClient(create_app(orchestrator, {"CI": CI, "broken": CYCLE}))


@pytest.mark.integration
class TestApi:
    """Events in, runs out."""

    def test_list_workflows(self, client: TestClient) -> None:
        assert client.get("/workflows").json() == ["CI", "broken"]

    def test_event_triggers_run(self, client: TestClient, commands: ScriptedCommandRunner) -> None:
        resp = client.post(
            "/events",
            json={"kind": "push", "ref": "refs/heads/main", "changed_paths": ["src/lib.rs"], "workflow": "CI"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["triggered"] is True
        run_id = body["runs"][0]["run_id"]

        assert commands.blocking.wait(5)
        view = client.get(f"/runs/{run_id}").json()
        assert view["workflow"] == "CI"
        assert view["group"] == "CI-refs/heads/main"
        assert {j["key"]: j["status"] for j in view["jobs"]} == {"build": "success", "tests": "running"}

        cancel = client.post(f"/runs/{run_id}/cancel")
        assert cancel.json() == {"id": run_id, "cancelled": True}

        final = _wait_status(client, run_id, "cancelled")
        assert final["status"] == "cancelled"
        assert client.post(f"/runs/{run_id}/cancel").status_code == 409
        assert run_id in [r["id"] for r in client.get("/runs").json()]

    def test_filtered_event(self, client: TestClient) -> None:
        resp = client.post("/events", json={"kind": "push", "changed_paths": ["README.md"], "workflow": "CI"})

        assert resp.json() == {"triggered": False, "runs": []}

    def test_unknown_workflow(self, client: TestClient) -> None:
        resp = client.post("/events", json={"kind": "push", "workflow": "nope"})

        assert resp.status_code == 404

    def test_invalid_workflow_is_422(self, client: TestClient) -> None:
        resp = client.post("/events", json={"kind": "push", "workflow": "broken"})

        assert resp.status_code == 422
        assert resp.json()["kind"] == "config_error"
        assert resp.json()["stuck"] == ["a", "b"]

    def test_unknown_run(self, client: TestClient) -> None:
        assert client.get("/runs/missing").status_code == 404
        assert client.post("/runs/missing/cancel").status_code == 404

    def test_bad_request_body(self, client: TestClient) -> None:
        assert client.post("/events", json={"ref": "refs/heads/main"}).status_code == 422
