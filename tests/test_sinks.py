"""Tests for artifact sinks."""

from __future__ import annotations

import base64
import io
import json
import urllib.error
from pathlib import Path

import pytest

from ciflow.errors import SinkError
from ciflow.runner import artifact_sink
from ciflow.settings import Settings
from ciflow.sinks import DirectorySink, HttpSink


class _Response:
    def __init__(self, body: bytes):
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


@pytest.fixture
def report(tmp_path: Path) -> Path:
    path = tmp_path / "lcov.info"
    path.write_text("TN:\nend_of_record\n", encoding="utf-8")
    return path


@pytest.mark.unit
class TestDirectorySink:
    def test_copies_into_run_directory(self, tmp_path: Path, report: Path) -> None:
        sink = DirectorySink(tmp_path / "artifacts")

        stored = sink.upload("run1", "tests (stable)", [report], name="coverage")

        target = tmp_path / "artifacts" / "run1" / "tests__stable_" / "coverage" / "lcov.info"
        assert stored == [str(target)]
        assert target.read_text(encoding="utf-8") == report.read_text(encoding="utf-8")


@pytest.mark.unit
class TestHttpSink:
    """Uploads go to `<base_url>/artifacts` as base64 JSON."""

    def test_upload(self, monkeypatch: pytest.MonkeyPatch, report: Path) -> None:
        seen = {}

        def fake_urlopen(req, timeout):
            seen["url"] = req.full_url
            seen["headers"] = dict(req.header_items())
            seen["body"] = json.loads(req.data.decode("utf-8"))
            return _Response(b'{"stored": ["s3://bucket/lcov.info"]}')

        monkeypatch.setattr("ciflow.sinks.urllib.request.urlopen", fake_urlopen)
        sink = HttpSink("https://reports.example.com/api/", token="secret")

        stored = sink.upload("run1", "tests (stable)", [report], name="coverage")

        assert stored == ["s3://bucket/lcov.info"]
        assert seen["url"] == "https://reports.example.com/api/artifacts"
        assert seen["headers"]["Authorization"] == "Bearer secret"
        assert seen["body"]["job"] == "tests (stable)"
        assert base64.b64decode(seen["body"]["files"][0]["content"]) == report.read_bytes()

    def test_empty_response_reports_file_names(self, monkeypatch: pytest.MonkeyPatch, report: Path) -> None:
        monkeypatch.setattr("ciflow.sinks.urllib.request.urlopen", lambda req, timeout: _Response(b""))

        assert HttpSink("http://localhost:9000").upload("r", "j", [report], name="n") == ["lcov.info"]

    def test_http_error(self, monkeypatch: pytest.MonkeyPatch, report: Path) -> None:
        def fake_urlopen(req, timeout):
            raise urllib.error.HTTPError(req.full_url, 507, "Insufficient Storage", {}, io.BytesIO(b"disk full"))

        monkeypatch.setattr("ciflow.sinks.urllib.request.urlopen", fake_urlopen)

        with pytest.raises(SinkError, match="507") as exc:
            HttpSink("http://localhost:9000").upload("r", "j", [report], name="n")

        assert exc.value.details["body"] == "disk full"

    def test_network_error(self, monkeypatch: pytest.MonkeyPatch, report: Path) -> None:
        def fake_urlopen(req, timeout):
            raise urllib.error.URLError("connection refused")

        monkeypatch.setattr("ciflow.sinks.urllib.request.urlopen", fake_urlopen)

        with pytest.raises(SinkError, match="Network error"):
            HttpSink("http://localhost:9000").upload("r", "j", [report], name="n")


@pytest.mark.unit
def test_sink_from_settings(tmp_path: Path) -> None:
    assert isinstance(artifact_sink(Settings(artifacts_dir=str(tmp_path))), DirectorySink)
    assert isinstance(artifact_sink(Settings(artifacts_url="http://localhost:9000")), HttpSink)
