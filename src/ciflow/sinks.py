# sinks.py
from __future__ import annotations

import base64
import json
import logging
import shutil
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence
from urllib.parse import urljoin

from .errors import SinkError

logger = logging.getLogger(__name__)


class ArtifactSink(Protocol):
    """Where step artifacts (coverage reports, logs, ...) end up."""

    def upload(self, run_id: str, job_key: str, files: Sequence[Path], *, name: str) -> List[str]:
        ...


class DirectorySink:
    """Copy artifacts to `<root>/<run_id>/<job>/<name>/`."""

    def __init__(self, root: str | Path = ".ciflow/artifacts"):
        self.root = Path(root)

    def upload(self, run_id: str, job_key: str, files: Sequence[Path], *, name: str) -> List[str]:
        dest = self.root / run_id / _safe(job_key) / _safe(name)
        dest.mkdir(parents=True, exist_ok=True)
        stored: List[str] = []
        for f in files:
            target = dest / f.name
            shutil.copy2(f, target)
            stored.append(str(target))
        logger.info("stored %d artifact(s) for %s in %s", len(stored), job_key, dest)
        return stored


class HttpSink:
    """POST artifacts as JSON (base64 contents) to a reporting service."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        # Ensure base_url doesn't end with /
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _request(self, path: str, data: dict) -> dict:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(url, data=json.dumps(data).encode("utf-8"), headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise SinkError(message=f"Upload failed: {e.code} {e.reason}", details={"body": error_body[:500]})
        except urllib.error.URLError as e:
            raise SinkError(message=f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise SinkError(message=f"Invalid JSON response: {e}")

    def upload(self, run_id: str, job_key: str, files: Sequence[Path], *, name: str) -> List[str]:
        payload: Dict[str, object] = {
            "run_id": run_id,
            "job": job_key,
            "name": name,
            "files": [
                {"path": f.name, "content": base64.b64encode(f.read_bytes()).decode("ascii")}
                for f in files
            ],
        }
        result = self._request("/artifacts", payload)
        return list(result.get("stored", [f.name for f in files]))


def _safe(text: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in text)
