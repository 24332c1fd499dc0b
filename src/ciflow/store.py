# store.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .cloud.models import Base, JobRecord, RunRecord, now_utc
from .model import WorkflowRun

logger = logging.getLogger(__name__)


def _make_engine(url: str) -> sa.Engine:
    if url.startswith("sqlite"):
        db = sa.engine.make_url(url).database
        if db and db != ":memory:":
            Path(db).parent.mkdir(parents=True, exist_ok=True)
        pool = sa.pool.StaticPool if not db or db == ":memory:" else None
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if pool is not None:
            kwargs["poolclass"] = pool
        return sa.create_engine(url, **kwargs)
    return sa.create_engine(url, pool_pre_ping=True)


class RunStore:
    """Archive of finished (and in-progress) workflow runs."""

    def __init__(self, url: str = "sqlite:///.ciflow/runs.db"):
        self.engine = _make_engine(url)
        self.SessionLocal = sessionmaker(self.engine, class_=Session, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def save(self, run: WorkflowRun) -> None:
        with self.SessionLocal() as s, s.begin():
            record = s.get(RunRecord, run.id)
            if record is None:
                record = RunRecord(id=run.id)
                s.add(record)
            record.workflow = run.workflow.name
            record.event = run.event.kind
            record.ref = run.event.ref
            record.sha = run.event.sha
            record.group_key = run.group
            record.attempt = run.attempt
            record.status = run.status.value
            record.error = run.error
            record.finished_at = now_utc() if run.status.terminal else None

            record.jobs.clear()
            for position, inst in enumerate(run.instances.values()):
                record.jobs.append(JobRecord(
                    position=position,
                    key=inst.key,
                    job_id=inst.job.id,
                    matrix=dict(inst.matrix),
                    status=inst.status.value,
                    runner=getattr(inst.runner, "label", None),
                    outputs=dict(inst.outputs),
                    error=inst.error,
                ))
        logger.debug("archived run %s (%s)", run.id, run.status.value)

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.SessionLocal() as s:
            q = sa.select(RunRecord).options(selectinload(RunRecord.jobs)).where(RunRecord.id == run_id)
            record = s.execute(q).scalar_one_or_none()
            return _to_dict(record) if record is not None else None

    def list(self, *, limit: int = 50, workflow: str | None = None) -> List[Dict[str, Any]]:
        with self.SessionLocal() as s:
            q = sa.select(RunRecord).options(selectinload(RunRecord.jobs))
            if workflow:
                q = q.where(RunRecord.workflow == workflow)
            q = q.order_by(RunRecord.created_at.desc()).limit(limit)
            return [_to_dict(r) for r in s.execute(q).scalars()]


def _to_dict(record: RunRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "workflow": record.workflow,
        "event": record.event,
        "ref": record.ref,
        "sha": record.sha,
        "group": record.group_key,
        "attempt": record.attempt,
        "status": record.status,
        "error": record.error,
        "created_at": record.created_at,
        "finished_at": record.finished_at,
        "jobs": [
            {
                "key": j.key,
                "job": j.job_id,
                "matrix": j.matrix,
                "status": j.status,
                "runner": j.runner,
                "outputs": j.outputs,
                "error": j.error,
            }
            for j in record.jobs
        ],
    }
