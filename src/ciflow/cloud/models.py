from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sha: Mapped[Optional[str]] = mapped_column(sa.String(64))
    group_key: Mapped[Optional[str]] = mapped_column(sa.Text)
    attempt: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    jobs: Mapped[List["JobRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="JobRecord.position"
    )


class JobRecord(Base):
    __tablename__ = "job_instances"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    job_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    matrix: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    runner: Mapped[Optional[str]] = mapped_column(sa.Text)
    outputs: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    error: Mapped[Optional[str]] = mapped_column(sa.Text)

    run: Mapped[RunRecord] = relationship(back_populates="jobs")
