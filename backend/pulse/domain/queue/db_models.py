from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from pulse.infra.db import UUID_TYPE, Base

STATUS_QUEUED = "queued"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
LIVE_STATUSES = (STATUS_QUEUED, STATUS_ACTIVE)

_LIVE_PREDICATE = text("status IN ('queued', 'active')")
_ACTIVE_GROUP_PREDICATE = text("status = 'active' AND group_key IS NOT NULL")


class QueuedJob(Base):
    __tablename__ = "queued_jobs"

    job_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    lane: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    job_key: Mapped[str | None] = mapped_column(String(255))
    group_key: Mapped[str | None] = mapped_column(String(255))
    org_id: Mapped[uuid.UUID | None] = mapped_column(UUID_TYPE)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_QUEUED)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    backoff_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[str | None] = mapped_column(String(128))
    last_error: Mapped[str | None] = mapped_column(Text)
    result: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            "uq_queued_jobs_live_key",
            "lane",
            "job_key",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
        Index(
            "uq_queued_jobs_active_group",
            "group_key",
            unique=True,
            postgresql_where=_ACTIVE_GROUP_PREDICATE,
            sqlite_where=_ACTIVE_GROUP_PREDICATE,
        ),
        Index("ix_queued_jobs_claim", "lane", "status", "run_at"),
        Index("ix_queued_jobs_group_status", "group_key", "status"),
        Index("ix_queued_jobs_finished", "status", "finished_at"),
    )


class JobSchedule(Base):
    __tablename__ = "job_schedules"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    lane: Mapped[str] = mapped_column(String(64), nullable=False)
    job_name: Mapped[str] = mapped_column(String(128), nullable=False)
    cron: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    last_fired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_fire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
