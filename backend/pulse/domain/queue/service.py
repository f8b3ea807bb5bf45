from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.errors import DomainError, NotFoundError
from pulse.domain.queue.db_models import (
    LIVE_STATUSES,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_QUEUED,
    QueuedJob,
)
from pulse.domain.queue.lanes import get_lane
from pulse.domain.queue.payloads import JobPayload
from pulse.infra.metrics import metrics
from pulse.shared.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_ERROR_MAX_CHARS = 2000
OUTCOME_COMPLETED = "completed"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class EnqueueResult:
    job: QueuedJob
    created: bool


def backoff_delay(attempts_made: int, base_seconds: float) -> timedelta:
    delay = base_seconds * max(1, 2 ** max(0, attempts_made - 1))
    return timedelta(seconds=delay)


def _org_from_payload(payload: dict[str, Any]) -> uuid.UUID | None:
    raw = payload.get("organizationId")
    if raw is None:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


async def _find_live_job(session: AsyncSession, lane: str, job_key: str) -> QueuedJob | None:
    return await session.scalar(
        select(QueuedJob).where(
            QueuedJob.lane == lane,
            QueuedJob.job_key == job_key,
            QueuedJob.status.in_(LIVE_STATUSES),
        )
    )


async def enqueue_job(
    session: AsyncSession,
    lane: str,
    name: str,
    payload: JobPayload | dict[str, Any],
    *,
    job_key: str | None = None,
    group_key: str | None = None,
    delay_seconds: float = 0,
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
    now: datetime | None = None,
) -> EnqueueResult:
    """Add a job to ``lane``.

    A ``job_key`` makes the call idempotent: while a job with the same key is
    queued or active in the lane, the existing job is returned instead.
    """
    lane_config = get_lane(lane)
    payload_json = payload.to_json() if isinstance(payload, JobPayload) else dict(payload)
    current = now or utcnow()

    if job_key:
        existing = await _find_live_job(session, lane, job_key)
        if existing is not None:
            metrics.record_enqueue(lane, "deduplicated")
            return EnqueueResult(job=existing, created=False)

    job = QueuedJob(
        job_id=uuid.uuid4(),
        lane=lane,
        name=name,
        job_key=job_key,
        group_key=group_key,
        org_id=_org_from_payload(payload_json),
        payload=payload_json,
        status=STATUS_QUEUED,
        attempts_made=0,
        max_attempts=max_attempts or lane_config.max_attempts,
        backoff_seconds=backoff_seconds if backoff_seconds is not None else lane_config.backoff_seconds,
        run_at=current + timedelta(seconds=max(0.0, delay_seconds)),
    )
    savepoint = await session.begin_nested()
    try:
        session.add(job)
        await session.flush()
    except IntegrityError:
        await savepoint.rollback()
        if not job_key:
            raise
        existing = await _find_live_job(session, lane, job_key)
        if existing is None:
            raise
        metrics.record_enqueue(lane, "deduplicated")
        return EnqueueResult(job=existing, created=False)
    else:
        await savepoint.commit()
    metrics.record_enqueue(lane, "created")
    logger.debug(
        "job_enqueued",
        extra={"extra": {"lane": lane, "job": name, "job_id": str(job.job_id), "job_key": job_key}},
    )
    return EnqueueResult(job=job, created=True)


async def due_candidates(
    session: AsyncSession, lane: str, *, limit: int, now: datetime | None = None
) -> list[QueuedJob]:
    """Queued, due jobs of ``lane`` whose group has no active job, oldest first."""
    current = now or utcnow()
    busy_groups = (
        select(QueuedJob.group_key)
        .where(QueuedJob.status == STATUS_ACTIVE, QueuedJob.group_key.is_not(None))
        .scalar_subquery()
    )
    return list(
        (
            await session.scalars(
                select(QueuedJob)
                .where(
                    QueuedJob.lane == lane,
                    QueuedJob.status == STATUS_QUEUED,
                    QueuedJob.run_at <= current,
                    (QueuedJob.group_key.is_(None)) | (QueuedJob.group_key.not_in(busy_groups)),
                )
                .order_by(QueuedJob.run_at, QueuedJob.created_at)
                .limit(limit)
            )
        ).all()
    )


async def try_claim_job(session: AsyncSession, job_id: uuid.UUID, *, worker_id: str, now: datetime) -> bool:
    """Flip one queued job to active.

    Returns False when another worker got the job first, or when its group
    gained an active job since the candidates were read; the partial unique
    index on active ``group_key`` rejects the second claim.
    """
    savepoint = await session.begin_nested()
    try:
        result = await session.execute(
            update(QueuedJob)
            .where(QueuedJob.job_id == job_id, QueuedJob.status == STATUS_QUEUED)
            .values(
                status=STATUS_ACTIVE,
                attempts_made=QueuedJob.attempts_made + 1,
                locked_at=now,
                locked_by=worker_id,
            )
            .execution_options(synchronize_session=False)
        )
    except IntegrityError:
        await savepoint.rollback()
        logger.debug("job_claim_group_busy", extra={"extra": {"job_id": str(job_id)}})
        return False
    await savepoint.commit()
    return result.rowcount == 1


async def claim_jobs(
    session: AsyncSession,
    lane: str,
    *,
    limit: int,
    worker_id: str,
    now: datetime | None = None,
) -> list[QueuedJob]:
    """Move up to ``limit`` due jobs from queued to active and return them.

    Jobs whose ``group_key`` already has an active job are skipped, so work for
    one group never runs concurrently, including across worker hosts.
    """
    if limit <= 0:
        return []
    current = now or utcnow()
    candidates = await due_candidates(session, lane, limit=limit * 3, now=current)

    claimed_ids: list[uuid.UUID] = []
    seen_groups: set[str] = set()
    for candidate in candidates:
        if len(claimed_ids) >= limit:
            break
        if candidate.group_key:
            if candidate.group_key in seen_groups:
                continue
            seen_groups.add(candidate.group_key)
        if await try_claim_job(session, candidate.job_id, worker_id=worker_id, now=current):
            claimed_ids.append(candidate.job_id)
    await session.commit()

    if not claimed_ids:
        return []
    claimed = (
        await session.scalars(
            select(QueuedJob)
            .where(QueuedJob.job_id.in_(claimed_ids))
            .execution_options(populate_existing=True)
        )
    ).all()
    order = {job_id: index for index, job_id in enumerate(claimed_ids)}
    return sorted(claimed, key=lambda job: order[job.job_id])


async def complete_job(
    session: AsyncSession, job: QueuedJob, result: dict[str, Any] | None = None, *, now: datetime | None = None
) -> None:
    job.status = STATUS_COMPLETED
    job.result = result or {}
    job.finished_at = now or utcnow()
    job.locked_at = None
    job.locked_by = None
    job.last_error = None
    await session.flush()


async def fail_job(
    session: AsyncSession,
    job: QueuedJob,
    error: str,
    *,
    terminal: bool = False,
    retry_after: float | None = None,
    now: datetime | None = None,
) -> str:
    """Record a failed attempt and either schedule the retry or park the job as failed."""
    current = now or utcnow()
    job.last_error = (error or "failed")[:_ERROR_MAX_CHARS]
    job.locked_at = None
    job.locked_by = None
    if terminal or job.attempts_made >= job.max_attempts:
        job.status = STATUS_FAILED
        job.finished_at = current
        await session.flush()
        return OUTCOME_FAILED
    delay = backoff_delay(job.attempts_made, job.backoff_seconds)
    if retry_after is not None and retry_after > delay.total_seconds():
        delay = timedelta(seconds=retry_after)
    job.status = STATUS_QUEUED
    job.run_at = current + delay
    await session.flush()
    return OUTCOME_RETRY


async def recover_stalled_jobs(
    session: AsyncSession, lane: str, *, stalled_after_seconds: float, now: datetime | None = None
) -> int:
    """Requeue active jobs whose worker stopped without finishing them."""
    current = now or utcnow()
    cutoff = current - timedelta(seconds=stalled_after_seconds)
    result = await session.execute(
        update(QueuedJob)
        .where(
            QueuedJob.lane == lane,
            QueuedJob.status == STATUS_ACTIVE,
            QueuedJob.locked_at < cutoff,
        )
        .values(status=STATUS_QUEUED, locked_at=None, locked_by=None, run_at=current)
        .execution_options(synchronize_session=False)
    )
    recovered = result.rowcount or 0
    if recovered:
        logger.warning("jobs_stalled_requeued", extra={"extra": {"lane": lane, "count": recovered}})
    return recovered


async def retry_failed_job(session: AsyncSession, job_id: uuid.UUID, *, now: datetime | None = None) -> QueuedJob:
    job = await session.get(QueuedJob, job_id)
    if job is None:
        raise NotFoundError(detail="Job not found")
    if job.status != STATUS_FAILED:
        raise DomainError(detail=f"Only failed jobs can be retried (status={job.status})")
    if job.job_key and await _find_live_job(session, job.lane, job.job_key) is not None:
        raise DomainError(detail="A job with the same key is already queued")
    job.status = STATUS_QUEUED
    job.attempts_made = 0
    job.run_at = now or utcnow()
    job.finished_at = None
    await session.flush()
    logger.info("job_manual_retry", extra={"extra": {"job_id": str(job.job_id), "lane": job.lane}})
    return job


async def list_failed_jobs(session: AsyncSession, *, lane: str | None = None, limit: int = 50) -> list[QueuedJob]:
    stmt = select(QueuedJob).where(QueuedJob.status == STATUS_FAILED)
    if lane:
        stmt = stmt.where(QueuedJob.lane == lane)
    stmt = stmt.order_by(QueuedJob.finished_at.desc()).limit(limit)
    return list((await session.scalars(stmt)).all())


async def queue_summary(session: AsyncSession) -> dict[str, dict[str, int]]:
    rows = await session.execute(
        select(QueuedJob.lane, QueuedJob.status, func.count()).group_by(QueuedJob.lane, QueuedJob.status)
    )
    summary: dict[str, dict[str, int]] = {}
    for lane, status, count in rows.all():
        summary.setdefault(lane, {})[status] = int(count)
        metrics.set_queue_depth(lane, status, int(count))
    return summary


async def purge_finished_jobs(session: AsyncSession, *, older_than: datetime) -> int:
    """Delete completed jobs finished before ``older_than``; failed jobs are kept."""
    result = await session.execute(
        delete(QueuedJob)
        .where(QueuedJob.status == STATUS_COMPLETED, QueuedJob.finished_at < ensure_utc(older_than))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def job_to_dict(job: QueuedJob) -> dict[str, Any]:
    return {
        "id": str(job.job_id),
        "lane": job.lane,
        "name": job.name,
        "jobKey": job.job_key,
        "status": job.status,
        "attemptsMade": job.attempts_made,
        "maxAttempts": job.max_attempts,
        "runAt": ensure_utc(job.run_at).isoformat() if job.run_at else None,
        "finishedAt": ensure_utc(job.finished_at).isoformat() if job.finished_at else None,
        "lastError": job.last_error,
    }
