import socket
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulse.domain.ops.db_models import WorkerHeartbeat
from pulse.infra.metrics import metrics
from pulse.shared.clock import ensure_utc, utcnow

WORKER_HEARTBEAT_NAME = "pulse-worker"


def resolve_runner_id(runner_id: str | None = None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def record_heartbeat(
    session_factory: async_sessionmaker,
    name: str = WORKER_HEARTBEAT_NAME,
    *,
    runner_id: str | None = None,
    error_reason: str | None = None,
) -> None:
    now = utcnow()
    resolved_runner_id = resolve_runner_id(runner_id)
    async with session_factory() as session:
        heartbeat = await session.get(WorkerHeartbeat, name)
        if heartbeat is None:
            heartbeat = WorkerHeartbeat(name=name, consecutive_failures=0)
            session.add(heartbeat)
        heartbeat.last_heartbeat = now
        heartbeat.runner_id = resolved_runner_id
        heartbeat.updated_at = now
        if error_reason is None:
            heartbeat.last_success_at = now
            heartbeat.consecutive_failures = 0
            heartbeat.last_error = None
            heartbeat.last_error_at = None
        else:
            heartbeat.consecutive_failures = (heartbeat.consecutive_failures or 0) + 1
            heartbeat.last_error = error_reason[:128]
            heartbeat.last_error_at = now
        await session.commit()
    metrics.record_job_heartbeat(name, now.timestamp())
    if error_reason is None:
        metrics.record_job_success(name, now.timestamp())
    else:
        metrics.record_job_error(name, error_reason)


async def stale_heartbeats(
    session: AsyncSession, *, ttl_seconds: int, now: datetime | None = None
) -> list[dict[str, str | float | None]]:
    """Heartbeats older than ``ttl_seconds``; an empty table counts as one stale runner."""
    current = now or utcnow()
    rows = (await session.scalars(select(WorkerHeartbeat))).all()
    if not rows:
        return [{"name": WORKER_HEARTBEAT_NAME, "runner_id": None, "age_seconds": None}]
    stale = []
    for row in rows:
        age = current - ensure_utc(row.last_heartbeat)
        if age > timedelta(seconds=ttl_seconds):
            stale.append({"name": row.name, "runner_id": row.runner_id, "age_seconds": round(age.total_seconds(), 1)})
    return stale
