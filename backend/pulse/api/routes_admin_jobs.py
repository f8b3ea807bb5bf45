import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.dependencies import get_db_session
from pulse.domain.errors import DomainError
from pulse.domain.queue import service as queue_service
from pulse.domain.queue.lanes import LANE_NAMES

router = APIRouter(prefix="/v1/admin/jobs", tags=["admin"])


@router.get("/summary")
async def jobs_summary(session: AsyncSession = Depends(get_db_session)) -> dict[str, Any]:
    return {"lanes": await queue_service.queue_summary(session)}


@router.get("/failed")
async def failed_jobs(
    lane: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    if lane is not None and lane not in LANE_NAMES:
        raise DomainError(detail=f"Unknown lane: {lane}")
    jobs = await queue_service.list_failed_jobs(session, lane=lane, limit=limit)
    return {"jobs": [queue_service.job_to_dict(job) for job in jobs]}


@router.post("/{job_id}/retry")
async def retry_job(job_id: uuid.UUID, session: AsyncSession = Depends(get_db_session)) -> dict[str, Any]:
    job = await queue_service.retry_failed_job(session, job_id)
    await session.commit()
    return queue_service.job_to_dict(job)
