import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.dependencies import get_db_session, require_org_id
from pulse.domain.anomalies import service as anomalies_service
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import AnomalyDetectionJobData
from pulse.domain.queue.service import enqueue_job
from pulse.jobs.fanout import fanout_slot, tenant_job_key
from pulse.shared.clock import utcnow

router = APIRouter(tags=["anomalies"])


@router.get("/v1/anomalies")
async def list_anomalies(
    account_id: uuid.UUID | None = Query(None, alias="accountId"),
    days: int = Query(7, ge=1, le=90),
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    anomalies = await anomalies_service.get_recent_anomalies(
        session, org_id, account_id=account_id, days=days, limit=limit
    )
    return {"anomalies": anomalies}


@router.post("/v1/anomalies/scan", status_code=status.HTTP_202_ACCEPTED)
async def scan_anomalies(
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    """Queue a scan for this organization; shares the scheduler's job key for the current minute."""
    result = await enqueue_job(
        session,
        lanes.ANOMALY_DETECTION,
        "detect-anomalies",
        AnomalyDetectionJobData(organization_id=org_id),
        job_key=tenant_job_key("anomaly-scan", org_id, fanout_slot(utcnow())),
    )
    await session.commit()
    return {"jobId": str(result.job.job_id), "created": result.created}
