import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.dependencies import get_db_session, require_org_id
from pulse.domain.scoring import service as scoring_service

router = APIRouter(tags=["scores"])


@router.get("/v1/accounts/{account_id}/score")
async def get_account_score(
    account_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    return await scoring_service.get_account_score(session, org_id, account_id)


@router.post("/v1/accounts/{account_id}/score/recompute", status_code=status.HTTP_202_ACCEPTED)
async def recompute_account_score(
    account_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    result = await scoring_service.request_score_recompute(session, org_id, account_id)
    await session.commit()
    return {"jobId": str(result.job.job_id), "created": result.created}


@router.get("/v1/scores/top")
async def get_top_accounts(
    limit: int = Query(20, ge=1, le=100),
    tier: str | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    accounts = await scoring_service.get_top_accounts(session, org_id, limit=limit, tier=tier)
    return {"accounts": accounts}
