import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.dependencies import get_db_session, require_org_id
from pulse.domain.signals import service as signals_service
from pulse.domain.signals.schemas import (
    BatchAcceptedResponse,
    BatchIngestResponse,
    IngestResponse,
    SignalBatchRequest,
    SignalInput,
)

router = APIRouter(tags=["signals"])


@router.post("/v1/signals", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
async def ingest_signal(
    payload: SignalInput,
    response: Response,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
):
    """Store one signal. Replaying an idempotency key returns the stored signal with 200."""
    result = await signals_service.ingest_signal(session, org_id, payload)
    await session.commit()
    if result.deduplicated:
        response.status_code = status.HTTP_200_OK
    return IngestResponse(signal=signals_service.signal_to_response(result.signal), deduplicated=result.deduplicated)


@router.post(
    "/v1/signals/batch",
    response_model=BatchIngestResponse | BatchAcceptedResponse,
    responses={202: {"model": BatchAcceptedResponse}},
)
async def ingest_signal_batch(
    payload: SignalBatchRequest,
    response: Response,
    run_async: bool = Query(False, alias="async"),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
):
    if run_async:
        enqueued = await signals_service.enqueue_signal_batch(session, org_id, payload.signals)
        await session.commit()
        response.status_code = status.HTTP_202_ACCEPTED
        return BatchAcceptedResponse(job_id=enqueued.job.job_id, count=len(payload.signals))

    results = await signals_service.ingest_signal_batch(session, org_id, payload.signals)
    await session.commit()
    return BatchIngestResponse(results=results, **signals_service.summarize_batch(results))
