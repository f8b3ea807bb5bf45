from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.accounts.db_models import Company, Contact
from pulse.domain.errors import DomainError
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import SignalProcessingJobData
from pulse.domain.queue.service import EnqueueResult, enqueue_job
from pulse.domain.queue.side_effects import run_side_effect
from pulse.domain.scoring.service import enqueue_score_computation
from pulse.domain.signals.db_models import Signal, SignalSource
from pulse.domain.signals.schemas import BatchItemResult, SignalInput, SignalResponse
from pulse.domain.webhooks.service import fire_event
from pulse.domain.workflows.service import enqueue_workflow_event
from pulse.infra.metrics import metrics
from pulse.shared.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

BATCH_CREATED = "created"
BATCH_DEDUPLICATED = "deduplicated"
BATCH_ERROR = "error"


@dataclass(frozen=True)
class IngestResult:
    signal: Signal
    deduplicated: bool


def signal_to_response(signal: Signal) -> SignalResponse:
    return SignalResponse(
        id=signal.signal_id,
        source_id=signal.source_id,
        type=signal.type,
        actor_id=signal.actor_id,
        account_id=signal.account_id,
        anonymous_id=signal.anonymous_id,
        metadata=signal.metadata_json or {},
        idempotency_key=signal.idempotency_key,
        timestamp=ensure_utc(signal.timestamp),
    )


def signal_event_data(signal: Signal) -> dict[str, Any]:
    return signal_to_response(signal).model_dump(mode="json", by_alias=True)


async def _find_by_idempotency_key(session: AsyncSession, org_id: uuid.UUID, key: str) -> Signal | None:
    return await session.scalar(
        select(Signal).where(Signal.org_id == org_id, Signal.idempotency_key == key)
    )


async def _resolve_account(session: AsyncSession, org_id: uuid.UUID, data: SignalInput) -> uuid.UUID | None:
    if data.account_id is not None:
        exists = await session.scalar(
            select(Company.company_id).where(Company.company_id == data.account_id, Company.org_id == org_id)
        )
        if exists is None:
            raise DomainError(detail="Account not found for signal")
        return data.account_id
    if data.actor_id is None:
        return None
    return await session.scalar(
        select(Contact.company_id).where(Contact.contact_id == data.actor_id, Contact.org_id == org_id)
    )


async def ingest_signal(
    session: AsyncSession,
    org_id: uuid.UUID,
    data: SignalInput,
    *,
    now: datetime | None = None,
) -> IngestResult:
    """Store one signal, deduplicated by ``(org, idempotencyKey)``.

    A new signal enqueues a score recomputation for its account, a
    ``signal.created`` webhook event and the ``signal_received`` workflow event.
    """
    if data.idempotency_key:
        existing = await _find_by_idempotency_key(session, org_id, data.idempotency_key)
        if existing is not None:
            return IngestResult(signal=existing, deduplicated=True)

    source = await session.scalar(
        select(SignalSource).where(SignalSource.source_id == data.source_id, SignalSource.org_id == org_id)
    )
    if source is None:
        raise DomainError(detail="Signal source not found")

    account_id = await _resolve_account(session, org_id, data)
    signal = Signal(
        signal_id=uuid.uuid4(),
        org_id=org_id,
        source_id=data.source_id,
        type=data.type,
        actor_id=data.actor_id,
        account_id=account_id,
        anonymous_id=data.anonymous_id,
        metadata_json=data.metadata,
        idempotency_key=data.idempotency_key,
        timestamp=ensure_utc(data.timestamp) if data.timestamp else ensure_utc(now or utcnow()),
    )
    savepoint = await session.begin_nested()
    try:
        session.add(signal)
        await session.flush()
    except IntegrityError:
        await savepoint.rollback()
        if data.idempotency_key:
            existing = await _find_by_idempotency_key(session, org_id, data.idempotency_key)
            if existing is not None:
                return IngestResult(signal=existing, deduplicated=True)
        raise
    await savepoint.commit()

    context = {"org_id": str(org_id), "signal_id": str(signal.signal_id)}
    if account_id is not None:
        await run_side_effect(
            session,
            "score_computation",
            lambda: enqueue_score_computation(session, org_id, account_id),
            context=context,
        )
    event_data = signal_event_data(signal)
    await run_side_effect(
        session,
        "signal_created_webhook",
        lambda: fire_event(session, org_id, "signal.created", event_data, dedupe_key=str(signal.signal_id)),
        context=context,
    )
    await run_side_effect(
        session,
        "signal_received_workflow",
        lambda: enqueue_workflow_event(session, org_id, "signal_received", event_data),
        context=context,
    )
    logger.info(
        "signal_ingested",
        extra={
            "extra": {
                "org_id": str(org_id),
                "signal_id": str(signal.signal_id),
                "type": signal.type,
                "account_id": str(account_id) if account_id else None,
            }
        },
    )
    return IngestResult(signal=signal, deduplicated=False)


async def ingest_signal_batch(
    session: AsyncSession,
    org_id: uuid.UUID,
    items: Iterable[SignalInput | dict[str, Any]],
    *,
    now: datetime | None = None,
) -> list[BatchItemResult]:
    """Ingest each item independently; a failing item is reported and skipped."""
    results: list[BatchItemResult] = []
    for index, item in enumerate(items):
        try:
            data = item if isinstance(item, SignalInput) else SignalInput.model_validate(item)
        except ValidationError as exc:
            metrics.record_batch_item_error("signal_batch")
            results.append(BatchItemResult(index=index, status=BATCH_ERROR, error=f"invalid_signal:{exc.error_count()}"))
            continue

        savepoint = await session.begin_nested()
        try:
            outcome = await ingest_signal(session, org_id, data, now=now)
        except DomainError as exc:
            await savepoint.rollback()
            metrics.record_batch_item_error("signal_batch")
            results.append(BatchItemResult(index=index, status=BATCH_ERROR, error=exc.detail))
            continue
        except Exception as exc:  # noqa: BLE001
            await savepoint.rollback()
            metrics.record_batch_item_error("signal_batch")
            logger.warning(
                "signal_batch_item_failed",
                extra={"extra": {"org_id": str(org_id), "index": index, "reason": type(exc).__name__}},
            )
            results.append(BatchItemResult(index=index, status=BATCH_ERROR, error=type(exc).__name__))
            continue
        await savepoint.commit()
        results.append(
            BatchItemResult(
                index=index,
                status=BATCH_DEDUPLICATED if outcome.deduplicated else BATCH_CREATED,
                signal_id=outcome.signal.signal_id,
            )
        )
    return results


def summarize_batch(results: list[BatchItemResult]) -> dict[str, int]:
    return {
        "ingested": sum(1 for item in results if item.status == BATCH_CREATED),
        "deduplicated": sum(1 for item in results if item.status == BATCH_DEDUPLICATED),
        "failed": sum(1 for item in results if item.status == BATCH_ERROR),
    }


async def enqueue_signal_batch(
    session: AsyncSession, org_id: uuid.UUID, items: list[SignalInput]
) -> EnqueueResult:
    return await enqueue_job(
        session,
        lanes.SIGNAL_PROCESSING,
        "ingest-batch",
        SignalProcessingJobData(
            organization_id=org_id,
            signals=[item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in items],
        ),
    )
