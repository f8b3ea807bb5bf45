"""Per-tenant fan-out for scheduler-driven lanes.

Each per-tenant task gets the job key ``{prefix}-{orgId}-{slot}`` where the slot
is the scheduled minute, so an overlapping scheduler firing for the same slot
finds the live job and does not enqueue a duplicate.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.queue.payloads import JobPayload
from pulse.domain.queue.service import enqueue_job
from pulse.infra.metrics import metrics
from pulse.shared.clock import floor_minute

logger = logging.getLogger(__name__)


def fanout_slot(moment: datetime) -> str:
    return floor_minute(moment).strftime("%Y%m%d%H%M")


def tenant_job_key(prefix: str, org_id: uuid.UUID, slot: str) -> str:
    return f"{prefix}-{org_id}-{slot}"


async def fan_out(
    session: AsyncSession,
    lane: str,
    job_name: str,
    org_ids: Iterable[uuid.UUID],
    *,
    key_prefix: str,
    build_payload: Callable[[uuid.UUID], JobPayload],
    slot: str,
) -> dict[str, int]:
    created = 0
    existing = 0
    failed = 0
    for org_id in org_ids:
        savepoint = await session.begin_nested()
        try:
            result = await enqueue_job(
                session,
                lane,
                job_name,
                build_payload(org_id),
                job_key=tenant_job_key(key_prefix, org_id, slot),
            )
        except Exception as exc:  # noqa: BLE001
            await savepoint.rollback()
            failed += 1
            metrics.record_batch_item_error("fanout")
            logger.warning(
                "fanout_enqueue_failed",
                extra={"extra": {"lane": lane, "org_id": str(org_id), "reason": type(exc).__name__}},
            )
            continue
        await savepoint.commit()
        if result.created:
            created += 1
        else:
            existing += 1
    logger.info(
        "fanout_complete",
        extra={"extra": {"lane": lane, "slot": slot, "created": created, "existing": existing, "failed": failed}},
    )
    return {"created": created, "existing": existing, "failed": failed}
