"""Realtime fan-out to dashboard clients over Redis pub/sub."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import RealtimeJobData
from pulse.domain.queue.service import enqueue_job
from pulse.infra.redis import publish_json
from pulse.shared.clock import utcnow

logger = logging.getLogger(__name__)

EVENT_SCORE_CHANGED = "score.changed"
EVENT_TIER_CHANGED = "tier.changed"
EVENT_NOTIFICATION = "notification"
EVENT_SIGNAL_CREATED = "signal.created"


def org_channel(org_id: uuid.UUID | str) -> str:
    return f"pulse:org:{org_id}"


async def enqueue_broadcast(session: AsyncSession, org_id: uuid.UUID, event: str, data: dict[str, Any]) -> None:
    await enqueue_job(
        session,
        lanes.REALTIME,
        "broadcast",
        RealtimeJobData(organization_id=org_id, event=event, data=data),
    )


async def publish_event(redis_client, org_id: uuid.UUID, event: str, data: dict[str, Any]) -> int:  # noqa: ANN001
    if redis_client is None:
        logger.debug("realtime_publish_skipped", extra={"extra": {"event": event, "reason": "redis_disabled"}})
        return 0
    message = {"type": event, "data": data, "timestamp": utcnow().isoformat()}
    return await publish_json(redis_client, org_channel(org_id), message)
