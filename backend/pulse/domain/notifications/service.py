from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.notifications.db_models import Notification
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import NotificationJobData
from pulse.domain.queue.service import enqueue_job
from pulse.domain.queue.side_effects import run_side_effect
from pulse.domain.realtime.service import EVENT_NOTIFICATION, enqueue_broadcast
from pulse.shared.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

CHANNEL_IN_APP = "in_app"
CHANNEL_SLACK = "slack"


def notification_to_dict(notification: Notification) -> dict[str, Any]:
    return {
        "id": str(notification.notification_id),
        "type": notification.type,
        "title": notification.title,
        "body": notification.body,
        "entityType": notification.entity_type,
        "entityId": notification.entity_id,
        "read": notification.read,
        "createdAt": ensure_utc(notification.created_at).isoformat() if notification.created_at else None,
    }


async def create_notification(
    session: AsyncSession,
    *,
    org_id: uuid.UUID,
    type: str,
    title: str,
    body: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> Notification:
    notification = Notification(
        notification_id=uuid.uuid4(),
        org_id=org_id,
        type=type,
        title=title,
        body=body,
        entity_type=entity_type,
        entity_id=entity_id,
        created_at=utcnow(),
    )
    session.add(notification)
    await session.flush()
    await run_side_effect(
        session,
        "notification_broadcast",
        lambda: enqueue_broadcast(
            session,
            org_id,
            EVENT_NOTIFICATION,
            {"id": str(notification.notification_id), "type": type, "title": title},
        ),
        context={"org_id": str(org_id)},
    )
    logger.info(
        "notification_created",
        extra={"extra": {"org_id": str(org_id), "type": type, "entity_id": entity_id}},
    )
    return notification


async def enqueue_notification(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    channel: str,
    type: str,
    title: str,
    body: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    blocks: list[dict[str, Any]] | None = None,
) -> None:
    await enqueue_job(
        session,
        lanes.NOTIFICATIONS,
        f"notify-{channel}",
        NotificationJobData(
            organization_id=org_id,
            channel=channel,
            type=type,
            title=title,
            body=body,
            entity_type=entity_type,
            entity_id=entity_id,
            blocks=blocks,
        ),
    )
