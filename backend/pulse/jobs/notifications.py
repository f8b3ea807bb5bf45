from __future__ import annotations

import logging
from typing import Any

from pulse.domain.errors import RetryableJobError, TerminalJobError
from pulse.domain.notifications.service import CHANNEL_IN_APP, create_notification
from pulse.domain.orgs.service import get_slack_webhook_url
from pulse.domain.queue.payloads import NotificationJobData, parse_payload
from pulse.infra.slack import send_slack_message
from pulse.jobs.context import JobContext

logger = logging.getLogger(__name__)


async def run(ctx: JobContext) -> dict[str, Any]:
    data = parse_payload(NotificationJobData, ctx.payload)
    if data.channel == CHANNEL_IN_APP:
        notification = await create_notification(
            ctx.session,
            org_id=data.organization_id,
            type=data.type,
            title=data.title,
            body=data.body,
            entity_type=data.entity_type,
            entity_id=data.entity_id,
        )
        return {"notification_id": str(notification.notification_id)}

    webhook_url = await get_slack_webhook_url(ctx.session, data.organization_id)
    if not webhook_url:
        logger.info("slack_notification_skipped", extra={"extra": {"org_id": str(data.organization_id)}})
        return {"skipped": "slack_not_configured"}
    text = data.title if data.blocks or not data.body else f"{data.title}\n{data.body}"
    result = await send_slack_message(webhook_url, text, blocks=data.blocks, transport=ctx.adapters.slack_transport)
    if result.ok:
        return {"sent": True}
    status = result.status_code or 0
    if 400 <= status < 500 and status != 429:
        raise TerminalJobError(result.error_code or "slack_rejected")
    raise RetryableJobError(result.error_code or "slack_failed", retry_after=result.retry_after)
