"""Webhook delivery handler.

A failed attempt is committed (delivery record plus any subscription state
change) before the handler raises, because the worker rolls back the handler's
session on error.
"""

from __future__ import annotations

import logging
from typing import Any

from pulse.domain.errors import RetryableJobError, TerminalJobError
from pulse.domain.queue.payloads import WebhookDeliveryJobData, parse_payload
from pulse.domain.webhooks.db_models import WebhookSubscription
from pulse.domain.webhooks.service import deliver_to_subscription, fire_event, process_subscription_delivery
from pulse.jobs.context import JobContext

logger = logging.getLogger(__name__)


async def _deliver_direct(ctx: JobContext, data: WebhookDeliveryJobData) -> dict[str, Any]:
    outcome = await deliver_to_subscription(
        data.target_url, data.secret, data.event, data.payload, transport=ctx.adapters.http_transport
    )
    if not outcome.success:
        raise RetryableJobError(outcome.error or "delivery_failed", retry_after=outcome.retry_after)
    return {"delivered": True, "status_code": outcome.status_code}


async def run(ctx: JobContext) -> dict[str, Any]:
    data = parse_payload(WebhookDeliveryJobData, ctx.payload)
    if data.subscription_id is None:
        if data.target_url and data.secret:
            return await _deliver_direct(ctx, data)
        enqueued = await fire_event(ctx.session, data.organization_id, data.event, data.payload)
        return {"enqueued": enqueued}

    subscription = await ctx.session.get(WebhookSubscription, data.subscription_id)
    if subscription is None or subscription.org_id != data.organization_id:
        logger.info("webhook_subscription_missing", extra={"extra": {"subscription_id": str(data.subscription_id)}})
        return {"skipped": "subscription_missing"}
    if not subscription.active:
        return {"skipped": "subscription_inactive"}

    result = await process_subscription_delivery(
        ctx.session,
        subscription,
        event=data.event,
        payload=data.payload,
        attempt=ctx.job.attempts_made,
        max_attempts=ctx.job.max_attempts,
        job_id=ctx.job_id,
        transport=ctx.adapters.http_transport,
    )
    if result.outcome.success:
        return {"delivered": True, "status_code": result.outcome.status_code, "recovered": result.transitioned}

    await ctx.session.commit()
    reason = result.outcome.error or "delivery_failed"
    if result.final:
        raise TerminalJobError(f"webhook_attempts_exhausted:{reason}")
    raise RetryableJobError(reason, retry_after=result.outcome.retry_after)
