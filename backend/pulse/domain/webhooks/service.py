from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.errors import DomainError, NotFoundError
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import WebhookDeliveryJobData
from pulse.domain.queue.service import enqueue_job
from pulse.domain.webhooks.db_models import (
    STATUS_FAILING,
    STATUS_HEALTHY,
    WebhookSubscription,
    WebhookSubscriptionDelivery,
)
from pulse.infra.metrics import metrics
from pulse.infra.slack import parse_retry_after
from pulse.settings import settings
from pulse.shared.clock import ensure_utc, utcnow
from pulse.shared.numbers import round_half_up

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_TYPES = (
    "signal.created",
    "contact.created",
    "contact.updated",
    "company.created",
    "deal.created",
    "deal.stage_changed",
    "score.changed",
    "tier.changed",
    "signal.anomaly",
)

_STATS_SAMPLE = 50
_RECENT_DELIVERIES = 10
_TRUNCATED_SUFFIX = "... (truncated)"

TEST_PAYLOADS: dict[str, dict[str, Any]] = {
    "signal.created": {
        "id": "sig_test_123",
        "type": "repo_clone",
        "actorId": "contact_test_456",
        "accountId": "company_test_789",
        "metadata": {"repo": "acme/sdk", "action": "clone"},
    },
    "contact.created": {
        "id": "contact_test_456",
        "firstName": "Jane",
        "lastName": "Doe",
        "email": "jane@example.com",
        "companyId": "company_test_789",
    },
    "contact.updated": {
        "id": "contact_test_456",
        "firstName": "Jane",
        "lastName": "Doe",
        "email": "jane@example.com",
        "title": "Senior Engineer",
    },
    "company.created": {"id": "company_test_789", "name": "Acme Corp", "domain": "acme.com", "industry": "Technology"},
    "deal.created": {
        "id": "deal_test_101",
        "title": "Acme Corp - Pro Plan",
        "amount": 9500,
        "stage": "IDENTIFIED",
        "companyId": "company_test_789",
    },
    "deal.stage_changed": {
        "id": "deal_test_101",
        "title": "Acme Corp - Pro Plan",
        "amount": 9500,
        "stage": "SALES_QUALIFIED",
        "previousStage": "EXPANSION_SIGNAL",
        "companyId": "company_test_789",
    },
    "score.changed": {
        "accountId": "company_test_789",
        "accountName": "Acme Corp",
        "oldScore": 45,
        "newScore": 82,
        "oldTier": "WARM",
        "newTier": "HOT",
    },
    "tier.changed": {
        "accountId": "company_test_789",
        "accountName": "Acme Corp",
        "oldScore": 45,
        "newScore": 82,
        "oldTier": "WARM",
        "newTier": "HOT",
    },
    "signal.anomaly": {
        "accountId": "company_test_789",
        "accountName": "Acme Corp",
        "anomalyType": "SPIKE",
        "severity": "high",
        "todayCount": 16,
        "mean": 10.0,
        "stddev": 2.0,
        "zScore": 3.0,
    },
}


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    status_code: int | None = None
    response: str | None = None
    error: str | None = None
    retry_after: float | None = None


def generate_secret() -> str:
    return secrets.token_hex(32)


def encode_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_headers(secret: str, event: str, body: bytes) -> dict[str, str]:
    prefix = settings.webhook_signature_header_prefix
    return {
        "Content-Type": "application/json",
        f"{prefix}-Signature": sign_body(secret, body),
        f"{prefix}-Event": event,
    }


def truncate_response(text: str | None) -> str | None:
    if text is None:
        return None
    limit = settings.webhook_response_max_chars
    if len(text) <= limit:
        return text
    return text[:limit] + _TRUNCATED_SUFFIX


def build_envelope(org_id: uuid.UUID, event: str, data: dict[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    return {
        "event": event,
        "timestamp": (now or utcnow()).isoformat(),
        "organizationId": str(org_id),
        "data": data,
    }


def subscription_to_dict(subscription: WebhookSubscription, *, include_secret: bool = False) -> dict[str, Any]:
    data = {
        "id": str(subscription.subscription_id),
        "targetUrl": subscription.target_url,
        "event": subscription.event,
        "hookId": subscription.hook_id,
        "active": subscription.active,
        "status": subscription.status,
        "createdAt": ensure_utc(subscription.created_at).isoformat() if subscription.created_at else None,
    }
    if include_secret:
        data["secret"] = subscription.secret
    return data


def delivery_to_dict(delivery: WebhookSubscriptionDelivery) -> dict[str, Any]:
    return {
        "id": str(delivery.delivery_id),
        "event": delivery.event,
        "statusCode": delivery.status_code,
        "response": delivery.response,
        "success": delivery.success,
        "attempt": delivery.attempt,
        "maxAttempts": delivery.max_attempts,
        "jobId": delivery.job_id,
        "createdAt": ensure_utc(delivery.created_at).isoformat() if delivery.created_at else None,
    }


async def create_subscription(
    session: AsyncSession, org_id: uuid.UUID, *, target_url: str, event: str, hook_id: str | None = None
) -> WebhookSubscription:
    if event not in WEBHOOK_EVENT_TYPES:
        raise DomainError(
            detail=f"Unsupported event type: {event}. Supported: {', '.join(WEBHOOK_EVENT_TYPES)}",
            title="Unsupported event",
        )
    subscription = WebhookSubscription(
        subscription_id=uuid.uuid4(),
        org_id=org_id,
        target_url=target_url,
        event=event,
        hook_id=hook_id or None,
        secret=generate_secret(),
        active=True,
        status=STATUS_HEALTHY,
        created_at=utcnow(),
    )
    session.add(subscription)
    await session.flush()
    logger.info(
        "webhook_subscription_created",
        extra={"extra": {"org_id": str(org_id), "event": event, "subscription_id": str(subscription.subscription_id)}},
    )
    return subscription


async def get_subscription(session: AsyncSession, org_id: uuid.UUID, subscription_id: uuid.UUID) -> WebhookSubscription:
    subscription = await session.scalar(
        select(WebhookSubscription).where(
            WebhookSubscription.subscription_id == subscription_id,
            WebhookSubscription.org_id == org_id,
        )
    )
    if subscription is None:
        raise NotFoundError(detail="Webhook subscription not found")
    return subscription


async def list_subscriptions(session: AsyncSession, org_id: uuid.UUID) -> list[WebhookSubscription]:
    result = await session.scalars(
        select(WebhookSubscription)
        .where(WebhookSubscription.org_id == org_id)
        .order_by(WebhookSubscription.created_at.desc())
    )
    return list(result.all())


async def toggle_subscription(
    session: AsyncSession, org_id: uuid.UUID, subscription_id: uuid.UUID, active: bool
) -> WebhookSubscription:
    subscription = await get_subscription(session, org_id, subscription_id)
    subscription.active = active
    await session.flush()
    return subscription


async def delete_subscription(session: AsyncSession, org_id: uuid.UUID, subscription_id: uuid.UUID) -> None:
    subscription = await get_subscription(session, org_id, subscription_id)
    await session.delete(subscription)
    await session.flush()


async def list_deliveries(
    session: AsyncSession, org_id: uuid.UUID, subscription_id: uuid.UUID, *, limit: int = 20
) -> list[WebhookSubscriptionDelivery]:
    await get_subscription(session, org_id, subscription_id)
    result = await session.scalars(
        select(WebhookSubscriptionDelivery)
        .where(WebhookSubscriptionDelivery.subscription_id == subscription_id)
        .order_by(WebhookSubscriptionDelivery.created_at.desc())
        .limit(limit)
    )
    return list(result.all())


async def get_subscription_with_stats(
    session: AsyncSession, org_id: uuid.UUID, subscription_id: uuid.UUID, *, now: datetime | None = None
) -> dict[str, Any]:
    subscription = await get_subscription(session, org_id, subscription_id)
    window_days = settings.webhook_stats_window_days
    since = (now or utcnow()) - timedelta(days=window_days)
    deliveries = list(
        (
            await session.scalars(
                select(WebhookSubscriptionDelivery)
                .where(
                    WebhookSubscriptionDelivery.subscription_id == subscription_id,
                    WebhookSubscriptionDelivery.created_at >= since,
                )
                .order_by(WebhookSubscriptionDelivery.created_at.desc())
                .limit(_STATS_SAMPLE)
            )
        ).all()
    )
    total = len(deliveries)
    succeeded = sum(1 for delivery in deliveries if delivery.success)
    failed = total - succeeded
    return {
        **subscription_to_dict(subscription),
        "deliveryStats": {
            "period": f"{window_days}d",
            "total": total,
            "succeeded": succeeded,
            "failed": failed,
            "failureRate": round_half_up(failed / total * 100) if total else 0,
        },
        "recentDeliveries": [delivery_to_dict(delivery) for delivery in deliveries[:_RECENT_DELIVERIES]],
    }


async def fire_event(
    session: AsyncSession,
    org_id: uuid.UUID,
    event: str,
    data: dict[str, Any],
    *,
    dedupe_key: str | None = None,
) -> int:
    """Enqueue one delivery task per active subscription for ``event``; returns the count enqueued."""
    subscriptions = (
        await session.scalars(
            select(WebhookSubscription).where(
                WebhookSubscription.org_id == org_id,
                WebhookSubscription.event == event,
                WebhookSubscription.active.is_(True),
            )
        )
    ).all()
    if not subscriptions:
        return 0
    envelope = build_envelope(org_id, event, data)
    enqueued = 0
    for subscription in subscriptions:
        job_key = f"webhook:{subscription.subscription_id}:{dedupe_key}" if dedupe_key else None
        result = await enqueue_job(
            session,
            lanes.WEBHOOK_DELIVERY,
            "deliver-subscription-webhook",
            WebhookDeliveryJobData(
                organization_id=org_id,
                event=event,
                payload=envelope,
                subscription_id=subscription.subscription_id,
                target_url=subscription.target_url,
                secret=subscription.secret,
            ),
            job_key=job_key,
        )
        if result.created:
            enqueued += 1
    logger.info("webhook_event_fired", extra={"extra": {"org_id": str(org_id), "event": event, "enqueued": enqueued}})
    return enqueued


async def deliver_to_subscription(
    target_url: str,
    secret: str,
    event: str,
    payload: dict[str, Any],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DeliveryOutcome:
    body = encode_body(payload)
    headers = build_headers(secret, event, body)
    try:
        async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds, transport=transport) as client:
            response = await client.post(target_url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        return DeliveryOutcome(success=False, error=type(exc).__name__, response=truncate_response(str(exc) or None))
    success = 200 <= response.status_code < 300
    retry_after = None
    if response.status_code == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
    return DeliveryOutcome(
        success=success,
        status_code=response.status_code,
        response=truncate_response(response.text),
        error=None if success else f"status_{response.status_code}",
        retry_after=retry_after,
    )


async def record_delivery(
    session: AsyncSession,
    subscription_id: uuid.UUID,
    *,
    event: str,
    payload: dict[str, Any],
    outcome: DeliveryOutcome,
    attempt: int,
    max_attempts: int,
    job_id: str | None = None,
) -> WebhookSubscriptionDelivery:
    delivery = WebhookSubscriptionDelivery(
        delivery_id=uuid.uuid4(),
        subscription_id=subscription_id,
        event=event,
        payload=payload,
        status_code=outcome.status_code,
        response=outcome.response if outcome.response is not None else outcome.error,
        success=outcome.success,
        attempt=attempt,
        max_attempts=max_attempts,
        job_id=job_id,
        created_at=utcnow(),
    )
    session.add(delivery)
    await session.flush()
    metrics.record_webhook_delivery(event, "success" if outcome.success else "failure")
    return delivery


async def mark_failing(session: AsyncSession, subscription: WebhookSubscription) -> bool:
    if subscription.status == STATUS_FAILING:
        return False
    subscription.status = STATUS_FAILING
    await session.flush()
    metrics.record_subscription_transition(STATUS_FAILING)
    logger.warning(
        "webhook_subscription_failing",
        extra={"extra": {"subscription_id": str(subscription.subscription_id), "event": subscription.event}},
    )
    return True


async def mark_healthy(session: AsyncSession, subscription: WebhookSubscription) -> bool:
    if subscription.status == STATUS_HEALTHY:
        return False
    subscription.status = STATUS_HEALTHY
    await session.flush()
    metrics.record_subscription_transition(STATUS_HEALTHY)
    logger.info(
        "webhook_subscription_recovered",
        extra={"extra": {"subscription_id": str(subscription.subscription_id), "event": subscription.event}},
    )
    return True


@dataclass(frozen=True)
class AttemptResult:
    outcome: DeliveryOutcome
    final: bool
    transitioned: bool


async def process_subscription_delivery(
    session: AsyncSession,
    subscription: WebhookSubscription,
    *,
    event: str,
    payload: dict[str, Any],
    attempt: int,
    max_attempts: int,
    job_id: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AttemptResult:
    """Run one delivery attempt and apply the HEALTHY/FAILING transitions.

    ``final`` is true when no further attempt should be made: either the
    delivery succeeded or ``attempt`` reached ``max_attempts``.
    """
    outcome = await deliver_to_subscription(
        subscription.target_url, subscription.secret, event, payload, transport=transport
    )
    await record_delivery(
        session,
        subscription.subscription_id,
        event=event,
        payload=payload,
        outcome=outcome,
        attempt=attempt,
        max_attempts=max_attempts,
        job_id=job_id,
    )
    if outcome.success:
        transitioned = await mark_healthy(session, subscription)
        return AttemptResult(outcome=outcome, final=True, transitioned=transitioned)
    if attempt >= max_attempts:
        transitioned = await mark_failing(session, subscription)
        return AttemptResult(outcome=outcome, final=True, transitioned=transitioned)
    logger.info(
        "webhook_delivery_retry",
        extra={
            "extra": {
                "subscription_id": str(subscription.subscription_id),
                "attempt": attempt,
                "max_attempts": max_attempts,
                "reason": outcome.error,
            }
        },
    )
    return AttemptResult(outcome=outcome, final=False, transitioned=False)


async def send_test_webhook(
    session: AsyncSession,
    org_id: uuid.UUID,
    subscription_id: uuid.UUID,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    subscription = await get_subscription(session, org_id, subscription_id)
    sample = {**TEST_PAYLOADS.get(subscription.event, {"message": "Test event", "event": subscription.event})}
    sample["_test"] = True
    envelope = build_envelope(org_id, subscription.event, sample)
    outcome = await deliver_to_subscription(
        subscription.target_url, subscription.secret, subscription.event, envelope, transport=transport
    )
    await record_delivery(
        session,
        subscription.subscription_id,
        event=subscription.event,
        payload=envelope,
        outcome=outcome,
        attempt=1,
        max_attempts=1,
    )
    return {
        "success": outcome.success,
        "statusCode": outcome.status_code,
        "error": outcome.error,
    }
