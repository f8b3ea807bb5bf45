import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import func, select

from pulse.domain.errors import DomainError
from pulse.domain.queue import lanes
from pulse.domain.queue.db_models import QueuedJob
from pulse.domain.queue.service import OUTCOME_COMPLETED, OUTCOME_FAILED, OUTCOME_RETRY, claim_jobs, enqueue_job
from pulse.domain.webhooks import service as webhook_service
from pulse.domain.webhooks.db_models import (
    STATUS_FAILING,
    STATUS_HEALTHY,
    WebhookSubscription,
    WebhookSubscriptionDelivery,
)
from pulse.domain.webhooks.service import (
    create_subscription,
    delivery_to_dict,
    deliver_to_subscription,
    fire_event,
    get_subscription_with_stats,
    sign_body,
    subscription_to_dict,
    truncate_response,
)
from pulse.jobs.context import JobAdapters
from pulse.jobs.worker import execute_job
from pulse.settings import settings
from pulse.shared.clock import utcnow
from tests.conftest import seed_org


@pytest.fixture()
def transitions(monkeypatch):
    recorded: list[str] = []
    monkeypatch.setattr(webhook_service.metrics, "record_subscription_transition", recorded.append)
    return recorded


async def _drain_webhook_lane(session_maker, adapters, *, max_rounds=10):
    """Run the webhook lane until it is empty, jumping the clock past every backoff."""
    outcomes = []
    for round_number in range(max_rounds):
        async with session_maker() as session:
            jobs = await claim_jobs(
                session,
                lanes.WEBHOOK_DELIVERY,
                limit=10,
                worker_id="test",
                now=utcnow() + timedelta(days=round_number + 1),
            )
            job_ids = [job.job_id for job in jobs]
        if not job_ids:
            break
        for job_id in job_ids:
            outcomes.append(await execute_job(session_maker, job_id, adapters))
    return outcomes


def test_signature_is_hmac_sha256_of_body():
    body = b'{"event":"score.changed"}'
    expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert sign_body("s3cret", body) == f"sha256={expected}"


def test_truncate_response(monkeypatch):
    monkeypatch.setattr(settings, "webhook_response_max_chars", 5)
    assert truncate_response("abc") == "abc"
    assert truncate_response("abcdefgh") == "abcde... (truncated)"
    assert truncate_response(None) is None


@pytest.mark.anyio
async def test_delivery_posts_signed_json():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(202, text="accepted")

    outcome = await deliver_to_subscription(
        "https://hooks.example.com/in",
        "s3cret",
        "score.changed",
        {"event": "score.changed", "data": {"newScore": 82}},
        transport=httpx.MockTransport(handler),
    )
    request = captured["request"]
    assert outcome.success is True
    assert outcome.status_code == 202
    assert request.headers["X-Pulse-Event"] == "score.changed"
    assert request.headers["X-Pulse-Signature"] == sign_body("s3cret", request.content)
    assert json.loads(request.content)["data"] == {"newScore": 82}


@pytest.mark.anyio
async def test_rate_limited_delivery_carries_retry_after():
    transport = httpx.MockTransport(lambda request: httpx.Response(429, headers={"Retry-After": "120"}))
    outcome = await deliver_to_subscription("https://hooks.example.com/in", "s", "signal.created", {}, transport=transport)
    assert outcome.success is False
    assert outcome.error == "status_429"
    assert outcome.retry_after == 120.0


@pytest.mark.anyio
async def test_network_error_is_a_failed_outcome():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    outcome = await deliver_to_subscription(
        "https://hooks.example.com/in", "s", "signal.created", {}, transport=httpx.MockTransport(handler)
    )
    assert outcome.success is False
    assert outcome.error == "ConnectError"


@pytest.mark.anyio
async def test_unsupported_event_rejected(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        with pytest.raises(DomainError):
            await create_subscription(session, org.org_id, target_url="https://x.test", event="deal.closed")


@pytest.mark.anyio
async def test_fire_event_targets_active_matching_subscriptions(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        active = await create_subscription(session, org.org_id, target_url="https://a.test", event="score.changed")
        inactive = await create_subscription(session, org.org_id, target_url="https://b.test", event="score.changed")
        inactive.active = False
        await create_subscription(session, org.org_id, target_url="https://c.test", event="tier.changed")

        assert await fire_event(session, org.org_id, "score.changed", {"newScore": 1}, dedupe_key="evt") == 1
        assert await fire_event(session, org.org_id, "score.changed", {"newScore": 1}, dedupe_key="evt") == 0
        await session.commit()

        job = await session.scalar(select(QueuedJob).where(QueuedJob.lane == lanes.WEBHOOK_DELIVERY))
        assert job.payload["subscriptionId"] == str(active.subscription_id)
        assert job.payload["payload"]["organizationId"] == str(org.org_id)
        assert job.max_attempts == settings.webhook_max_attempts


@pytest.mark.anyio
async def test_subscription_fails_once_then_recovers(async_session_maker, transitions):
    async with async_session_maker() as session:
        org = await seed_org(session)
        subscription = await create_subscription(
            session, org.org_id, target_url="https://hooks.example.com/broken", event="score.changed"
        )
        subscription_id = subscription.subscription_id
        await fire_event(session, org.org_id, "score.changed", {"newScore": 10})
        await session.commit()

    failing = JobAdapters(http_transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down")))
    outcomes = await _drain_webhook_lane(async_session_maker, failing)
    assert outcomes == [OUTCOME_RETRY] * (settings.webhook_max_attempts - 1) + [OUTCOME_FAILED]

    async with async_session_maker() as session:
        subscription = await session.get(WebhookSubscription, subscription_id)
        assert subscription.status == STATUS_FAILING
        deliveries = (
            await session.scalars(
                select(WebhookSubscriptionDelivery).order_by(WebhookSubscriptionDelivery.attempt)
            )
        ).all()
        assert [delivery.attempt for delivery in deliveries] == list(range(1, settings.webhook_max_attempts + 1))
        assert not any(delivery.success for delivery in deliveries)
        job = await session.scalar(select(QueuedJob).where(QueuedJob.lane == lanes.WEBHOOK_DELIVERY))
        assert job.status == "failed"
        assert job.last_error.startswith("TerminalJobError: webhook_attempts_exhausted")
    assert transitions == [STATUS_FAILING]

    # another exhausted delivery does not transition again
    async with async_session_maker() as session:
        await fire_event(session, org.org_id, "score.changed", {"newScore": 11})
        await session.commit()
    await _drain_webhook_lane(async_session_maker, failing)
    assert transitions == [STATUS_FAILING]

    healthy = JobAdapters(http_transport=httpx.MockTransport(lambda request: httpx.Response(200, text="ok")))
    async with async_session_maker() as session:
        await fire_event(session, org.org_id, "score.changed", {"newScore": 12})
        await session.commit()
    assert await _drain_webhook_lane(async_session_maker, healthy) == [OUTCOME_COMPLETED]

    async with async_session_maker() as session:
        subscription = await session.get(WebhookSubscription, subscription_id)
        assert subscription.status == STATUS_HEALTHY
        stats = await get_subscription_with_stats(session, org.org_id, subscription_id)
    assert transitions == [STATUS_FAILING, STATUS_HEALTHY]
    assert stats["deliveryStats"]["total"] == 2 * settings.webhook_max_attempts + 1
    assert stats["deliveryStats"]["succeeded"] == 1


@pytest.mark.anyio
async def test_inactive_or_deleted_subscription_is_skipped(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        subscription = await create_subscription(session, org.org_id, target_url="https://x.test", event="signal.created")
        await fire_event(session, org.org_id, "signal.created", {"id": "1"})
        subscription.active = False
        await session.commit()

    calls = []
    transport = httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200))
    assert await _drain_webhook_lane(async_session_maker, JobAdapters(http_transport=transport)) == [OUTCOME_COMPLETED]
    assert calls == []
    async with async_session_maker() as session:
        assert await session.scalar(select(func.count()).select_from(WebhookSubscriptionDelivery)) == 0


@pytest.mark.anyio
async def test_direct_delivery_without_subscription(async_session_maker):
    org_id = uuid.uuid4()
    async with async_session_maker() as session:
        await enqueue_job(
            session,
            lanes.WEBHOOK_DELIVERY,
            "deliver-webhook",
            {
                "organizationId": str(org_id),
                "event": "signal.created",
                "payload": {"ok": True},
                "targetUrl": "https://direct.test/hook",
                "secret": "s",
            },
        )
        await session.commit()
    calls = []
    transport = httpx.MockTransport(lambda request: calls.append(str(request.url)) or httpx.Response(204))
    assert await _drain_webhook_lane(async_session_maker, JobAdapters(http_transport=transport)) == [OUTCOME_COMPLETED]
    assert calls == ["https://direct.test/hook"]


def test_serialized_timestamps_carry_utc_offset():
    naive = datetime(2026, 3, 10, 12, 0)
    subscription = WebhookSubscription(
        subscription_id=uuid.uuid4(),
        target_url="https://hooks.example.com/in",
        event="score.changed",
        active=True,
        status=STATUS_HEALTHY,
        created_at=naive,
    )
    delivery = WebhookSubscriptionDelivery(delivery_id=uuid.uuid4(), event="score.changed", created_at=naive)
    assert subscription_to_dict(subscription)["createdAt"] == "2026-03-10T12:00:00+00:00"
    assert delivery_to_dict(delivery)["createdAt"] == "2026-03-10T12:00:00+00:00"
