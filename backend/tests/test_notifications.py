import json

import httpx
import pytest
from sqlalchemy import select

from pulse.domain.notifications.db_models import Notification
from pulse.domain.orgs.db_models import OrgSettings
from pulse.domain.queue import lanes
from pulse.domain.queue.db_models import STATUS_FAILED, STATUS_QUEUED, QueuedJob
from pulse.domain.queue.payloads import NotificationJobData
from pulse.domain.queue.service import OUTCOME_COMPLETED, OUTCOME_FAILED, OUTCOME_RETRY, claim_jobs, enqueue_job
from pulse.jobs.context import JobAdapters
from pulse.jobs.worker import execute_job
from tests.conftest import seed_org

SLACK_URL = "https://hooks.slack.test/services/T000/B000/XXXX"


async def _run_notification(async_session_maker, adapters, *, channel, slack_url=None):
    async with async_session_maker() as session:
        org = await seed_org(session)
        if slack_url:
            session.add(OrgSettings(org_id=org.org_id, slack_webhook_url=slack_url))
        await enqueue_job(
            session,
            lanes.NOTIFICATIONS,
            f"notify-{channel}",
            NotificationJobData(
                organization_id=org.org_id,
                channel=channel,
                type="tier_change",
                title="Globex upgraded",
                body="Score 84",
                entity_type="company",
                entity_id="acc-1",
            ),
        )
        await session.commit()
        job = (await claim_jobs(session, lanes.NOTIFICATIONS, limit=1, worker_id="test"))[0]
    outcome = await execute_job(async_session_maker, job.job_id, adapters)
    async with async_session_maker() as session:
        stored = await session.get(QueuedJob, job.job_id)
    return outcome, stored


def _slack_transport(requests, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, text="ok")

    return httpx.MockTransport(handler)


@pytest.mark.anyio
async def test_in_app_notification_created(async_session_maker):
    outcome, job = await _run_notification(async_session_maker, JobAdapters(), channel="in_app")
    assert outcome == OUTCOME_COMPLETED
    async with async_session_maker() as session:
        notification = await session.scalar(select(Notification))
    assert notification.title == "Globex upgraded"
    assert job.result == {"notification_id": str(notification.notification_id)}


@pytest.mark.anyio
async def test_slack_skipped_without_webhook_url(async_session_maker):
    requests = []
    adapters = JobAdapters(slack_transport=_slack_transport(requests))
    outcome, job = await _run_notification(async_session_maker, adapters, channel="slack")
    assert outcome == OUTCOME_COMPLETED
    assert job.result == {"skipped": "slack_not_configured"}
    assert requests == []


@pytest.mark.anyio
async def test_slack_message_posted(async_session_maker):
    requests = []
    adapters = JobAdapters(slack_transport=_slack_transport(requests))
    outcome, job = await _run_notification(async_session_maker, adapters, channel="slack", slack_url=SLACK_URL)
    assert outcome == OUTCOME_COMPLETED
    assert job.result == {"sent": True}
    assert str(requests[0].url) == SLACK_URL
    assert json.loads(requests[0].content) == {"text": "Globex upgraded\nScore 84"}


@pytest.mark.anyio
async def test_slack_client_error_is_terminal(async_session_maker):
    adapters = JobAdapters(slack_transport=_slack_transport([], status_code=400))
    outcome, job = await _run_notification(async_session_maker, adapters, channel="slack", slack_url=SLACK_URL)
    assert outcome == OUTCOME_FAILED
    assert job.status == STATUS_FAILED
    assert job.last_error == "TerminalJobError: status_400"


@pytest.mark.anyio
async def test_slack_server_error_is_retried(async_session_maker):
    adapters = JobAdapters(slack_transport=_slack_transport([], status_code=503))
    outcome, job = await _run_notification(async_session_maker, adapters, channel="slack", slack_url=SLACK_URL)
    assert outcome == OUTCOME_RETRY
    assert job.status == STATUS_QUEUED
    assert job.attempts_made == 1
