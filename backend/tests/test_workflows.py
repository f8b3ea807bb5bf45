import pytest
from sqlalchemy import select

from pulse.domain.errors import DomainError
from pulse.domain.notifications.db_models import Notification
from pulse.domain.queue import lanes
from pulse.domain.queue.db_models import QueuedJob
from pulse.domain.queue.payloads import WorkflowExecutionJobData
from pulse.domain.queue.service import OUTCOME_COMPLETED, claim_jobs, enqueue_job
from pulse.domain.workflows.db_models import Workflow
from pulse.domain.workflows.service import (
    create_workflow,
    matches_filters,
    process_workflow_event,
    render_template,
)
from pulse.jobs.context import JobAdapters
from pulse.jobs.worker import execute_job
from tests.conftest import seed_org


def test_render_template_keeps_unknown_placeholders():
    rendered = render_template("{accountName} moved to {newTier} ({owner})", {"accountName": "Globex", "newTier": "HOT"})
    assert rendered == "Globex moved to HOT ({owner})"


def test_filters_require_every_key_to_match():
    data = {"newTier": "HOT", "oldTier": "WARM"}
    assert matches_filters(None, data)
    assert matches_filters({"newTier": "HOT"}, data)
    assert not matches_filters({"newTier": "HOT", "oldTier": "COLD"}, data)


@pytest.mark.anyio
async def test_unsupported_event_or_action_rejected(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        with pytest.raises(DomainError):
            await create_workflow(session, org.org_id, name="x", trigger_event="deal_won", action_type="notify")
        with pytest.raises(DomainError):
            await create_workflow(session, org.org_id, name="x", trigger_event="score_changed", action_type="email")


@pytest.mark.anyio
async def test_matching_workflows_run_their_actions(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        notify = await create_workflow(
            session,
            org.org_id,
            name="Hot accounts",
            trigger_event="score_changed",
            action_type="notify",
            action_config={"title": "{accountName} is {newTier}", "message": "Score {score}"},
            filters={"newTier": "HOT"},
        )
        await create_workflow(
            session,
            org.org_id,
            name="Cold accounts",
            trigger_event="score_changed",
            action_type="notify",
            filters={"newTier": "COLD"},
        )
        await create_workflow(
            session,
            org.org_id,
            name="Slack hot",
            trigger_event="score_changed",
            action_type="slack",
            action_config={"title": "{accountName} heated up"},
        )
        await create_workflow(
            session, org.org_id, name="Off", trigger_event="score_changed", action_type="notify", enabled=False
        )

        result = await process_workflow_event(
            session,
            org.org_id,
            "score_changed",
            {"accountId": "acc-1", "accountName": "Globex", "newTier": "HOT", "score": 84},
        )
        await session.commit()

        assert result == {"matched": 2, "executed": 2, "failed": 0}
        notification = await session.scalar(select(Notification).where(Notification.type == "workflow"))
        assert notification.title == "Globex is HOT"
        assert notification.body == "Score 84"
        assert notification.entity_id == "acc-1"
        slack_job = await session.scalar(select(QueuedJob).where(QueuedJob.name == "notify-slack"))
        assert slack_job.payload["title"] == "Globex heated up"
        refreshed = await session.get(Workflow, notify.workflow_id)
        assert refreshed.run_count == 1
        assert refreshed.last_run_at is not None


@pytest.mark.anyio
async def test_workflow_job_runs_through_worker(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        await create_workflow(
            session,
            org.org_id,
            name="Every signal",
            trigger_event="signal_received",
            action_type="notify",
            action_config={"title": "New {type} signal"},
        )
        await enqueue_job(
            session,
            lanes.WORKFLOW_EXECUTION,
            "signal_received",
            WorkflowExecutionJobData(organization_id=org.org_id, event="signal_received", data={"type": "login"}),
        )
        await session.commit()
        job = (await claim_jobs(session, lanes.WORKFLOW_EXECUTION, limit=1, worker_id="test"))[0]

    assert await execute_job(async_session_maker, job.job_id, JobAdapters()) == OUTCOME_COMPLETED
    async with async_session_maker() as session:
        stored = await session.get(QueuedJob, job.job_id)
        titles = (await session.scalars(select(Notification.title))).all()
    assert stored.result == {"matched": 1, "executed": 1, "failed": 0}
    assert titles == ["New login signal"]
