import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from pulse.domain.errors import DomainError
from pulse.domain.queue import lanes
from pulse.domain.queue.db_models import QueuedJob
from pulse.domain.queue.lanes import get_lane
from pulse.domain.queue.payloads import ScoreComputationJobData
from pulse.domain.queue.service import (
    OUTCOME_FAILED,
    OUTCOME_RETRY,
    backoff_delay,
    claim_jobs,
    complete_job,
    due_candidates,
    enqueue_job,
    fail_job,
    list_failed_jobs,
    purge_finished_jobs,
    queue_summary,
    recover_stalled_jobs,
    retry_failed_job,
    try_claim_job,
)
from pulse.shared.clock import ensure_utc

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _score_payload(org_id=None, account_id=None):
    return ScoreComputationJobData(organization_id=org_id or uuid.uuid4(), account_id=account_id or uuid.uuid4())


def test_backoff_doubles_per_attempt():
    assert backoff_delay(1, 2.0) == timedelta(seconds=2)
    assert backoff_delay(2, 2.0) == timedelta(seconds=4)
    assert backoff_delay(4, 2.0) == timedelta(seconds=16)


def test_lane_defaults():
    assert get_lane(lanes.WEBHOOK_DELIVERY).max_attempts == 5
    assert get_lane(lanes.WEBHOOK_DELIVERY).backoff_seconds == 30.0
    assert get_lane(lanes.MAINTENANCE).max_attempts == 2
    assert get_lane(lanes.SCORE_COMPUTATION).max_attempts == 3
    with pytest.raises(ValueError):
        get_lane("nope")


@pytest.mark.anyio
async def test_job_key_deduplicates_live_jobs(async_session_maker):
    async with async_session_maker() as session:
        first = await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), job_key="k1", now=T0)
        second = await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), job_key="k1", now=T0)
        other_lane = await enqueue_job(session, lanes.ALERT_EVALUATION, "x", {"organizationId": str(uuid.uuid4())}, job_key="k1", now=T0)
        await session.commit()
        assert first.created is True
        assert second.created is False
        assert second.job.job_id == first.job.job_id
        assert other_lane.created is True

        await complete_job(session, first.job, {"ok": True}, now=T0)
        await session.commit()
        third = await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), job_key="k1", now=T0)
        await session.commit()
        assert third.created is True
        assert third.job.job_id != first.job.job_id


@pytest.mark.anyio
async def test_enqueue_derives_org_and_lane_defaults(async_session_maker):
    org_id = uuid.uuid4()
    async with async_session_maker() as session:
        result = await enqueue_job(session, lanes.WEBHOOK_DELIVERY, "deliver", {"organizationId": str(org_id)}, delay_seconds=10, now=T0)
        await session.commit()
        job = result.job
        assert job.org_id == org_id
        assert job.max_attempts == 5
        assert job.backoff_seconds == 30.0
        assert ensure_utc(job.run_at) == T0 + timedelta(seconds=10)


@pytest.mark.anyio
async def test_claim_skips_future_jobs_and_counts_attempts(async_session_maker):
    async with async_session_maker() as session:
        due = await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), now=T0)
        await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), delay_seconds=60, now=T0)
        await session.commit()

        claimed = await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=10, worker_id="w1", now=T0)
        assert [job.job_id for job in claimed] == [due.job.job_id]
        assert claimed[0].status == "active"
        assert claimed[0].attempts_made == 1
        assert claimed[0].locked_by == "w1"
        assert await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=10, worker_id="w2", now=T0) == []


@pytest.mark.anyio
async def test_group_key_serializes_work(async_session_maker):
    org_id, account_id = uuid.uuid4(), uuid.uuid4()
    group = f"score:{org_id}:{account_id}"
    async with async_session_maker() as session:
        for _ in range(2):
            await enqueue_job(
                session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(org_id, account_id), group_key=group, now=T0
            )
        await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), group_key="score:other", now=T0)
        await session.commit()

        first_batch = await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=10, worker_id="w1", now=T0)
        assert sorted(job.group_key for job in first_batch) == sorted([group, "score:other"])

        assert await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=10, worker_id="w2", now=T0) == []

        for job in first_batch:
            await complete_job(session, job, now=T0)
        await session.commit()
        second_batch = await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=10, worker_id="w2", now=T0)
        assert [job.group_key for job in second_batch] == [group]


@pytest.mark.anyio
async def test_group_claim_is_exclusive_across_workers(async_session_maker):
    group = f"score:{uuid.uuid4()}:{uuid.uuid4()}"
    async with async_session_maker() as setup:
        jobs = [
            (await enqueue_job(setup, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), group_key=group, now=T0)).job
            for _ in range(2)
        ]
        await setup.commit()

    async with async_session_maker() as worker_a, async_session_maker() as worker_b:
        seen_by_a = await due_candidates(worker_a, lanes.SCORE_COMPUTATION, limit=10, now=T0)
        seen_by_b = await due_candidates(worker_b, lanes.SCORE_COMPUTATION, limit=10, now=T0)
        await worker_a.commit()
        await worker_b.commit()
        assert {job.job_id for job in seen_by_a} == {job.job_id for job in seen_by_b} == {job.job_id for job in jobs}

        assert await try_claim_job(worker_a, jobs[0].job_id, worker_id="host-a", now=T0) is True
        await worker_a.commit()
        assert await try_claim_job(worker_b, jobs[1].job_id, worker_id="host-b", now=T0) is False
        await worker_b.commit()

    async with async_session_maker() as check:
        statuses = dict((await check.execute(select(QueuedJob.job_id, QueuedJob.status))).all())
        assert statuses == {jobs[0].job_id: "active", jobs[1].job_id: "queued"}
        second = await check.get(QueuedJob, jobs[1].job_id)
        assert second.attempts_made == 0


@pytest.mark.anyio
async def test_fail_job_retries_with_backoff_then_fails(async_session_maker):
    async with async_session_maker() as session:
        await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), backoff_seconds=5, now=T0)
        await session.commit()

        [job] = await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=1, worker_id="w", now=T0)
        assert await fail_job(session, job, "boom", now=T0) == OUTCOME_RETRY
        await session.commit()
        assert job.status == "queued"
        assert ensure_utc(job.run_at) == T0 + timedelta(seconds=5)
        assert job.last_error == "boom"

        later = T0 + timedelta(seconds=5)
        [job] = await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=1, worker_id="w", now=later)
        assert await fail_job(session, job, "boom", retry_after=60, now=later) == OUTCOME_RETRY
        await session.commit()
        assert ensure_utc(job.run_at) == later + timedelta(seconds=60)

        last = later + timedelta(seconds=60)
        [job] = await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=1, worker_id="w", now=last)
        assert job.attempts_made == 3
        assert await fail_job(session, job, "boom", now=last) == OUTCOME_FAILED
        await session.commit()
        assert job.status == "failed"
        assert ensure_utc(job.finished_at) == last


@pytest.mark.anyio
async def test_terminal_failure_skips_retries(async_session_maker):
    async with async_session_maker() as session:
        await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), now=T0)
        await session.commit()
        [job] = await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=1, worker_id="w", now=T0)
        assert await fail_job(session, job, "bad payload", terminal=True, now=T0) == OUTCOME_FAILED
        await session.commit()
        assert job.attempts_made == 1
        assert job.status == "failed"


@pytest.mark.anyio
async def test_recover_stalled_jobs(async_session_maker):
    async with async_session_maker() as session:
        await enqueue_job(session, lanes.SCORE_COMPUTATION, "compute-score", _score_payload(), now=T0)
        await session.commit()
        [job] = await claim_jobs(session, lanes.SCORE_COMPUTATION, limit=1, worker_id="w", now=T0)
        job_id = job.job_id

        assert await recover_stalled_jobs(session, lanes.SCORE_COMPUTATION, stalled_after_seconds=600, now=T0) == 0
        recovered = await recover_stalled_jobs(
            session, lanes.SCORE_COMPUTATION, stalled_after_seconds=600, now=T0 + timedelta(minutes=11)
        )
        await session.commit()
        assert recovered == 1
        refreshed = await session.get(QueuedJob, job_id, populate_existing=True)
        assert refreshed.status == "queued"
        assert refreshed.locked_by is None


@pytest.mark.anyio
async def test_manual_retry_and_summaries(async_session_maker):
    async with async_session_maker() as session:
        result = await enqueue_job(session, lanes.NOTIFICATIONS, "notify-in_app", {"organizationId": str(uuid.uuid4())}, job_key="n1", now=T0)
        await session.commit()
        [job] = await claim_jobs(session, lanes.NOTIFICATIONS, limit=1, worker_id="w", now=T0)
        await fail_job(session, job, "nope", terminal=True, now=T0)
        await session.commit()

        failed = await list_failed_jobs(session, lane=lanes.NOTIFICATIONS)
        assert [item.job_id for item in failed] == [result.job.job_id]
        assert await queue_summary(session) == {lanes.NOTIFICATIONS: {"failed": 1}}

        retried = await retry_failed_job(session, job.job_id, now=T0)
        await session.commit()
        assert retried.status == "queued"
        assert retried.attempts_made == 0

        with pytest.raises(DomainError):
            await retry_failed_job(session, job.job_id, now=T0)


@pytest.mark.anyio
async def test_purge_keeps_failed_and_recent_jobs(async_session_maker):
    async with async_session_maker() as session:
        old = await enqueue_job(session, lanes.SCORE_COMPUTATION, "a", _score_payload(), now=T0)
        recent = await enqueue_job(session, lanes.SCORE_COMPUTATION, "b", _score_payload(), now=T0)
        broken = await enqueue_job(session, lanes.SCORE_COMPUTATION, "c", _score_payload(), now=T0)
        await complete_job(session, old.job, now=T0 - timedelta(days=10))
        await complete_job(session, recent.job, now=T0)
        await fail_job(session, broken.job, "x", terminal=True, now=T0 - timedelta(days=10))
        await session.commit()

        purged = await purge_finished_jobs(session, older_than=T0 - timedelta(days=7))
        await session.commit()
        assert purged == 1
        remaining = await session.scalar(select(func.count()).select_from(QueuedJob))
        assert remaining == 2
