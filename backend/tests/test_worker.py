import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from pulse.domain.ops.db_models import WorkerHeartbeat
from pulse.domain.queue import lanes
from pulse.domain.queue.db_models import STATUS_ACTIVE, STATUS_COMPLETED, STATUS_FAILED, QueuedJob
from pulse.domain.queue.lanes import get_lane
from pulse.domain.queue.payloads import MaintenanceJobData, RealtimeJobData
from pulse.domain.queue.service import OUTCOME_FAILED, enqueue_job
from pulse.jobs.context import JobAdapters
from pulse.jobs.heartbeat import stale_heartbeats
from pulse.jobs.worker import LaneWorker, WorkerSupervisor, execute_job
from pulse.shared.clock import utcnow
from tests.conftest import seed_org


def _finished_job(finished_at, *, status=STATUS_COMPLETED):
    return QueuedJob(
        job_id=uuid.uuid4(),
        lane=lanes.REALTIME,
        name="broadcast",
        payload={},
        status=status,
        attempts_made=1,
        max_attempts=3,
        backoff_seconds=1,
        run_at=finished_at,
        finished_at=finished_at,
    )


@pytest.mark.anyio
async def test_lane_worker_runs_retention_job(async_session_maker):
    now = utcnow()
    async with async_session_maker() as session:
        stale = _finished_job(now - timedelta(days=30))
        recent = _finished_job(now - timedelta(hours=1))
        kept_failure = _finished_job(now - timedelta(days=30), status=STATUS_FAILED)
        session.add_all([stale, recent, kept_failure])
        result = await enqueue_job(session, lanes.MAINTENANCE, "job-retention", MaintenanceJobData())
        await session.commit()
        retention_id = result.job.job_id

    worker = LaneWorker(get_lane(lanes.MAINTENANCE), async_session_maker, JobAdapters(), worker_id="test:maintenance")
    assert await worker.run_once() == 1
    assert await worker.run_once() == 0

    async with async_session_maker() as session:
        remaining = set((await session.scalars(select(QueuedJob.job_id))).all())
        retention = await session.get(QueuedJob, retention_id)
    assert stale.job_id not in remaining
    assert {recent.job_id, kept_failure.job_id, retention_id} <= remaining
    assert retention.status == STATUS_COMPLETED
    assert retention.result == {"purged": 1}


@pytest.mark.anyio
async def test_unknown_lane_fails_terminally(async_session_maker):
    async with async_session_maker() as session:
        job = QueuedJob(
            job_id=uuid.uuid4(),
            lane="mystery",
            name="mystery",
            payload={},
            status=STATUS_ACTIVE,
            attempts_made=1,
            max_attempts=5,
            backoff_seconds=1,
            run_at=utcnow(),
            locked_at=utcnow(),
        )
        session.add(job)
        await session.commit()

    assert await execute_job(async_session_maker, job.job_id, JobAdapters()) == OUTCOME_FAILED
    async with async_session_maker() as session:
        stored = await session.get(QueuedJob, job.job_id)
    assert stored.status == STATUS_FAILED
    assert stored.last_error == "TerminalJobError: unknown_lane:mystery"


@pytest.mark.anyio
async def test_supervisor_tick_runs_lanes_and_records_heartbeat(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        await enqueue_job(
            session,
            lanes.REALTIME,
            "broadcast",
            RealtimeJobData(organization_id=org.org_id, event="score.changed", data={"score": 80}),
        )
        await session.commit()

    supervisor = WorkerSupervisor(
        async_session_maker,
        lane_names=[lanes.REALTIME, lanes.NOTIFICATIONS],
        run_scheduler=False,
        runner_id="worker-a",
    )
    processed = await supervisor.run_once()
    assert processed == {lanes.REALTIME: 1, lanes.NOTIFICATIONS: 0}

    async with async_session_maker() as session:
        heartbeat = await session.get(WorkerHeartbeat, "pulse-worker")
        assert heartbeat.runner_id == "worker-a"
        assert heartbeat.consecutive_failures == 0
        assert await stale_heartbeats(session, ttl_seconds=60) == []
        stale = await stale_heartbeats(session, ttl_seconds=60, now=utcnow() + timedelta(minutes=5))
    assert [entry["runner_id"] for entry in stale] == ["worker-a"]


@pytest.mark.anyio
async def test_missing_heartbeat_counts_as_stale(async_session_maker):
    async with async_session_maker() as session:
        stale = await stale_heartbeats(session, ttl_seconds=60)
    assert stale == [{"name": "pulse-worker", "runner_id": None, "age_seconds": None}]


@pytest.mark.anyio
async def test_supervisor_start_and_stop(async_session_maker):
    supervisor = WorkerSupervisor(
        async_session_maker, lane_names=[lanes.REALTIME], run_scheduler=False, poll_interval=0.01, runner_id="worker-b"
    )
    tasks = supervisor.start()
    assert len(tasks) == 2
    assert supervisor.running
    with pytest.raises(RuntimeError):
        supervisor.start()
    await supervisor.stop(timeout=5)
    assert not supervisor.running
