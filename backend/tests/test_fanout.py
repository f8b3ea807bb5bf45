import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from pulse.domain.queue import lanes
from pulse.domain.queue.db_models import QueuedJob
from pulse.domain.queue.payloads import AnomalyDetectionJobData, ScheduledFanout
from pulse.domain.queue.service import OUTCOME_COMPLETED, claim_jobs, enqueue_job
from pulse.jobs.context import JobAdapters
from pulse.jobs.fanout import fan_out, fanout_slot, tenant_job_key
from pulse.jobs.worker import execute_job
from pulse.shared.clock import utcnow
from tests.conftest import seed_org

SLOT_TIME = datetime(2026, 3, 10, 12, 0, 42, tzinfo=timezone.utc)


def test_slot_and_key_are_deterministic():
    org_id = uuid.UUID("11111111-1111-1111-1111-111111111111")
    assert fanout_slot(SLOT_TIME) == "202603101200"
    assert fanout_slot(SLOT_TIME + timedelta(seconds=10)) == "202603101200"
    assert tenant_job_key("anomaly-scan", org_id, "202603101200") == (
        "anomaly-scan-11111111-1111-1111-1111-111111111111-202603101200"
    )


@pytest.mark.anyio
async def test_fan_out_rerun_creates_no_duplicates(async_session_maker):
    org_ids = [uuid.uuid4() for _ in range(3)]
    slot = fanout_slot(SLOT_TIME)
    async with async_session_maker() as session:
        first = await fan_out(
            session,
            lanes.ANOMALY_DETECTION,
            "detect-anomalies",
            org_ids,
            key_prefix="anomaly-scan",
            build_payload=lambda org_id: AnomalyDetectionJobData(organization_id=org_id),
            slot=slot,
        )
        second = await fan_out(
            session,
            lanes.ANOMALY_DETECTION,
            "detect-anomalies",
            org_ids,
            key_prefix="anomaly-scan",
            build_payload=lambda org_id: AnomalyDetectionJobData(organization_id=org_id),
            slot=slot,
        )
        await session.commit()
        assert first == {"created": 3, "existing": 0, "failed": 0}
        assert second == {"created": 0, "existing": 3, "failed": 0}

        keys = (await session.scalars(select(QueuedJob.job_key).where(QueuedJob.lane == lanes.ANOMALY_DETECTION))).all()
        assert sorted(keys) == sorted(tenant_job_key("anomaly-scan", org_id, slot) for org_id in org_ids)


@pytest.mark.anyio
async def test_fan_out_counts_per_tenant_failures(async_session_maker):
    good = uuid.uuid4()

    def build(org_id):
        if org_id != good:
            raise ValueError("bad tenant")
        return AnomalyDetectionJobData(organization_id=org_id)

    async with async_session_maker() as session:
        result = await fan_out(
            session,
            lanes.ANOMALY_DETECTION,
            "detect-anomalies",
            [uuid.uuid4(), good],
            key_prefix="anomaly-scan",
            build_payload=build,
            slot="202603101200",
        )
        await session.commit()
    assert result == {"created": 1, "existing": 0, "failed": 1}


@pytest.mark.anyio
async def test_scheduled_anomaly_scan_fans_out_to_non_demo_orgs(async_session_maker):
    async with async_session_maker() as session:
        tenants = [(await seed_org(session, name=f"Tenant {index}")).org_id for index in range(3)]
        await seed_org(session, name="Demo", is_demo=True)
        for _ in range(2):
            # two overlapping scheduler firings for the same slot
            await enqueue_job(
                session,
                lanes.ANOMALY_DETECTION,
                "anomaly-scan",
                ScheduledFanout(scheduled_for=SLOT_TIME),
            )
        await session.commit()

    far_future = utcnow() + timedelta(days=1)
    async with async_session_maker() as session:
        jobs = await claim_jobs(session, lanes.ANOMALY_DETECTION, limit=10, worker_id="test", now=far_future)
        job_ids = [job.job_id for job in jobs]
    assert len(job_ids) == 2
    for job_id in job_ids:
        assert await execute_job(async_session_maker, job_id, JobAdapters()) == OUTCOME_COMPLETED

    async with async_session_maker() as session:
        fanout_jobs = (
            await session.scalars(select(QueuedJob).where(QueuedJob.name == "detect-anomalies"))
        ).all()
        results = (
            await session.scalars(select(QueuedJob.result).where(QueuedJob.job_id.in_(job_ids)))
        ).all()

    assert sorted(job.org_id for job in fanout_jobs) == sorted(tenants)
    assert {job.job_key for job in fanout_jobs} == {
        tenant_job_key("anomaly-scan", org_id, "202603101200") for org_id in tenants
    }
    assert sorted(result["created"] for result in results) == [0, 3]
    assert sorted(result["existing"] for result in results) == [0, 3]
