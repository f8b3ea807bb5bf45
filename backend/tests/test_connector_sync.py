from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from pulse.domain.connectors.registry import ConnectorRegistry, ConnectorType, connected_org_ids, parse_connector
from pulse.domain.queue import lanes
from pulse.domain.queue.db_models import STATUS_FAILED, QueuedJob
from pulse.domain.queue.payloads import ConnectorFanout, ConnectorSyncJobData, SignalProcessingJobData
from pulse.domain.queue.service import OUTCOME_COMPLETED, OUTCOME_FAILED, claim_jobs, enqueue_job
from pulse.domain.signals.db_models import Signal, SignalSource
from pulse.jobs.context import JobAdapters
from pulse.jobs.worker import execute_job
from pulse.shared.clock import utcnow
from tests.conftest import seed_account, seed_org, seed_source

SLOT_TIME = datetime(2026, 3, 10, 12, 15, tzinfo=timezone.utc)


async def _run_job(async_session_maker, adapters, lane, name, payload):
    async with async_session_maker() as session:
        result = await enqueue_job(session, lane, name, payload)
        await session.commit()
        job_id = result.job.job_id
        await claim_jobs(session, lane, limit=10, worker_id="test", now=utcnow() + timedelta(days=1))
    outcome = await execute_job(async_session_maker, job_id, adapters)
    async with async_session_maker() as session:
        return outcome, await session.get(QueuedJob, job_id)


def test_parse_connector():
    assert parse_connector("hubspot") is ConnectorType.HUBSPOT
    assert parse_connector("myspace") is None


@pytest.mark.anyio
async def test_connected_orgs_skip_demo_and_inactive_sources(async_session_maker):
    async with async_session_maker() as session:
        connected = await seed_org(session, name="Connected")
        await seed_source(session, connected.org_id, type="hubspot")
        await seed_source(session, connected.org_id, type="hubspot")
        paused = await seed_org(session, name="Paused")
        await seed_source(session, paused.org_id, type="hubspot", status="PAUSED")
        demo = await seed_org(session, name="Demo", is_demo=True)
        await seed_source(session, demo.org_id, type="hubspot")
        other = await seed_org(session, name="Other")
        await seed_source(session, other.org_id, type="npm")
        await session.commit()

        assert await connected_org_ids(session, ConnectorType.HUBSPOT) == [connected.org_id]


@pytest.mark.anyio
async def test_connector_fanout_enqueues_per_tenant_sync(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        await seed_source(session, org.org_id, type="salesforce")
        await session.commit()

    outcome, job = await _run_job(
        async_session_maker,
        JobAdapters(),
        lanes.CONNECTOR_SYNC,
        "salesforce-sync-fanout",
        ConnectorFanout(connector="salesforce", scheduled_for=SLOT_TIME),
    )
    assert outcome == OUTCOME_COMPLETED
    assert job.result == {"created": 1, "existing": 0, "failed": 0}
    async with async_session_maker() as session:
        tenant_job = await session.scalar(select(QueuedJob).where(QueuedJob.name == "salesforce-sync"))
    assert tenant_job.job_key == f"salesforce-sync-{org.org_id}-202603101215"
    assert tenant_job.payload["connector"] == "salesforce"


@pytest.mark.anyio
async def test_registered_handler_runs_and_stamps_sources(async_session_maker):
    calls = []

    async def sync_hubspot(session, org_id):
        calls.append(org_id)
        return 4

    async with async_session_maker() as session:
        org = await seed_org(session)
        source = await seed_source(session, org.org_id, type="hubspot")
        await session.commit()

    adapters = JobAdapters(connectors=ConnectorRegistry({ConnectorType.HUBSPOT: sync_hubspot}))
    outcome, job = await _run_job(
        async_session_maker,
        adapters,
        lanes.CONNECTOR_SYNC,
        "hubspot-sync",
        ConnectorSyncJobData(organization_id=org.org_id, connector="hubspot"),
    )
    assert outcome == OUTCOME_COMPLETED
    assert job.result == {"signals": 4}
    assert calls == [org.org_id]
    async with async_session_maker() as session:
        stored = await session.get(SignalSource, source.source_id)
    assert stored.last_sync_at is not None


@pytest.mark.anyio
async def test_unregistered_connector_is_skipped(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        await session.commit()
    outcome, job = await _run_job(
        async_session_maker,
        JobAdapters(),
        lanes.CONNECTOR_SYNC,
        "pypi-sync",
        ConnectorSyncJobData(organization_id=org.org_id, connector="pypi"),
    )
    assert outcome == OUTCOME_COMPLETED
    assert job.result == {"skipped": "connector_not_registered"}


@pytest.mark.anyio
async def test_unknown_connector_fails_without_retry(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        await session.commit()
    outcome, job = await _run_job(
        async_session_maker,
        JobAdapters(),
        lanes.CONNECTOR_SYNC,
        "myspace-sync",
        ConnectorSyncJobData(organization_id=org.org_id, connector="myspace"),
    )
    assert outcome == OUTCOME_FAILED
    assert job.status == STATUS_FAILED
    assert job.last_error == "JobPayloadError: unknown_connector:myspace"


@pytest.mark.anyio
async def test_async_signal_batch_job_ingests(async_session_maker):
    async with async_session_maker() as session:
        org = await seed_org(session)
        account = await seed_account(session, org.org_id)
        source = await seed_source(session, org.org_id)
        await session.commit()

    signals = [
        {"sourceId": str(source.source_id), "type": "login", "accountId": str(account.company_id)},
        {"type": "login"},
    ]
    outcome, job = await _run_job(
        async_session_maker,
        JobAdapters(),
        lanes.SIGNAL_PROCESSING,
        "ingest-batch",
        SignalProcessingJobData(organization_id=org.org_id, signals=signals),
    )
    assert outcome == OUTCOME_COMPLETED
    assert job.result == {"ingested": 1, "deduplicated": 0, "failed": 1}
    async with async_session_maker() as session:
        assert len((await session.scalars(select(Signal))).all()) == 1
