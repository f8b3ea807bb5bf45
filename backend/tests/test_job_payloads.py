import uuid
from datetime import datetime, timezone

import pytest

from pulse.domain.errors import JobPayloadError, TerminalJobError
from pulse.domain.queue.payloads import (
    AlertCheckPayload,
    AnomalyDetectionJobData,
    AnomalyDetectionPayload,
    ConnectorFanout,
    ConnectorSyncJobData,
    ConnectorSyncPayload,
    ScheduledFanout,
    ScoreComputationJobData,
    parse_payload,
)


def test_payloads_serialize_camel_case():
    org_id = uuid.uuid4()
    account_id = uuid.uuid4()
    payload = ScoreComputationJobData(organization_id=org_id, account_id=account_id).to_json()
    assert payload == {"kind": "tenant-task", "organizationId": str(org_id), "accountId": str(account_id)}


def test_scheduled_fanout_discriminator():
    slot = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    data = parse_payload(AnomalyDetectionPayload, {"kind": "scheduled-fanout", "scheduledFor": slot.isoformat()})
    assert isinstance(data, ScheduledFanout)
    assert data.scheduled_for == slot


def test_tenant_task_kind_is_inferred_for_producers_that_omit_it():
    org_id = uuid.uuid4()
    data = parse_payload(AlertCheckPayload, {"organizationId": str(org_id)})
    assert data.organization_id == org_id
    data = parse_payload(AnomalyDetectionPayload, {"kind": "tenant-task", "organizationId": str(org_id)})
    assert isinstance(data, AnomalyDetectionJobData)


def test_connector_payload_union():
    fanout = parse_payload(ConnectorSyncPayload, ConnectorFanout(connector="hubspot").to_json())
    assert isinstance(fanout, ConnectorFanout)
    assert fanout.connector == "hubspot"
    org_id = uuid.uuid4()
    task = parse_payload(ConnectorSyncPayload, {"organizationId": str(org_id), "connector": "npm"})
    assert isinstance(task, ConnectorSyncJobData)


@pytest.mark.parametrize(
    "raw",
    [{}, {"kind": "bogus"}, {"kind": "tenant-task"}, {"organizationId": "not-a-uuid"}],
)
def test_invalid_payloads_raise_terminal_error(raw):
    with pytest.raises(JobPayloadError) as excinfo:
        parse_payload(AnomalyDetectionPayload, raw)
    assert isinstance(excinfo.value, TerminalJobError)
    assert str(excinfo.value).startswith("invalid_payload:")
