"""Typed job payloads.

Payloads are stored as JSON using camelCase keys so producers outside this
service can enqueue work with the same shapes. Lanes driven by the scheduler
accept a discriminated union: ``{"kind": "scheduled-fanout"}`` asks the worker
to enqueue one concrete task per eligible tenant, ``{"kind": "tenant-task"}``
carries the work for a single organization.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from pulse.domain.errors import JobPayloadError


class JobPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ScheduledFanout(JobPayload):
    kind: Literal["scheduled-fanout"] = "scheduled-fanout"
    scheduled_for: datetime | None = None


class TenantTask(JobPayload):
    kind: Literal["tenant-task"] = "tenant-task"
    organization_id: uuid.UUID


class SignalProcessingJobData(TenantTask):
    signals: list[dict[str, Any]]


class ScoreComputationJobData(TenantTask):
    account_id: uuid.UUID


class AnomalyDetectionJobData(TenantTask):
    pass


class AlertEvaluationJobData(TenantTask):
    account_id: uuid.UUID
    new_score: int
    old_score: int | None = None


class AlertCheckJobData(TenantTask):
    pass


class WebhookDeliveryJobData(TenantTask):
    event: str
    payload: dict[str, Any]
    subscription_id: uuid.UUID | None = None
    target_url: str | None = None
    secret: str | None = None


class WorkflowExecutionJobData(TenantTask):
    event: Literal["score_changed", "signal_received"]
    data: dict[str, Any] = Field(default_factory=dict)


class RealtimeJobData(TenantTask):
    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationJobData(TenantTask):
    channel: Literal["in_app", "slack"] = "in_app"
    type: str
    title: str
    body: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    blocks: list[dict[str, Any]] | None = None


class ConnectorFanout(ScheduledFanout):
    connector: str


class ConnectorSyncJobData(TenantTask):
    connector: str


class MaintenanceJobData(JobPayload):
    kind: Literal["retention"] = "retention"


AnomalyDetectionPayload = Annotated[
    Union[ScheduledFanout, AnomalyDetectionJobData], Field(discriminator="kind")
]
AlertCheckPayload = Annotated[Union[ScheduledFanout, AlertCheckJobData], Field(discriminator="kind")]
ConnectorSyncPayload = Annotated[
    Union[ConnectorFanout, ConnectorSyncJobData], Field(discriminator="kind")
]

_ADAPTERS: dict[Any, TypeAdapter] = {}


def parse_payload(model: Any, raw: dict[str, Any] | None):
    """Validate a stored payload against ``model`` (a model class or annotated union)."""
    adapter = _ADAPTERS.get(model)
    if adapter is None:
        adapter = TypeAdapter(model)
        _ADAPTERS[model] = adapter
    data = dict(raw or {})
    if "kind" not in data and ("organizationId" in data or "organization_id" in data):
        data["kind"] = "tenant-task"
    try:
        return adapter.validate_python(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise JobPayloadError(f"invalid_payload:{','.join(fields) or 'unknown'}") from exc
