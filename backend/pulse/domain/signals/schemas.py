from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SignalInput(CamelModel):
    source_id: UUID
    type: str = Field(..., min_length=1, max_length=64)
    actor_id: UUID | None = None
    account_id: UUID | None = None
    anonymous_id: str | None = Field(None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(None, min_length=1, max_length=255)
    timestamp: datetime | None = None


class SignalBatchRequest(CamelModel):
    signals: list[SignalInput] = Field(..., min_length=1, max_length=1000)


class SignalResponse(CamelModel):
    id: UUID
    source_id: UUID
    type: str
    actor_id: UUID | None
    account_id: UUID | None
    anonymous_id: str | None
    metadata: dict[str, Any]
    idempotency_key: str | None
    timestamp: datetime


class IngestResponse(CamelModel):
    signal: SignalResponse
    deduplicated: bool


class BatchItemResult(CamelModel):
    index: int
    status: str
    signal_id: UUID | None = None
    error: str | None = None


class BatchIngestResponse(CamelModel):
    ingested: int
    deduplicated: int
    failed: int
    results: list[BatchItemResult]


class BatchAcceptedResponse(CamelModel):
    job_id: UUID
    count: int
