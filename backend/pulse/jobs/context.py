from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.connectors.registry import ConnectorRegistry
from pulse.domain.queue.db_models import QueuedJob


@dataclass
class JobAdapters:
    """Outbound collaborators handed to job handlers by the process entry point."""

    http_transport: httpx.AsyncBaseTransport | None = None
    slack_transport: httpx.AsyncBaseTransport | None = None
    redis_client: Any = None
    connectors: ConnectorRegistry = field(default_factory=ConnectorRegistry)


@dataclass
class JobContext:
    session: AsyncSession
    job: QueuedJob
    adapters: JobAdapters
    now: datetime

    @property
    def job_id(self) -> str:
        return str(self.job.job_id)

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload or {}
