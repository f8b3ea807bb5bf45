from __future__ import annotations

import enum
import uuid
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.orgs.db_models import Organization
from pulse.domain.signals.db_models import SOURCE_STATUS_ACTIVE, SignalSource


class ConnectorType(str, enum.Enum):
    HUBSPOT = "hubspot"
    DISCORD = "discord"
    SALESFORCE = "salesforce"
    NPM = "npm"
    PYPI = "pypi"


SYNC_SCHEDULES: dict[ConnectorType, str] = {
    ConnectorType.HUBSPOT: "*/15 * * * *",
    ConnectorType.DISCORD: "*/30 * * * *",
    ConnectorType.SALESFORCE: "*/15 * * * *",
    ConnectorType.NPM: "0 */6 * * *",
    ConnectorType.PYPI: "0 */12 * * *",
}

# Handler receives (session, org_id) and returns the number of signals produced.
ConnectorHandler = Callable[[AsyncSession, uuid.UUID], Awaitable[int]]


class ConnectorRegistry:
    """Explicit ``ConnectorType`` to sync handler map, supplied by the process entry point."""

    def __init__(self, handlers: dict[ConnectorType, ConnectorHandler] | None = None) -> None:
        self._handlers: dict[ConnectorType, ConnectorHandler] = dict(handlers or {})

    def register(self, connector: ConnectorType, handler: ConnectorHandler) -> None:
        self._handlers[connector] = handler

    def get(self, connector: ConnectorType) -> ConnectorHandler | None:
        return self._handlers.get(connector)

    def registered(self) -> list[ConnectorType]:
        return list(self._handlers)


def parse_connector(value: str) -> ConnectorType | None:
    try:
        return ConnectorType(value)
    except ValueError:
        return None


async def connected_org_ids(session: AsyncSession, connector: ConnectorType) -> list[uuid.UUID]:
    """Organizations with an active signal source of ``connector`` type, demo orgs excluded."""
    result = await session.scalars(
        select(SignalSource.org_id)
        .join(Organization, Organization.org_id == SignalSource.org_id)
        .where(
            SignalSource.type == connector.value,
            SignalSource.status == SOURCE_STATUS_ACTIVE,
            Organization.is_demo.is_(False),
        )
        .distinct()
    )
    return list(result.all())
