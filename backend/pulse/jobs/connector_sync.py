from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import update

from pulse.domain.connectors.registry import connected_org_ids, parse_connector
from pulse.domain.errors import JobPayloadError
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import ConnectorFanout, ConnectorSyncJobData, ConnectorSyncPayload, parse_payload
from pulse.domain.signals.db_models import SOURCE_STATUS_ACTIVE, SignalSource
from pulse.jobs.context import JobContext
from pulse.jobs.fanout import fan_out, fanout_slot

logger = logging.getLogger(__name__)


async def run(ctx: JobContext) -> dict[str, Any]:
    data = parse_payload(ConnectorSyncPayload, ctx.payload)
    connector = parse_connector(data.connector)
    if connector is None:
        raise JobPayloadError(f"unknown_connector:{data.connector}")

    if isinstance(data, ConnectorFanout):
        org_ids = await connected_org_ids(ctx.session, connector)
        return await fan_out(
            ctx.session,
            lanes.CONNECTOR_SYNC,
            f"{connector.value}-sync",
            org_ids,
            key_prefix=f"{connector.value}-sync",
            build_payload=lambda org_id: ConnectorSyncJobData(organization_id=org_id, connector=connector.value),
            slot=fanout_slot(data.scheduled_for or ctx.now),
        )

    handler = ctx.adapters.connectors.get(connector)
    if handler is None:
        logger.info(
            "connector_not_registered",
            extra={"extra": {"connector": connector.value, "org_id": str(data.organization_id)}},
        )
        return {"skipped": "connector_not_registered"}

    produced = await handler(ctx.session, data.organization_id)
    await ctx.session.execute(
        update(SignalSource)
        .where(
            SignalSource.org_id == data.organization_id,
            SignalSource.type == connector.value,
            SignalSource.status == SOURCE_STATUS_ACTIVE,
        )
        .values(last_sync_at=ctx.now)
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "connector_sync_complete",
        extra={"extra": {"connector": connector.value, "org_id": str(data.organization_id), "signals": produced}},
    )
    return {"signals": produced}
