from typing import Any

from pulse.domain.anomalies.service import eligible_anomaly_orgs, process_anomaly_detection
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import AnomalyDetectionJobData, AnomalyDetectionPayload, ScheduledFanout, parse_payload
from pulse.jobs.context import JobContext
from pulse.jobs.fanout import fan_out, fanout_slot


async def run(ctx: JobContext) -> dict[str, Any]:
    data = parse_payload(AnomalyDetectionPayload, ctx.payload)
    if isinstance(data, ScheduledFanout):
        org_ids = await eligible_anomaly_orgs(ctx.session)
        return await fan_out(
            ctx.session,
            lanes.ANOMALY_DETECTION,
            "detect-anomalies",
            org_ids,
            key_prefix="anomaly-scan",
            build_payload=lambda org_id: AnomalyDetectionJobData(organization_id=org_id),
            slot=fanout_slot(data.scheduled_for or ctx.now),
        )
    return await process_anomaly_detection(ctx.session, data.organization_id, now=ctx.now)
