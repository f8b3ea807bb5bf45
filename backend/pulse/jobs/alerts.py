from typing import Any

from pulse.domain.alerts.service import (
    evaluate_alerts_for_account,
    evaluate_time_based_alerts,
    orgs_with_time_based_rules,
)
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import (
    AlertCheckJobData,
    AlertCheckPayload,
    AlertEvaluationJobData,
    ScheduledFanout,
    parse_payload,
)
from pulse.jobs.context import JobContext
from pulse.jobs.fanout import fan_out, fanout_slot


async def run_evaluation(ctx: JobContext) -> dict[str, int]:
    data = parse_payload(AlertEvaluationJobData, ctx.payload)
    return await evaluate_alerts_for_account(
        ctx.session,
        data.organization_id,
        data.account_id,
        new_score=data.new_score,
        old_score=data.old_score,
        now=ctx.now,
    )


async def run_check(ctx: JobContext) -> dict[str, Any]:
    data = parse_payload(AlertCheckPayload, ctx.payload)
    if isinstance(data, ScheduledFanout):
        org_ids = await orgs_with_time_based_rules(ctx.session)
        return await fan_out(
            ctx.session,
            lanes.ALERT_CHECK,
            "alert-check",
            org_ids,
            key_prefix="alert-check",
            build_payload=lambda org_id: AlertCheckJobData(organization_id=org_id),
            slot=fanout_slot(data.scheduled_for or ctx.now),
        )
    return await evaluate_time_based_alerts(ctx.session, data.organization_id, now=ctx.now)
