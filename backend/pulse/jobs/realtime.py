from pulse.domain.queue.payloads import RealtimeJobData, parse_payload
from pulse.domain.realtime.service import publish_event
from pulse.jobs.context import JobContext


async def run(ctx: JobContext) -> dict[str, int]:
    data = parse_payload(RealtimeJobData, ctx.payload)
    receivers = await publish_event(ctx.adapters.redis_client, data.organization_id, data.event, data.data)
    return {"receivers": receivers}
