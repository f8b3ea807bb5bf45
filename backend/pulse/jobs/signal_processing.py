from pulse.domain.queue.payloads import SignalProcessingJobData, parse_payload
from pulse.domain.signals.service import ingest_signal_batch, summarize_batch
from pulse.jobs.context import JobContext


async def run(ctx: JobContext) -> dict[str, int]:
    data = parse_payload(SignalProcessingJobData, ctx.payload)
    results = await ingest_signal_batch(ctx.session, data.organization_id, data.signals, now=ctx.now)
    return summarize_batch(results)
