from typing import Any

from pulse.domain.queue.payloads import ScoreComputationJobData, parse_payload
from pulse.domain.scoring.service import compute_account_score
from pulse.jobs.context import JobContext


async def run(ctx: JobContext) -> dict[str, Any]:
    data = parse_payload(ScoreComputationJobData, ctx.payload)
    computation = await compute_account_score(ctx.session, data.organization_id, data.account_id, now=ctx.now)
    return {
        "score": computation.record.score,
        "tier": computation.record.tier,
        "previous_score": computation.previous_score,
    }
