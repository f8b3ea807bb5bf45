import logging
from datetime import timedelta

from pulse.domain.queue.payloads import MaintenanceJobData, parse_payload
from pulse.domain.queue.service import purge_finished_jobs
from pulse.jobs.context import JobContext
from pulse.settings import settings

logger = logging.getLogger(__name__)


async def run(ctx: JobContext) -> dict[str, int]:
    parse_payload(MaintenanceJobData, ctx.payload)
    cutoff = ctx.now - timedelta(days=settings.job_retention_days)
    purged = await purge_finished_jobs(ctx.session, older_than=cutoff)
    logger.info("job_retention_complete", extra={"extra": {"purged": purged, "cutoff": cutoff.isoformat()}})
    return {"purged": purged}
