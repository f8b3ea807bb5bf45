from pulse.domain.queue.payloads import WorkflowExecutionJobData, parse_payload
from pulse.domain.workflows.service import process_workflow_event
from pulse.jobs.context import JobContext


async def run(ctx: JobContext) -> dict[str, int]:
    data = parse_payload(WorkflowExecutionJobData, ctx.payload)
    return await process_workflow_event(ctx.session, data.organization_id, data.event, data.data)
