from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.domain.errors import DomainError, NotFoundError
from pulse.domain.notifications.service import CHANNEL_SLACK, create_notification, enqueue_notification
from pulse.domain.queue import lanes
from pulse.domain.queue.payloads import WorkflowExecutionJobData
from pulse.domain.queue.service import enqueue_job
from pulse.domain.workflows.db_models import Workflow
from pulse.shared.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

WORKFLOW_EVENTS = ("score_changed", "signal_received")
ACTION_NOTIFY = "notify"
ACTION_SLACK = "slack"
WORKFLOW_ACTIONS = (ACTION_NOTIFY, ACTION_SLACK)


class _SafeFormat(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, data: dict[str, Any]) -> str:
    return template.format_map(_SafeFormat({key: value for key, value in data.items()}))


def matches_filters(filters: dict[str, Any] | None, data: dict[str, Any]) -> bool:
    if not filters:
        return True
    return all(data.get(key) == value for key, value in filters.items())


def workflow_to_dict(workflow: Workflow) -> dict[str, Any]:
    return {
        "id": str(workflow.workflow_id),
        "name": workflow.name,
        "triggerEvent": workflow.trigger_event,
        "filters": workflow.filters or {},
        "actionType": workflow.action_type,
        "actionConfig": workflow.action_config or {},
        "enabled": workflow.enabled,
        "runCount": workflow.run_count,
        "lastRunAt": ensure_utc(workflow.last_run_at).isoformat() if workflow.last_run_at else None,
    }


async def create_workflow(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    name: str,
    trigger_event: str,
    action_type: str,
    action_config: dict[str, Any] | None = None,
    filters: dict[str, Any] | None = None,
    enabled: bool = True,
) -> Workflow:
    if trigger_event not in WORKFLOW_EVENTS:
        raise DomainError(detail=f"Unsupported trigger event: {trigger_event}")
    if action_type not in WORKFLOW_ACTIONS:
        raise DomainError(detail=f"Unsupported action: {action_type}")
    workflow = Workflow(
        workflow_id=uuid.uuid4(),
        org_id=org_id,
        name=name,
        trigger_event=trigger_event,
        filters=filters or {},
        action_type=action_type,
        action_config=action_config or {},
        enabled=enabled,
        run_count=0,
    )
    session.add(workflow)
    await session.flush()
    return workflow


async def list_workflows(session: AsyncSession, org_id: uuid.UUID) -> list[Workflow]:
    result = await session.scalars(
        select(Workflow).where(Workflow.org_id == org_id).order_by(Workflow.created_at.desc())
    )
    return list(result.all())


async def delete_workflow(session: AsyncSession, org_id: uuid.UUID, workflow_id: uuid.UUID) -> None:
    workflow = await session.scalar(
        select(Workflow).where(Workflow.workflow_id == workflow_id, Workflow.org_id == org_id)
    )
    if workflow is None:
        raise NotFoundError(detail="Workflow not found")
    await session.delete(workflow)
    await session.flush()


async def enqueue_workflow_event(
    session: AsyncSession, org_id: uuid.UUID, event: str, data: dict[str, Any]
) -> None:
    await enqueue_job(
        session,
        lanes.WORKFLOW_EXECUTION,
        event,
        WorkflowExecutionJobData(organization_id=org_id, event=event, data=data),
    )


async def _run_action(session: AsyncSession, workflow: Workflow, data: dict[str, Any]) -> None:
    config = workflow.action_config or {}
    title = render_template(str(config.get("title") or workflow.name), data)
    message = render_template(str(config.get("message") or ""), data) or None
    entity_id = data.get("accountId")
    if workflow.action_type == ACTION_NOTIFY:
        await create_notification(
            session,
            org_id=workflow.org_id,
            type="workflow",
            title=title,
            body=message,
            entity_type="company" if entity_id else None,
            entity_id=str(entity_id) if entity_id else None,
        )
    elif workflow.action_type == ACTION_SLACK:
        await enqueue_notification(
            session,
            workflow.org_id,
            channel=CHANNEL_SLACK,
            type="workflow",
            title=title,
            body=message,
        )
    else:
        raise DomainError(detail=f"Unsupported action: {workflow.action_type}")


async def process_workflow_event(
    session: AsyncSession, org_id: uuid.UUID, event: str, data: dict[str, Any]
) -> dict[str, int]:
    workflows = (
        await session.scalars(
            select(Workflow).where(
                Workflow.org_id == org_id,
                Workflow.trigger_event == event,
                Workflow.enabled.is_(True),
            )
        )
    ).all()
    matched = [workflow for workflow in workflows if matches_filters(workflow.filters, data)]
    executed = 0
    failed = 0
    for workflow in matched:
        workflow_id = workflow.workflow_id
        savepoint = await session.begin_nested()
        try:
            await _run_action(session, workflow, data)
            workflow.run_count = (workflow.run_count or 0) + 1
            workflow.last_run_at = utcnow()
            await session.flush()
        except Exception as exc:  # noqa: BLE001
            await savepoint.rollback()
            failed += 1
            logger.warning(
                "workflow_action_failed",
                extra={
                    "extra": {
                        "workflow_id": str(workflow_id),
                        "event": event,
                        "reason": type(exc).__name__,
                    }
                },
            )
            continue
        await savepoint.commit()
        executed += 1
    return {"matched": len(matched), "executed": executed, "failed": failed}
