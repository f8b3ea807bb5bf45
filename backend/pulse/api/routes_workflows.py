import uuid
from typing import Any

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.dependencies import get_db_session, require_org_id
from pulse.domain.workflows import service as workflows_service

router = APIRouter(tags=["workflows"])


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    trigger_event: str = Field(alias="triggerEvent")
    action_type: str = Field(alias="actionType")
    action_config: dict[str, Any] = Field(default_factory=dict, alias="actionConfig")
    filters: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    model_config = {"populate_by_name": True}


@router.get("/v1/workflows")
async def list_workflows(
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    workflows = await workflows_service.list_workflows(session, org_id)
    return {"workflows": [workflows_service.workflow_to_dict(item) for item in workflows]}


@router.post("/v1/workflows", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    payload: WorkflowCreate,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    workflow = await workflows_service.create_workflow(
        session,
        org_id,
        name=payload.name,
        trigger_event=payload.trigger_event,
        action_type=payload.action_type,
        action_config=payload.action_config,
        filters=payload.filters,
        enabled=payload.enabled,
    )
    await session.commit()
    return workflows_service.workflow_to_dict(workflow)


@router.delete("/v1/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    workflow_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> Response:
    await workflows_service.delete_workflow(session, org_id, workflow_id)
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
