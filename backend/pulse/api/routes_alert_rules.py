import uuid
from typing import Any

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.dependencies import get_db_session, require_org_id
from pulse.domain.alerts import service as alerts_service

router = APIRouter(tags=["alerts"])


class AlertRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    trigger_type: str = Field(alias="triggerType")
    conditions: dict[str, Any] = Field(default_factory=dict)
    channels: dict[str, Any] | None = None
    enabled: bool = True

    model_config = {"populate_by_name": True}


@router.get("/v1/alert-rules")
async def list_alert_rules(
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    rules = await alerts_service.list_rules(session, org_id)
    return {"rules": [alerts_service.rule_to_dict(rule) for rule in rules]}


@router.post("/v1/alert-rules", status_code=status.HTTP_201_CREATED)
async def create_alert_rule(
    payload: AlertRuleCreate,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    rule = await alerts_service.create_rule(
        session,
        org_id,
        name=payload.name,
        trigger_type=payload.trigger_type,
        conditions=payload.conditions,
        channels=payload.channels,
        description=payload.description,
        enabled=payload.enabled,
    )
    await session.commit()
    return alerts_service.rule_to_dict(rule)


@router.delete("/v1/alert-rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_alert_rule(
    rule_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> Response:
    await alerts_service.delete_rule(session, org_id, rule_id)
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
