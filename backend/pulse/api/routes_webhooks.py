import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field, HttpUrl
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.dependencies import get_db_session, get_webhook_transport, require_org_id
from pulse.domain.webhooks import service as webhooks_service

router = APIRouter(tags=["webhooks"])


class WebhookSubscriptionCreate(BaseModel):
    target_url: HttpUrl = Field(alias="targetUrl")
    event: str
    hook_id: str | None = Field(None, alias="hookId")

    model_config = {"populate_by_name": True}


class WebhookSubscriptionToggle(BaseModel):
    active: bool


@router.get("/v1/webhooks")
async def list_webhook_subscriptions(
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    subscriptions = await webhooks_service.list_subscriptions(session, org_id)
    return {"subscriptions": [webhooks_service.subscription_to_dict(item) for item in subscriptions]}


@router.post("/v1/webhooks", status_code=status.HTTP_201_CREATED)
async def create_webhook_subscription(
    payload: WebhookSubscriptionCreate,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    """Create a subscription. The signing secret is only returned here."""
    subscription = await webhooks_service.create_subscription(
        session, org_id, target_url=str(payload.target_url), event=payload.event, hook_id=payload.hook_id
    )
    await session.commit()
    return webhooks_service.subscription_to_dict(subscription, include_secret=True)


@router.get("/v1/webhooks/{subscription_id}")
async def get_webhook_subscription(
    subscription_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    return await webhooks_service.get_subscription_with_stats(session, org_id, subscription_id)


@router.patch("/v1/webhooks/{subscription_id}")
async def toggle_webhook_subscription(
    subscription_id: uuid.UUID,
    payload: WebhookSubscriptionToggle,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    subscription = await webhooks_service.toggle_subscription(session, org_id, subscription_id, payload.active)
    await session.commit()
    return webhooks_service.subscription_to_dict(subscription)


@router.delete("/v1/webhooks/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook_subscription(
    subscription_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> Response:
    await webhooks_service.delete_subscription(session, org_id, subscription_id)
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/v1/webhooks/{subscription_id}/deliveries")
async def list_webhook_deliveries(
    subscription_id: uuid.UUID,
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
) -> dict[str, Any]:
    deliveries = await webhooks_service.list_deliveries(session, org_id, subscription_id, limit=limit)
    return {"deliveries": [webhooks_service.delivery_to_dict(item) for item in deliveries]}


@router.post("/v1/webhooks/{subscription_id}/test")
async def test_webhook_subscription(
    subscription_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_id),
    transport=Depends(get_webhook_transport),  # noqa: ANN001
) -> dict[str, Any]:
    result = await webhooks_service.send_test_webhook(session, org_id, subscription_id, transport=transport)
    await session.commit()
    return result
