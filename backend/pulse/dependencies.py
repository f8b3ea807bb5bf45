import uuid

from fastapi import Header, HTTPException, Request

from pulse.infra.db import get_db_session  # noqa: F401
from pulse.settings import settings


def require_org_id(x_org_id: str | None = Header(None, alias="X-Org-Id")) -> uuid.UUID:
    """Tenant for the request; authentication lives in front of this service."""
    if not x_org_id:
        return settings.default_org_id
    try:
        return uuid.UUID(x_org_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid X-Org-Id header") from exc


def get_webhook_transport(request: Request):  # noqa: ANN201
    return getattr(request.app.state, "webhook_transport", None)
