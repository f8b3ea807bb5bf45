"""``application/problem+json`` responses for the public API."""

import uuid
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pulse.domain.errors import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    DomainError,
)

PROBLEM_MEDIA_TYPE = "application/problem+json"
_LOCATION_PREFIXES = {"body", "query", "path", "header"}


def request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    if not request_id:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def problem_response(
    request: Request,
    *,
    status: int,
    detail: str,
    title: str | None = None,
    type_: str | None = None,
    errors: list[dict[str, Any]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = request_id_for(request)
    if title is None:
        try:
            title = HTTPStatus(status).phrase
        except ValueError:
            title = "Error"
    body = {
        "type": type_ or (PROBLEM_TYPE_SERVER if status >= 500 else PROBLEM_TYPE_DOMAIN),
        "title": title,
        "status": status,
        "detail": detail,
        "request_id": request_id,
        "errors": errors or [],
    }
    response = JSONResponse(status_code=status, content=body, headers=headers, media_type=PROBLEM_MEDIA_TYPE)
    response.headers.setdefault("X-Request-ID", request_id)
    return response


def domain_problem(request: Request, exc: DomainError) -> JSONResponse:
    return problem_response(
        request,
        status=exc.status_code,
        title=exc.title,
        detail=exc.detail,
        type_=exc.type,
        errors=exc.errors,
    )


def validation_problem(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 listing each invalid field by its camelCase name, e.g. ``sourceId``."""
    errors = []
    for error in exc.errors():
        parts = [str(part) for part in error.get("loc", ()) if part not in _LOCATION_PREFIXES]
        errors.append({"field": ".".join(parts) or "body", "message": error.get("msg", "Invalid value")})
    return problem_response(
        request,
        status=422,
        title="Validation Error",
        detail="Request validation failed",
        type_=PROBLEM_TYPE_VALIDATION,
        errors=errors,
    )
