import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from pulse.api.problem_details import domain_problem, problem_response, validation_problem
from pulse.api.routes_admin_jobs import router as admin_jobs_router
from pulse.api.routes_alert_rules import router as alert_rules_router
from pulse.api.routes_anomalies import router as anomalies_router
from pulse.api.routes_health import router as health_router
from pulse.api.routes_scores import router as scores_router
from pulse.api.routes_signals import router as signals_router
from pulse.api.routes_webhooks import router as webhooks_router
from pulse.api.routes_workflows import router as workflows_router
from pulse.domain.errors import DomainError
from pulse.infra.db import dispose_engine, get_session_factory
from pulse.infra.logging import clear_log_context, configure_logging, update_log_context
from pulse.infra.metrics import configure_metrics
from pulse.infra.redis import close_redis_client
from pulse.infra.tracing import configure_tracing, instrument_fastapi
from pulse.settings import settings

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("pulse.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        org_header = request.headers.get("X-Org-Id")
        if org_header:
            update_log_context(org_id=org_header)
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("request_id", request_id)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms)
            request_logger.info("request")
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:  # noqa: ANN001
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            route = request.scope.get("route")
            self.metrics.record_http_5xx(request.method, getattr(route, "path", route_label))
            raise
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_latency(request.method, route_label, status_code, time.perf_counter() - start)
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


def create_app(app_settings, *, tracer_provider=None, webhook_transport=None) -> FastAPI:  # noqa: ANN001
    if tracer_provider is None:
        configure_tracing(service_name="pulse-api")
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.metrics = getattr(app.state, "metrics", None) or metrics_client
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        yield
        await close_redis_client()
        await dispose_engine()

    app = FastAPI(title="Pulse Signals", version="1.0.0", lifespan=lifespan)
    app.state.webhook_transport = webhook_transport

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Added last so the OTel middleware wraps everything else.
    instrument_fastapi(app, tracer_provider=tracer_provider)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return validation_problem(request, exc)

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        return domain_problem(request, exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return problem_response(request, status=exc.status_code, detail=detail, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(request_id=request_id, method=request.method, path=request.url.path, status_code=500)
        logger.exception("unhandled_exception", extra={"extra": {"error_type": error_type}})
        return problem_response(request, status=500, title="Internal Server Error", detail="Unexpected error")

    app.include_router(health_router)
    app.include_router(signals_router)
    app.include_router(scores_router)
    app.include_router(anomalies_router)
    app.include_router(webhooks_router)
    app.include_router(alert_rules_router)
    app.include_router(workflows_router)
    app.include_router(admin_jobs_router)
    if app_settings.metrics_enabled:
        from pulse.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
