import atexit
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

_TRACING_CONFIGURED = False
_HTTPX_CONFIGURED = False
_SQLALCHEMY_ENGINES: set[int] = set()
_TRACING_SHUTDOWN = False

logger = logging.getLogger(__name__)


def _resolve_service_version() -> str | None:
    for key in ("GIT_SHA", "GIT_COMMIT", "SOURCE_VERSION", "SERVICE_VERSION"):
        value = os.getenv(key)
        if value:
            return value
    return None


def _sanitize_http_attributes(span, *, path: str | None, scheme: str | None, host: str | None) -> None:
    if not span or not span.is_recording():
        return
    sanitized_path = path or "/"
    if scheme and host:
        span.set_attribute("http.url", f"{scheme}://{host}{sanitized_path}")
    span.set_attribute("http.target", sanitized_path)


def _fastapi_request_hook(span, scope) -> None:  # noqa: ANN001
    server = scope.get("server") or (None, None)
    host = server[0] if server else None
    route = scope.get("route")
    route_path = getattr(route, "path", None)
    _sanitize_http_attributes(
        span,
        path=route_path or scope.get("path", "/"),
        scheme=scope.get("scheme"),
        host=host,
    )


def _httpx_request_hook(span, request) -> None:  # noqa: ANN001
    # Webhook and Slack URLs can carry secrets in the path or query.
    url = request.url
    _sanitize_http_attributes(
        span,
        path="/" if "hooks.slack.com" in str(url.host) else url.copy_with(query=None).path,
        scheme=url.scheme,
        host=url.host,
    )


def configure_tracing(*, service_name: str | None = None) -> None:
    global _TRACING_CONFIGURED, _HTTPX_CONFIGURED
    if _TRACING_CONFIGURED:
        return

    resolved_service_name = os.getenv("OTEL_SERVICE_NAME") or service_name or "pulse-api"
    resource_attrs = {
        SERVICE_NAME: resolved_service_name,
        DEPLOYMENT_ENVIRONMENT: os.getenv("DEPLOYMENT_ENV", "local"),
    }
    service_version = _resolve_service_version()
    if service_version:
        resource_attrs[SERVICE_VERSION] = service_version

    tracer_provider = TracerProvider(resource=Resource.create(resource_attrs))
    trace.set_tracer_provider(tracer_provider)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    is_testing = os.getenv("TESTING", "").lower() == "true"
    if otlp_endpoint and not is_testing:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=otlp_endpoint.startswith("http://"))
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    elif not is_testing:
        logger.debug("tracing_exporter_skipped_no_endpoint")

    if not _HTTPX_CONFIGURED:
        HTTPXClientInstrumentor().instrument(
            tracer_provider=tracer_provider,
            request_hook=_httpx_request_hook,
        )
        _HTTPX_CONFIGURED = True

    _TRACING_CONFIGURED = True
    atexit.register(shutdown_tracing)


def instrument_fastapi(app: FastAPI, *, tracer_provider=None) -> None:  # noqa: ANN001
    FastAPIInstrumentor().instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        server_request_hook=_fastapi_request_hook,
    )


def instrument_sqlalchemy(engine) -> None:  # noqa: ANN001
    if engine is None:
        return
    engine_id = id(engine)
    if engine_id in _SQLALCHEMY_ENGINES:
        return
    SQLAlchemyInstrumentor().instrument(
        engine=engine.sync_engine,
        tracer_provider=trace.get_tracer_provider(),
        capture_statement=False,
    )
    _SQLALCHEMY_ENGINES.add(engine_id)


def shutdown_tracing(*, force_flush: bool = True) -> None:
    global _TRACING_SHUTDOWN
    if _TRACING_SHUTDOWN:
        return
    _TRACING_SHUTDOWN = True
    try:
        tracer_provider = trace.get_tracer_provider()
        if force_flush:
            flush = getattr(tracer_provider, "force_flush", None)
            if callable(flush):
                flush()
        shutdown = getattr(tracer_provider, "shutdown", None)
        if callable(shutdown):
            shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.warning("tracing_shutdown_failed", extra={"extra": {"error": type(exc).__name__}})


def get_tracer(name: str):
    return trace.get_tracer(name)
