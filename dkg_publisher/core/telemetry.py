from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_INSTANCE_ID, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from dkg_publisher.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"

_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16
_default_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TelemetryRuntime:
    service_name: str
    provider: TracerProvider | None = None
    app: FastAPI | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(level: int = logging.INFO) -> None:
    """Install trace-aware log records and, if nothing else did, a root handler."""
    _install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = _start(settings, f"{settings.otel_service_name}-api")
    if runtime.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider)
        runtime.app = app
    return runtime


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    return _start(settings, f"{settings.otel_service_name}-workers", instance_id=settings.worker_name)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
        runtime.app = None
    _httpx_instrumentor.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()
    runtime.provider = None


def _start(settings: Settings, service_name: str, *, instance_id: str | None = None) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(service_name=service_name)

    if settings.otel_log_correlation:
        _install_log_correlation()

    attributes = {SERVICE_NAME: service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}
    if instance_id:
        attributes[SERVICE_INSTANCE_ID] = instance_id
    provider = TracerProvider(
        resource=Resource.create(attributes),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )

    endpoint = _exporter_endpoint(settings)
    if endpoint:
        headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", service_name)

    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    return TelemetryRuntime(service_name=service_name, provider=provider)


def _exporter_endpoint(settings: Settings) -> str | None:
    for candidate in (
        settings.otel_exporter_otlp_endpoint,
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    ):
        if candidate:
            return candidate
    return None


def _parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key=value`` header lists; pairs without a key are skipped."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _current_span_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return _EMPTY_TRACE_ID, _EMPTY_SPAN_ID
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        record.trace_id, record.span_id = _current_span_ids()
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
