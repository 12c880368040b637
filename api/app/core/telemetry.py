"""Tracing and log correlation for the API process."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from app.core.config import Settings

logger = logging.getLogger(__name__)

CORRELATED_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# Spans for liveness probes are noise.
EXCLUDED_URLS = "healthz"

_default_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_api_logging(settings: Settings) -> None:
    correlate = settings.otel_enabled and settings.otel_log_correlation
    if correlate:
        _install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=CORRELATED_LOG_FORMAT if correlate else PLAIN_LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    configure_api_logging(settings)
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    resource = Resource.create({SERVICE_NAME: settings.otel_service_name, DEPLOYMENT_ENVIRONMENT: settings.environment})
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _span_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=EXCLUDED_URLS)
    _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    FastAPIInstrumentor.uninstrument_app(app)
    _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans for %s stay in-process", settings.otel_service_name)
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse `key=value,key2=value2`; entries without `=` or with an empty key are dropped."""

    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
