"""Tracing and log correlation shared by the API, the worker and the selector.

Each process registers one tracer provider named ``<otel_service_name>-<component>``
and stamps every log record with the active trace and span ids, so a worker log
line can be matched to the investigation span that emitted it.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
import os
from urllib.parse import unquote

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from claimcheck.core.config import Settings

COMPONENTS = frozenset({"api", "worker", "selector"})
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
NO_TRACE_ID = "0" * 32
NO_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


@dataclass(slots=True)
class OtlpTarget:
    endpoint: str
    headers: dict[str, str] = field(default_factory=dict)

    def exporter(self) -> OTLPSpanExporter:
        return OTLPSpanExporter(endpoint=self.endpoint, headers=self.headers or None)


@dataclass(slots=True)
class TelemetryRuntime:
    service_name: str
    provider: TracerProvider | None = None
    app: FastAPI | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(level: int = logging.INFO) -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def service_name_for(settings: Settings, component: str) -> str:
    if component not in COMPONENTS:
        raise ValueError(f"unknown telemetry component: {component}")
    return f"{settings.otel_service_name}-{component}"


def start_telemetry(settings: Settings, component: str, *, app: FastAPI | None = None) -> TelemetryRuntime:
    service_name = service_name_for(settings, component)
    if not settings.otel_enabled:
        return TelemetryRuntime(service_name=service_name)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    target = resolve_otlp_target(settings)
    if target is None:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", service_name)
    else:
        provider.add_span_processor(BatchSpanProcessor(target.exporter()))
    trace.set_tracer_provider(provider)

    # Investigator calls go out over httpx; the API additionally traces inbound requests.
    _HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    return TelemetryRuntime(service_name=service_name, provider=provider, app=app)


def stop_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    _HTTPX_INSTRUMENTOR.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def resolve_otlp_target(settings: Settings, environ: Mapping[str, str] | None = None) -> OtlpTarget | None:
    """Pick the trace exporter endpoint: settings first, then the standard OTEL_* variables.

    The generic ``OTEL_EXPORTER_OTLP_ENDPOINT`` names the collector root, so the
    HTTP traces path is appended to it; the traces-specific variable is used as given.
    """
    env = os.environ if environ is None else environ
    endpoint = settings.otel_exporter_otlp_endpoint or env.get("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if not endpoint:
        base = env.get("OTEL_EXPORTER_OTLP_ENDPOINT")
        if not base:
            return None
        endpoint = f"{base.rstrip('/')}/v1/traces"

    raw_headers = (
        settings.otel_exporter_otlp_headers
        or env.get("OTEL_EXPORTER_OTLP_TRACES_HEADERS")
        or env.get("OTEL_EXPORTER_OTLP_HEADERS")
    )
    return OtlpTarget(endpoint=endpoint, headers=parse_otlp_headers(raw_headers))


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    # Comma-separated key=value pairs with percent-encoded values; malformed pairs are skipped.
    headers: dict[str, str] = {}
    if not raw:
        return headers
    for pair in raw.split(","):
        key, separator, value = pair.partition("=")
        key = key.strip()
        if separator and key:
            headers[key] = unquote(value.strip())
    return headers


def _install_log_correlation() -> None:
    current = logging.getLogRecordFactory()
    if getattr(current, "adds_trace_context", False):
        return

    def correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
        record = current(*args, **kwargs)
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = trace.format_trace_id(span_context.trace_id)
            record.span_id = trace.format_span_id(span_context.span_id)
        else:
            record.trace_id = NO_TRACE_ID
            record.span_id = NO_SPAN_ID
        return record

    correlated_record.adds_trace_context = True  # type: ignore[attr-defined]
    logging.setLogRecordFactory(correlated_record)
