"""Tracing for callscribe.

Two spans matter for a live call: ``callscribe.stt`` around every provider
request (retries included) and ``callscribe.merge`` around folding a result
into the transcript.  ``OTEL_EXPORTER`` picks where they go:

    console   print finished spans (default, local runs)
    otlp      gRPC to ``OTEL_EXPORTER_OTLP_ENDPOINT``; needs the ``otlp`` extra
    none      keep the provider but export nothing (tests, CI)
"""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "callscribe"
SERVICE_VERSION = "0.1.0"
_DEFAULT_OTLP_ENDPOINT = "http://localhost:4317"

_provider: TracerProvider | None = None


def _otlp_processor() -> SpanProcessor | None:
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning("[Telemetry] opentelemetry-exporter-otlp is not installed; using console spans.")
        return None
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", _DEFAULT_OTLP_ENDPOINT)
    logger.info("[Telemetry] Exporting spans over OTLP to %s.", endpoint)
    return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))


def _span_processor(exporter: str) -> SpanProcessor | None:
    if exporter == "none":
        return None
    if exporter == "otlp":
        processor = _otlp_processor()
        if processor is not None:
            return processor
    return SimpleSpanProcessor(ConsoleSpanExporter())


def init_telemetry(exporter: str | None = None) -> TracerProvider:
    """Install the global TracerProvider once; later calls return the same one.

    Parameters
    ----------
    exporter : str, optional
        ``console``, ``otlp`` or ``none``.  Defaults to ``$OTEL_EXPORTER``.
    """
    global _provider
    if _provider is not None:
        return _provider

    kind = (exporter or os.environ.get("OTEL_EXPORTER", "console")).lower()
    provider = TracerProvider(
        resource=Resource.create({"service.name": SERVICE_NAME, "service.version": SERVICE_VERSION})
    )
    processor = _span_processor(kind)
    if processor is not None:
        provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    logger.info("[Telemetry] Tracing initialised (exporter=%s).", kind)

    _provider = provider
    return provider


def get_tracer() -> trace.Tracer:
    # Tracers from the proxy provider bind to the real one once it is installed.
    return trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)


def current_trace_id() -> str:
    """Hex trace id of the active span; empty when nothing is being traced."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return ""
    return trace.format_trace_id(context.trace_id)
