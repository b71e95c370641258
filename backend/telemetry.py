# telemetry.py — OpenTelemetry tracing for PulseBoard
"""
Traces are exported over OTLP only when OTEL_EXPORTER_OTLP_ENDPOINT is set.
The OTel packages live in the ``telemetry`` extra; without them (or without an
endpoint) every function here degrades to a no-op and GitLab calls run untraced.
"""
import os
import logging

logger = logging.getLogger("pulseboard.telemetry")

SERVICE_VERSION = "1.0.0"

_provider = None


def otlp_endpoint() -> str:
    return os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def _resource():
    from opentelemetry.sdk.resources import Resource, SERVICE_NAME

    return Resource.create({
        SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME", "pulseboard-api"),
        "service.version": SERVICE_VERSION,
        "deployment.environment": os.getenv("ENVIRONMENT", "development"),
    })


def _instrument(app, provider):
    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
            # Webhook deliveries are traced, health probes are not
            FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)
        except ImportError:
            logger.warning("opentelemetry-instrumentation-fastapi not installed")

    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        SQLAlchemyInstrumentor().instrument(tracer_provider=provider)
    except ImportError:
        logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")


def setup_telemetry(app=None):
    """Register a tracer provider and instrument the API and database layers.

    Returns the provider, or None when tracing stays disabled. Outbound GitLab
    requests get manual spans through ``get_tracer``.
    """
    global _provider
    endpoint = otlp_endpoint()
    if not endpoint:
        logger.info("Tracing disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None
    if _provider is not None:
        return _provider

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.info("OpenTelemetry SDK not installed, tracing disabled")
        return None

    try:
        provider = TracerProvider(resource=_resource())
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(provider)
        _instrument(app, provider)
    except Exception as e:
        logger.error(f"OpenTelemetry setup failed: {e}")
        return None

    _provider = provider
    logger.info(f"Tracing enabled, exporting to {endpoint}")
    return provider


def get_tracer(name: str = "pulseboard"):
    """Tracer for manual spans, or None while tracing is disabled"""
    if _provider is None:
        return None
    from opentelemetry import trace
    return trace.get_tracer(name, SERVICE_VERSION)
