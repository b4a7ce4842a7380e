# telemetry.py - Optional OpenTelemetry tracing for FabTrack
"""
Tracing is switched on by OTEL_EXPORTER_OTLP_ENDPOINT. Without it, or without
the ``otel`` extra installed, every function here is a no-op and ``span()``
yields ``None``.
"""
import os
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

logger = logging.getLogger("fabtrack.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "fabtrack-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")

_provider = None


def _build_provider():
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({
        RES_SVC_NAME: SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": ENVIRONMENT,
    }))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
    trace.set_tracer_provider(provider)
    return provider


def _instrument_app(app, provider) -> None:
    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    except ImportError:
        logger.warning("opentelemetry-instrumentation-fastapi not installed")
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)


def _instrument_engine(engine, provider) -> None:
    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
    except ImportError:
        logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")
        return
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)


def setup_telemetry(app=None, engine=None):
    """Register an OTLP tracer provider and instrument the app and engine."""
    global _provider
    if not OTLP_ENDPOINT:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None
    if _provider is not None:
        return _provider

    try:
        provider = _build_provider()
    except ImportError:
        logger.info("OpenTelemetry SDK not installed, tracing disabled")
        return None
    except Exception as e:
        logger.error(f"OpenTelemetry setup failed: {e}")
        return None

    if app is not None:
        _instrument_app(app, provider)
    if engine is not None:
        _instrument_engine(engine, provider)

    _provider = provider
    logger.info(f"OpenTelemetry initialised → {OTLP_ENDPOINT}")
    return provider


def shutdown_telemetry() -> None:
    """Flush buffered spans; called when the app stops."""
    global _provider
    if _provider is None:
        return
    try:
        _provider.shutdown()
    except Exception as e:
        logger.warning(f"OpenTelemetry shutdown failed: {e}")
    _provider = None


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """Trace a block when tracing is active."""
    try:
        from opentelemetry import trace
    except ImportError:
        yield None
        return
    tracer = trace.get_tracer("fabtrack", SERVICE_VERSION)
    with tracer.start_as_current_span(name, attributes=attributes or {}) as current:
        yield current
