"""Tracing for the notification pipeline

Export is off unless OTEL_EXPORTER_OTLP_ENDPOINT is set. Spans opened with
``pipeline_span`` are no-ops until ``configure_tracing`` installs a provider.
"""
import logging
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from backoffice.core.config import settings

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("backoffice")


def configure_tracing(engine=None) -> bool:
    """Install the OTLP span exporter and instrument the database engine

    Returns:
        bool: True if spans will be exported
    """
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    try:
        provider = TracerProvider(resource=Resource.create({
            "service.name": settings.OTEL_SERVICE_NAME,
            "deployment.environment": settings.OTEL_ENVIRONMENT,
        }))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(provider)
    except Exception as e:
        logger.warning(f"Tracing disabled, exporter setup failed: {e}")
        return False

    if engine is not None:
        try:
            SQLAlchemyInstrumentor().instrument(engine=engine)
        except Exception as e:
            logger.warning(f"Database spans disabled: {e}")
    return True


def instrument_app(app):
    FastAPIInstrumentor.instrument_app(app)


@contextmanager
def pipeline_span(name: str, **attributes):
    """Span around one pipeline step; None-valued attributes are dropped"""
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"webq.{key}", value)
        yield span
