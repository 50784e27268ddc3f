"""
OpenTelemetry configuration for the LOUD BRANDS backend.
"""
import logging
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.django import DjangoInstrumentor
from opentelemetry.instrumentation.psycopg2 import Psycopg2Instrumentor
from django.conf import settings

logger = logging.getLogger(__name__)


def setup_otel():
    """Initialize tracing for Django requests and PostgreSQL queries."""
    if not getattr(settings, "OTEL_ENABLED", False):
        logger.info("OpenTelemetry is disabled. Skipping instrumentation.")
        return

    service_name = getattr(settings, "OTEL_SERVICE_NAME", "loudbrands-backend")
    otlp_endpoint = getattr(
        settings, "OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4318/v1/traces"
    )

    resource = Resource.create({"service.name": service_name})
    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
    tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    logger.info(f"Using OTLP exporter with endpoint: {otlp_endpoint}")

    DjangoInstrumentor().instrument()

    # SQLite deployments have nothing for the psycopg2 instrumentor to wrap
    if "postgresql" in settings.DATABASES["default"]["ENGINE"]:
        Psycopg2Instrumentor().instrument()

    logger.info(f"OpenTelemetry instrumentation enabled for service: {service_name}")
