# ==== OPENTELEMETRY TRACING CONFIGURATION ==== #

"""
OpenTelemetry tracing for the Feishu relay.

Tracing is opt-in: spans are exported over OTLP gRPC only when
OTEL_EXPORTER_OTLP_ENDPOINT is set. Without it, get_tracer() hands out the
no-op tracer, so the spans around token refresh, dispatch batches and sweeps
cost nothing in local runs and tests.
"""

import os
from typing import Dict, Optional

from loguru import logger
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


_installed = False


def init_tracing(
    service_name: str,
    environment: Optional[str] = None,
    version: Optional[str] = None,
) -> bool:
    """
    Install an OTLP-exporting tracer provider once per process.

    Args:
        service_name: Default service.name, overridden by OTEL_SERVICE_NAME
        environment: deployment.environment resource attribute
        version: service.version resource attribute

    Returns:
        bool: True if tracing is exporting
    """
    global _installed

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        return False
    if _installed:
        return True

    attributes = _parse_key_values(os.getenv("OTEL_RESOURCE_ATTRIBUTES"))
    attributes["service.name"] = os.getenv("OTEL_SERVICE_NAME", service_name)
    if environment:
        attributes.setdefault("deployment.environment", environment)
    if version:
        attributes.setdefault("service.version", version)

    provider = TracerProvider(resource=Resource.create(attributes))
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=endpoint,
                headers=_parse_key_values(os.getenv("OTEL_EXPORTER_OTLP_HEADERS")),
            )
        )
    )
    trace.set_tracer_provider(provider)

    # FastAPI is instrumented per app in create_app()
    try:
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        logger.warning(f"Failed to instrument httpx: {e}")

    _installed = True
    logger.bind(endpoint=endpoint).info("OpenTelemetry tracing enabled")
    return True


def _parse_key_values(raw: Optional[str]) -> Dict[str, str]:
    """Parse the OTEL "k1=v1,k2=v2" environment format."""
    pairs: Dict[str, str] = {}
    for part in (raw or "").split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            pairs[key.strip()] = value.strip()
    return pairs


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer for a module (pass __name__)."""
    return trace.get_tracer(name)
