"""
OpenTelemetry setup for the Codespaces orchestrator.

- Configures OTLP exporter (gRPC) to collector.
- Instruments FastAPI + logging + outgoing HTTP calls (alert webhooks).
"""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ..config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL, format=LOG_FORMAT)


def setup_otel(app: FastAPI) -> None:
    """
    Configure OpenTelemetry for the orchestrator service.

    Reads OTLP endpoint from:
      - OTEL_EXPORTER_OTLP_ENDPOINT (default: http://codespaces-otelcol:4317)
    Set OTEL_SDK_DISABLED=true to skip exporter setup (local runs, tests).
    """
    if os.getenv("OTEL_SDK_DISABLED", "false").lower() in ("1", "true", "yes"):
        setup_logging()
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "codespaces-orchestrator")
    environment = os.getenv("CODESPACES_DEPLOYMENT_ENV", "dev")

    # 1) TracerProvider with resource
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": settings.ENVIRONMENT,
            "deployment.environment": environment,
            "service.version": "0.1.0",
            "codespaces.component": "orchestrator",
        }
    )

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    # 2) OTLP gRPC exporter
    span_exporter = OTLPSpanExporter(
        endpoint=settings.OTEL_ENDPOINT,
        insecure=True,
    )
    provider.add_span_processor(BatchSpanProcessor(span_exporter))

    # 3) Instrument FastAPI, logging, and outgoing HTTP
    FastAPIInstrumentor().instrument_app(app)

    LoggingInstrumentor().instrument(
        set_logging_format=True,
    )

    RequestsInstrumentor().instrument()

    # 4) Python logging root level (INFO by default)
    setup_logging()
