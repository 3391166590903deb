"""
Distributed Tracing with OpenTelemetry.

A webhook delivery produces one request span with children for signature
verification, the store API lookup and the reconciliation transaction.
Tracing is off unless TRACING_ENABLED is set; spans are then no-ops.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import settings

TRACER_NAME = "app.reconciliation"

# Probes and scrapes would drown the webhook traces
UNTRACED_PATHS = "/health,/metrics"


def setup_tracing() -> None:
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.trace_sample_ratio)),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: FastAPI) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_PATHS)


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    """Trace statements issued through an async engine (instrumented via its sync core)."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def _span_value(value: Any) -> str | int | float | bool:
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a child span. Exceptions are recorded on the span
    and re-raised.

    Usage:
        with trace_operation("reconcile_event", kind=event.kind.value) as span:
            result = await self._apply(event)
            span.set_attribute("outcome", result.outcome.value)
    """
    tracer = trace.get_tracer(TRACER_NAME)
    span_attributes = {
        key: _span_value(value) for key, value in attributes.items() if value is not None
    }
    with tracer.start_as_current_span(operation_name, attributes=span_attributes) as span:
        yield span
