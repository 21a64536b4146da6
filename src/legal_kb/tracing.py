"""OpenTelemetry tracing helpers for the retrieval engine.

Every retrieval stage (normalize, vector, citation, lexical, rank, gate,
rerank) runs inside a span opened by :func:`traced_stage`, nested under one
``legal-kb.retrieve`` span per request. Answer generation gets its own
``generation`` span.

Usage with an OTLP backend such as Arize Phoenix:

    from legal_kb.tracing import configure_tracing

    configure_tracing(endpoint="http://localhost:6006/v1/traces", service_name="legal-kb")

Usage without a backend (development / testing):

    configure_tracing()   # ConsoleSpanExporter
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor, SpanExporter

# ---------------------------------------------------------------------------
# OpenInference semantic-convention attribute names
# ---------------------------------------------------------------------------

ATTR_INPUT_VALUE = "input.value"
ATTR_OUTPUT_VALUE = "output.value"
ATTR_LLM_MODEL_NAME = "llm.model_name"
ATTR_RETRIEVAL_DOCUMENTS = "retrieval.documents"
ATTR_EMBEDDING_MODEL_NAME = "embedding.model_name"

# ---------------------------------------------------------------------------
# Provider lifecycle helpers
# ---------------------------------------------------------------------------

_provider: TracerProvider | None = None


def configure_tracing(
    endpoint: str | None = None,
    service_name: str = "legal-kb",
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """Create and register a global TracerProvider.

    Args:
        endpoint: OTLP HTTP endpoint URL to send traces to. When *None* and no
            custom *exporter* is given, spans are printed to stdout via
            :class:`~opentelemetry.sdk.trace.export.ConsoleSpanExporter`.
        service_name: Label that identifies this service in the backend.
        exporter: An already-constructed span exporter, e.g. an
            ``InMemorySpanExporter`` in tests. When provided, *endpoint* is
            ignored.

    Returns:
        The configured :class:`~opentelemetry.sdk.trace.TracerProvider`, also
        set as the global OTel provider.
    """
    global _provider

    resource = Resource(attributes={SERVICE_NAME: service_name})
    provider = TracerProvider(resource=resource)

    if exporter is not None:
        chosen_exporter: SpanExporter = exporter
    elif endpoint is not None:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter,
            )
        except ImportError as exc:  # pragma: no cover
            raise ImportError(
                "opentelemetry-exporter-otlp-proto-http is required to export "
                "traces to an OTLP endpoint. Install it with:\n"
                "  pip install 'legal-kb[otlp]'"
            ) from exc
        chosen_exporter = OTLPSpanExporter(endpoint=endpoint)
    else:
        chosen_exporter = ConsoleSpanExporter()

    # SimpleSpanProcessor exports each span as soon as it ends.
    provider.add_span_processor(SimpleSpanProcessor(chosen_exporter))
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def get_tracer(name: str) -> trace.Tracer:
    """Return a tracer from the configured provider, or the no-op global one."""
    if _provider is not None:
        return _provider.get_tracer(name)
    return trace.get_tracer(name)


@contextmanager
def traced_stage(tracer: trace.Tracer, name: str, **attributes) -> Iterator[trace.Span]:
    """Run one pipeline stage inside a span.

    Keyword arguments become span attributes; ``None`` values are skipped.
    The span status is OK when the block completes and ERROR when it raises,
    and the exception is recorded and re-raised.

    Example::

        with traced_stage(tracer, "rank", **{ATTR_INPUT_VALUE: question}) as span:
            ranked = rank_candidates(...)
            span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(ranked))
    """
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise
        span.set_status(trace.StatusCode.OK)
