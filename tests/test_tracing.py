"""Tests for tracing.py — configure_tracing, get_tracer, traced_stage and engine spans.

No OpenAI API key is needed. OTel spans are collected with InMemorySpanExporter
so tests run fully offline.
"""
from __future__ import annotations

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from legal_kb.pipeline import RetrievalEngine
from legal_kb.tracing import (
    ATTR_INPUT_VALUE,
    ATTR_LLM_MODEL_NAME,
    ATTR_RETRIEVAL_DOCUMENTS,
    configure_tracing,
    get_tracer,
    traced_stage,
)


# ---------------------------------------------------------------------------
# Shared in-memory exporter fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def mem_exporter() -> InMemorySpanExporter:
    """Fresh InMemorySpanExporter and a configured TracerProvider."""
    exporter = InMemorySpanExporter()
    configure_tracing(exporter=exporter, service_name="test-service")
    return exporter


def _by_name(exporter: InMemorySpanExporter) -> dict:
    return {span.name: span for span in exporter.get_finished_spans()}


# ---------------------------------------------------------------------------
# configure_tracing / get_tracer
# ---------------------------------------------------------------------------


class TestConfigureTracing:
    def test_returns_tracer_provider(self):
        provider = configure_tracing(exporter=InMemorySpanExporter())
        assert isinstance(provider, TracerProvider)

    def test_service_name_on_resource(self, mem_exporter):
        with traced_stage(get_tracer("test"), "stage"):
            pass
        [span] = mem_exporter.get_finished_spans()
        assert span.resource.attributes["service.name"] == "test-service"

    def test_missing_otlp_package_raises_import_error(self, monkeypatch):
        """When the otlp exporter package is absent, a helpful ImportError is raised."""
        import builtins

        real_import = builtins.__import__

        def mock_import(name, *args, **kwargs):
            if "otlp" in name:
                raise ImportError("mocked missing package")
            return real_import(name, *args, **kwargs)

        monkeypatch.setattr(builtins, "__import__", mock_import)
        with pytest.raises(ImportError, match="opentelemetry-exporter-otlp"):
            configure_tracing(endpoint="http://localhost:6006/v1/traces")


# ---------------------------------------------------------------------------
# traced_stage
# ---------------------------------------------------------------------------


class TestTracedStage:
    def test_ok_status_and_attributes(self, mem_exporter):
        with traced_stage(get_tracer("test"), "rank", top_k=8, skipped=None) as span:
            span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, 3)
        finished = _by_name(mem_exporter)["rank"]
        assert finished.status.status_code is StatusCode.OK
        assert finished.attributes["top_k"] == 8
        assert finished.attributes[ATTR_RETRIEVAL_DOCUMENTS] == 3
        assert "skipped" not in finished.attributes

    def test_error_status_and_exception_recorded(self, mem_exporter):
        with pytest.raises(ValueError):
            with traced_stage(get_tracer("test"), "gate"):
                raise ValueError("boom")
        finished = _by_name(mem_exporter)["gate"]
        assert finished.status.status_code is StatusCode.ERROR
        assert [event.name for event in finished.events] == ["exception"]

    def test_nested_stages_share_trace(self, mem_exporter):
        tracer = get_tracer("test")
        with traced_stage(tracer, "outer"):
            with traced_stage(tracer, "inner"):
                pass
        spans = _by_name(mem_exporter)
        assert spans["inner"].parent.span_id == spans["outer"].context.span_id


# ---------------------------------------------------------------------------
# RetrievalEngine spans
# ---------------------------------------------------------------------------


class TestEngineSpans:
    def test_retrieval_stages_nested_under_root(self, mem_exporter, corpus, fake_embedder, fake_generator):
        with RetrievalEngine(corpus, embedder=fake_embedder, generator=fake_generator) as engine:
            engine.retrieve("What is the penalty for theft?")
        spans = _by_name(mem_exporter)
        root = spans["legal-kb.retrieve"]
        assert root.attributes[ATTR_INPUT_VALUE] == "What is the penalty for theft?"
        for stage in ("normalize", "vector", "citation", "rank", "gate"):
            assert spans[stage].parent.span_id == root.context.span_id
        assert "lexical" not in spans

    def test_lexical_stage_traced_when_used(self, mem_exporter, corpus, fake_embedder, fake_generator):
        with RetrievalEngine(corpus, embedder=fake_embedder, generator=fake_generator) as engine:
            engine.retrieve("rule 113 section 5")
        assert "lexical" in _by_name(mem_exporter)

    def test_generation_span_carries_model(self, mem_exporter, corpus, fake_embedder, fake_generator):
        with RetrievalEngine(corpus, embedder=fake_embedder, generator=fake_generator) as engine:
            engine.answer("What is the penalty for theft?")
        generation = _by_name(mem_exporter)["generation"]
        assert generation.attributes[ATTR_LLM_MODEL_NAME] == "fake-model"
