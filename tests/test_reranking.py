"""Tests for reranking.py — cross-encoder and LLM rerankers (models mocked) and apply_reranker."""
from __future__ import annotations

import json
import threading
from unittest.mock import MagicMock, patch

import numpy as np
import openai
import pytest

from legal_kb.cache import TTLCache
from legal_kb.errors import RerankError
from legal_kb.reranking import (
    CrossEncoderReranker,
    LLMReranker,
    apply_reranker,
    blend,
    build_reranker,
    build_snippet,
    min_max_normalize,
)
from legal_kb.schema import Candidate, KnowledgeEntry, ScoredCandidate


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _scored(entry: KnowledgeEntry, final: float = 0.5, vec: float = 0.5) -> ScoredCandidate:
    return ScoredCandidate(Candidate(entry, vector_sim=vec), final, (("blend", final),))


def _ids(ranked) -> list[str]:
    return [scored.entry_id for scored in ranked]


class _StubReranker:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = 0

    def rerank(self, query, candidates, confidence):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_min_max_normalize(self):
        assert min_max_normalize([1.0, 3.0, 2.0]) == pytest.approx([0.0, 1.0, 0.5])

    def test_flat_scores_do_not_explode(self):
        assert min_max_normalize([2.0, 2.0]) == [0.0, 0.0]

    def test_min_range_dampens_small_spreads(self):
        assert min_max_normalize([50.0, 50.5], min_range=1.0) == pytest.approx([0.0, 0.5])

    def test_empty(self):
        assert min_max_normalize([]) == []

    def test_snippet_joins_title_citation_summary(self, by_id):
        snippet = build_snippet(by_id["RPC-308"])
        assert snippet.startswith("Theft - RPC Art. 308 - Theft is committed")
        assert len(snippet) <= 400

    def test_snippet_falls_back_to_body(self):
        entry = KnowledgeEntry.from_dict({"entry_id": "X", "type": "pnp_sop", "title": "T", "text": "Body"})
        assert build_snippet(entry) == "T - Body"

    def test_blend_reorders_and_records_rerank_score(self, by_id):
        ranked = [_scored(by_id["RPC-308"], 0.5), _scored(by_id["RPC-315"], 0.2)]
        blended = blend(ranked, {"RPC-308": 0.0, "RPC-315": 1.0})
        assert _ids(blended) == ["RPC-315", "RPC-308"]
        assert blended[0].final_score == pytest.approx(0.7 + 0.3 * 0.2)
        assert blended[0].rerank_score == 1.0


# ---------------------------------------------------------------------------
# CrossEncoderReranker — CrossEncoder mocked
# ---------------------------------------------------------------------------


class TestCrossEncoderReranker:
    @pytest.fixture()
    def reranker(self):
        """Return a reranker whose underlying CrossEncoder is fully mocked."""
        with patch("legal_kb.reranking.CrossEncoder") as mock_cls:
            mock_model = MagicMock()
            mock_cls.return_value = mock_model
            r = CrossEncoderReranker(model_name="cross-encoder/test-model", cache=TTLCache())
            r._mock_model = mock_model
            yield r

    def test_reorders_by_model_score(self, reranker, by_id):
        reranker._mock_model.predict.return_value = np.array([0.1, 0.9])
        ranked = [_scored(by_id["RPC-308"], 0.6), _scored(by_id["RPC-315"], 0.5)]
        assert _ids(reranker.rerank("estafa", ranked, 0.5)) == ["RPC-315", "RPC-308"]

    def test_sends_query_passage_pairs(self, reranker, by_id):
        reranker._mock_model.predict.return_value = np.array([0.5])
        reranker.rerank("theft", [_scored(by_id["RPC-308"])], 0.5)
        pairs = reranker._mock_model.predict.call_args.args[0]
        assert pairs == [["theft", build_snippet(by_id["RPC-308"])]]

    def test_low_similarity_candidates_not_scored(self, reranker, by_id):
        reranker._mock_model.predict.return_value = np.array([0.5])
        ranked = [_scored(by_id["RPC-308"], vec=0.5), _scored(by_id["RPC-315"], vec=0.05)]
        assert _ids(reranker.rerank("theft", ranked, 0.5)) == ["RPC-308"]

    def test_nothing_above_floor_raises(self, reranker, by_id):
        with pytest.raises(RerankError):
            reranker.rerank("theft", [_scored(by_id["RPC-308"], vec=0.01)], 0.5)

    def test_model_failure_raises_rerank_error(self, reranker, by_id):
        reranker._mock_model.predict.side_effect = RuntimeError("CUDA out of memory")
        with pytest.raises(RerankError):
            reranker.rerank("theft", [_scored(by_id["RPC-308"])], 0.5)

    def test_cached_scores_reused(self, reranker, by_id):
        reranker._mock_model.predict.return_value = np.array([0.1, 0.9])
        ranked = [_scored(by_id["RPC-308"]), _scored(by_id["RPC-315"])]
        reranker.rerank("estafa", ranked, 0.5)
        reranker.rerank("estafa", ranked, 0.5)
        assert reranker._mock_model.predict.call_count == 1


# ---------------------------------------------------------------------------
# LLMReranker — OpenAI client mocked
# ---------------------------------------------------------------------------


def _llm_client(payload) -> MagicMock:
    client = MagicMock()
    text = payload if isinstance(payload, str) else json.dumps(payload)
    client.responses.create.return_value = MagicMock(output_text=text)
    return client


class TestLLMReranker:
    def test_reorders_by_llm_scores(self, by_id):
        client = _llm_client({"scores": [{"id": "RPC-308", "score": 10}, {"id": "RPC-315", "score": 90}]})
        reranker = LLMReranker(client=client)
        ranked = [_scored(by_id["RPC-308"]), _scored(by_id["RPC-315"])]
        assert _ids(reranker.rerank("estafa", ranked, 0.5)) == ["RPC-315", "RPC-308"]

    def test_strong_model_near_low_confidence(self):
        reranker = LLMReranker(model="small", strong_model="large", client=MagicMock())
        assert reranker.choose_model(0.25) == "large"
        assert reranker.choose_model(0.5) == "small"

    def test_prompt_lists_items_in_rank_order(self, by_id):
        reranker = LLMReranker(client=MagicMock())
        prompt = json.loads(reranker.build_prompt("theft", [_scored(by_id["RPC-308"]), _scored(by_id["RPC-315"])]))
        assert prompt["query"] == "theft"
        assert [(item["id"], item["rank"]) for item in prompt["items"]] == [("RPC-308", 1), ("RPC-315", 2)]

    def test_requests_json_at_zero_temperature(self, by_id):
        client = _llm_client({"scores": [{"id": "RPC-308", "score": 50}]})
        LLMReranker(model="small", client=client).rerank("theft", [_scored(by_id["RPC-308"])], 0.5)
        kwargs = client.responses.create.call_args.kwargs
        assert kwargs["model"] == "small"
        assert kwargs["temperature"] == 0
        assert kwargs["text"] == {"format": {"type": "json_object"}}

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            {"scores": "none"},
            {"scores": []},
            {"scores": [{"id": "RPC-308", "score": "high"}]},
            {"scores": [{"id": "RPC-308", "score": [1, 2]}]},
        ],
    )
    def test_unusable_response_raises(self, by_id, payload):
        reranker = LLMReranker(client=_llm_client(payload))
        with pytest.raises(RerankError):
            reranker.rerank("theft", [_scored(by_id["RPC-308"])], 0.5)

    def test_api_error_raises_rerank_error(self, by_id):
        client = MagicMock()
        client.responses.create.side_effect = openai.APIConnectionError(request=MagicMock())
        with pytest.raises(RerankError):
            LLMReranker(client=client).rerank("theft", [_scored(by_id["RPC-308"])], 0.5)

    def test_entries_without_text_skipped(self):
        bare = KnowledgeEntry.from_dict({"entry_id": "X", "type": "pnp_sop", "title": "T"})
        with pytest.raises(RerankError):
            LLMReranker(client=MagicMock()).rerank("theft", [_scored(bare)], 0.5)


# ---------------------------------------------------------------------------
# apply_reranker
# ---------------------------------------------------------------------------


class TestApplyReranker:
    @pytest.fixture()
    def ranked(self, by_id):
        return [_scored(by_id["RPC-308"], 0.6), _scored(by_id["RPC-315"], 0.5), _scored(by_id["ROC-113-5"], 0.4)]

    def test_no_reranker(self, ranked):
        assert apply_reranker(None, "q", ranked, 0.5) is ranked

    def test_skip_flag(self, ranked):
        stub = _StubReranker(result=[])
        assert apply_reranker(stub, "q", ranked, 0.5, skip=True) is ranked
        assert stub.calls == 0

    def test_high_confidence_skips(self, ranked):
        stub = _StubReranker(result=[])
        assert apply_reranker(stub, "q", ranked, 0.9) is ranked
        assert stub.calls == 0

    def test_unseen_candidates_appended_in_composite_order(self, ranked):
        stub = _StubReranker(result=[ranked[1]])
        result = apply_reranker(stub, "q", ranked, 0.5)
        assert _ids(result) == ["RPC-315", "RPC-308", "ROC-113-5"]

    def test_failure_keeps_composite_order(self, ranked):
        stub = _StubReranker(error=RerankError("boom"))
        assert apply_reranker(stub, "q", ranked, 0.5) is ranked

    @pytest.mark.parametrize("error", [ValueError("bad score"), KeyError("id"), RuntimeError("model crashed")])
    def test_unexpected_error_keeps_composite_order(self, ranked, error):
        assert apply_reranker(_StubReranker(error=error), "q", ranked, 0.5) is ranked

    def test_non_numeric_llm_score_keeps_composite_order(self, ranked):
        client = _llm_client({"scores": [{"id": "RPC-315", "score": "high"}]})
        assert apply_reranker(LLMReranker(client=client), "q", ranked, 0.5) is ranked

    def test_timeout_keeps_composite_order(self, ranked):
        release = threading.Event()

        class SlowReranker:
            def rerank(self, query, candidates, confidence):
                release.wait(5)
                return list(reversed(candidates))

        try:
            assert apply_reranker(SlowReranker(), "q", ranked, 0.5, timeout_s=0.05) is ranked
        finally:
            release.set()

    def test_empty_rerank_result_keeps_order(self, ranked):
        assert apply_reranker(_StubReranker(result=[]), "q", ranked, 0.5) is ranked


class TestBuildReranker:
    @pytest.mark.parametrize("name", ["", "none"])
    def test_disabled(self, name):
        assert build_reranker(name) is None

    def test_cross_encoder(self):
        with patch("legal_kb.reranking.CrossEncoder") as mock_cls:
            reranker = build_reranker("cross_encoder", cross_encoder_model="cross-encoder/test-model")
        assert isinstance(reranker, CrossEncoderReranker)
        mock_cls.assert_called_once_with("cross-encoder/test-model")

    def test_llm(self):
        with patch("legal_kb.reranking.OpenAI"):
            assert isinstance(build_reranker("llm"), LLMReranker)

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            build_reranker("bm25")
