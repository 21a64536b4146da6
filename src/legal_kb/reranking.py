"""Optional second-stage reranking of the composite-ranked shortlist.

Rerankers only reorder. :func:`apply_reranker` puts the reranked shortlist
first and appends every candidate the reranker did not see, in composite
order, so no candidate is ever dropped here.
"""
from __future__ import annotations

import dataclasses
import json
import time
from concurrent.futures import Executor, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Protocol

from openai import OpenAI, OpenAIError
from sentence_transformers import CrossEncoder

from .cache import TTLCache
from .errors import RerankError
from .log import get_logger
from .schema import KnowledgeEntry, ScoredCandidate

logger = get_logger(__name__)

RERANK_BLEND = 0.7
HIGH_CONFIDENCE = 0.85
LOW_CONFIDENCE = 0.22
SNIPPET_CHARS = 400

LLM_RERANK_SYSTEM = (
    "You are a precise reranker. "
    "Respond only with a JSON object of the form {\"scores\": [{\"id\": ..., \"score\": ...}]}."
)


class Reranker(Protocol):
    def rerank(self, query: str, candidates: list[ScoredCandidate], confidence: float) -> list[ScoredCandidate]: ...


def build_snippet(entry: KnowledgeEntry, max_chars: int = SNIPPET_CHARS) -> str:
    """Title, citation and summary (or body) joined into one short passage."""
    parts = [entry.title, entry.canonical_citation, entry.summary or entry.body_text]
    return " - ".join(part.strip() for part in parts if part and part.strip())[:max_chars]


def min_max_normalize(scores: list[float], min_range: float = 0.01) -> list[float]:
    """Scale scores into [0, 1]; ``min_range`` keeps near-equal scores from exploding."""
    if not scores:
        return []
    low, high = min(scores), max(scores)
    span = max(min_range, high - low)
    return [(score - low) / span for score in scores]


def blend(candidates: list[ScoredCandidate], normalized: dict[str, float]) -> list[ScoredCandidate]:
    """Blend rerank scores with composite scores and sort best first."""
    blended = [
        dataclasses.replace(
            scored,
            final_score=RERANK_BLEND * normalized.get(scored.entry_id, 0.0)
            + (1 - RERANK_BLEND) * scored.final_score,
            rerank_score=normalized.get(scored.entry_id, 0.0),
        )
        for scored in candidates
    ]
    return sorted(blended, key=lambda scored: -scored.final_score)


def _cache_key(query: str, candidates: list[ScoredCandidate]) -> str:
    return f"rr:{query}::{','.join(scored.entry_id for scored in candidates)}"


class CrossEncoderReranker:
    """Second-stage reranker using a local cross-encoder model.

    Args:
        model_name: Sentence-transformers cross-encoder model identifier.
        top_n: Shortlist size that gets re-scored.
        min_vector_sim: Candidates below this vector similarity are not sent
            to the model.
        cache: Optional rerank cache keyed by query and candidate ids.
    """

    def __init__(
        self,
        model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2",
        top_n: int = 8,
        max_candidates: int = 24,
        min_vector_sim: float = 0.15,
        cache: TTLCache[str, dict[str, float]] | None = None,
        model: CrossEncoder | None = None,
    ):
        self.model = model or CrossEncoder(model_name)
        self.top_n = top_n
        self.max_candidates = max_candidates
        self.min_vector_sim = min_vector_sim
        self.cache = cache

    def rerank(self, query: str, candidates: list[ScoredCandidate], confidence: float) -> list[ScoredCandidate]:
        """Re-score the shortlist with query-passage cross-encoder scores.

        Raises:
            RerankError: If the model fails or nothing qualifies for scoring.
        """
        pool = [scored for scored in candidates if scored.candidate.vector_sim >= self.min_vector_sim]
        shortlist = pool[: min(self.top_n, self.max_candidates)]
        if not shortlist:
            raise RerankError("no candidates above the cross-encoder similarity floor")

        key = _cache_key(query, shortlist)
        cached = self.cache.get(key) if self.cache is not None else None
        started = time.perf_counter()
        if cached is None:
            pairs = [[query, build_snippet(scored.entry)] for scored in shortlist]
            try:
                raw_scores = self.model.predict(pairs)
            except Exception as exc:
                raise RerankError(f"cross-encoder predict failed: {exc}") from exc
            normalized = min_max_normalize([float(score) for score in raw_scores])
            cached = {scored.entry_id: score for scored, score in zip(shortlist, normalized, strict=True)}
            if self.cache is not None:
                self.cache.set(key, cached)
        logger.info(
            "rerank_stats",
            reranker="cross_encoder",
            items=len(shortlist),
            latency_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return blend(shortlist, cached)


class LLMReranker:
    """Relevance scoring by an OpenAI model returning 0-100 scores as JSON.

    A stronger model is used when confidence sits just above the low edge,
    where a wrong order costs the most.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        strong_model: str = "gpt-4o",
        client: OpenAI | None = None,
        max_candidates: int = 24,
        low_confidence: float = LOW_CONFIDENCE,
        cache: TTLCache[str, dict[str, float]] | None = None,
    ):
        self.model = model
        self.strong_model = strong_model
        self.client = client or OpenAI()
        self.max_candidates = max_candidates
        self.low_confidence = low_confidence
        self.cache = cache

    def choose_model(self, confidence: float) -> str:
        return self.strong_model if confidence < self.low_confidence + 0.1 else self.model

    def build_prompt(self, query: str, shortlist: list[ScoredCandidate]) -> str:
        items = [
            {
                "id": scored.entry_id,
                "title": scored.entry.title,
                "type": scored.entry.type.value,
                "citation": scored.entry.canonical_citation,
                "snippet": (scored.entry.summary or scored.entry.body_text)[:1200],
                "rank": rank,
            }
            for rank, scored in enumerate(shortlist, start=1)
        ]
        return json.dumps(
            {
                "task": "Relevance scoring for legal RAG",
                "query": query,
                "scoring": "Return {id, score} pairs with score 0-100. Directly answers = 95-100, "
                "partial = 60-80, unrelated = 0-20.",
                "cues": "Prefer exact matches on rule/section/article numbers and quoted definitions.",
                "items": items,
            }
        )

    def _score(self, query: str, shortlist: list[ScoredCandidate], model: str) -> dict[str, float]:
        try:
            response = self.client.responses.create(
                model=model,
                instructions=LLM_RERANK_SYSTEM,
                input=self.build_prompt(query, shortlist),
                temperature=0,
                text={"format": {"type": "json_object"}},
            )
            parsed = json.loads(response.output_text or "{}")
        except (OpenAIError, json.JSONDecodeError) as exc:
            raise RerankError(f"LLM rerank failed: {exc}") from exc

        rows = parsed.get("scores") if isinstance(parsed, dict) else parsed
        if not isinstance(rows, list):
            raise RerankError("LLM rerank returned no score list")
        try:
            pairs = [(str(row.get("id") or ""), float(row.get("score") or 0)) for row in rows if isinstance(row, dict)]
        except (TypeError, ValueError) as exc:
            raise RerankError(f"LLM rerank returned a non-numeric score: {exc}") from exc
        if not pairs:
            raise RerankError("LLM rerank returned no scores")
        # Scores are on a 0-100 scale, so a range under 1 point is treated as flat.
        normalized = min_max_normalize([score for _, score in pairs], min_range=1.0)
        return {entry_id: score for (entry_id, _), score in zip(pairs, normalized, strict=True)}

    def rerank(self, query: str, candidates: list[ScoredCandidate], confidence: float) -> list[ScoredCandidate]:
        shortlist = [
            scored for scored in candidates if scored.entry.summary or scored.entry.body_text
        ][: self.max_candidates]
        if not shortlist:
            raise RerankError("no candidates with text to rerank")

        key = _cache_key(query, shortlist)
        scores = self.cache.get(key) if self.cache is not None else None
        model = ""
        started = time.perf_counter()
        if scores is None:
            model = self.choose_model(confidence)
            scores = self._score(query, shortlist, model)
            if self.cache is not None:
                self.cache.set(key, scores)
        logger.info(
            "rerank_stats",
            reranker="llm",
            model=model,
            items=len(shortlist),
            cached=not model,
            latency_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return blend(shortlist, scores)


def apply_reranker(
    reranker: Reranker | None,
    query: str,
    ranked: list[ScoredCandidate],
    confidence: float,
    skip: bool = False,
    executor: Executor | None = None,
    timeout_s: float = 8.0,
) -> list[ScoredCandidate]:
    """Run a reranker with a bounded timeout, keeping the composite order on failure.

    Args:
        reranker: Strategy to apply, or ``None`` to disable reranking.
        query: Raw user question.
        ranked: Composite-ranked candidates.
        confidence: Gate confidence for this request.
        skip: Set by the gate for exact or article matches and very high
            confidence.
        executor: Executor to run the reranker on. A single-use pool is
            created when omitted.
        timeout_s: Upper bound on reranker latency.

    Returns:
        Reranked shortlist followed by the untouched remainder.
    """
    if reranker is None or skip or not ranked or confidence > HIGH_CONFIDENCE:
        return ranked

    own_executor = executor is None
    pool = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="legal-kb-rerank")
    try:
        future = pool.submit(reranker.rerank, query, ranked, confidence)
        reranked = future.result(timeout=timeout_s)
    except (RerankError, FuturesTimeout) as exc:
        logger.warning("rerank_failed", error=str(exc) or type(exc).__name__, kept="composite_order")
        return ranked
    except Exception as exc:
        # Any reranker fault keeps the composite order.
        logger.exception("rerank_failed", error=str(exc), error_type=type(exc).__name__, kept="composite_order")
        return ranked
    finally:
        if own_executor:
            pool.shutdown(wait=False)

    if not reranked:
        return ranked
    seen = {scored.entry_id for scored in reranked}
    return [*reranked, *(scored for scored in ranked if scored.entry_id not in seen)]


def build_reranker(
    name: str,
    cross_encoder_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2",
    llm_model: str = "gpt-4o-mini",
    llm_strong_model: str = "gpt-4o",
    top_n: int = 8,
    max_candidates: int = 24,
    cache: TTLCache[str, dict[str, float]] | None = None,
) -> Reranker | None:
    """Instantiate the reranker named by configuration (``none``, ``cross_encoder`` or ``llm``)."""
    if name in ("", "none"):
        return None
    if name == "cross_encoder":
        return CrossEncoderReranker(cross_encoder_model, top_n=top_n, max_candidates=max_candidates, cache=cache)
    if name == "llm":
        return LLMReranker(llm_model, llm_strong_model, max_candidates=max_candidates, cache=cache)
    raise ValueError(f"unknown reranker: {name!r}")
