"""Request orchestration for the conversational and dashboard paths."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator

from rapidfuzz import fuzz, process

from .cache import TTLCache
from .citations import CitationIndex
from .embeddings import CachedEmbedder, Embedder, OpenAIEmbedder
from .errors import EmptyQueryError, UpstreamError
from .fusion import VectorFusor, VectorResult, needs_lexical, retrieval_knobs
from .gate import REFUSAL_ANSWER, SAFETY_MESSAGE, ConfidenceGate, GateDecision, GateInputs, GateOutcome
from .lexical import KeywordIndex, TrigramIndex, lexical_search
from .log import get_logger
from .normalization import normalize
from .qa import Generator, OpenAIGenerator, build_prompt
from .query_profile import QueryProfile, StructuredQueryGenerator, build_profile
from .ranking import CandidatePool, RankingSignals, rank_candidates
from .reranking import Reranker, apply_reranker, build_reranker
from .schema import (
    Candidate,
    ChatResponse,
    KnowledgeEntry,
    ScoredCandidate,
    SearchFilters,
    SearchResponse,
    Source,
    StreamEvent,
)
from .settings import Settings
from .tracing import (
    ATTR_INPUT_VALUE,
    ATTR_LLM_MODEL_NAME,
    ATTR_OUTPUT_VALUE,
    ATTR_RETRIEVAL_DOCUMENTS,
    get_tracer,
    traced_stage,
)
from .vector_store import InMemoryVectorIndex, VectorIndex

logger = get_logger(__name__)

MIN_RESULTS_BEFORE_SUGGESTING = 3
SUGGESTION_LIMIT = 3
SUGGESTION_MIN_SCORE = 60.0
MAX_EXTERNAL_RELATIONS = 10
MAX_INTERNAL_RELATIONS = 20
MAX_SOURCE_URLS = 10


@dataclass(slots=True)
class Retrieval:
    """Everything one conversational request learned before generation."""

    profile: QueryProfile
    ranked: list[ScoredCandidate]
    decision: GateDecision
    best_sim: float
    used_lexical: bool
    degraded: bool


def to_source(scored: ScoredCandidate) -> Source:
    """Project a ranked candidate onto the response shape, relations flattened."""
    entry = scored.entry
    relations = [*entry.legal_bases, *entry.related_sections]
    return Source(
        entry_id=entry.entry_id,
        type=entry.type.value,
        title=entry.title,
        canonical_citation=entry.canonical_citation,
        summary=entry.summary,
        tags=entry.sorted_tags,
        similarity=scored.candidate.vector_sim,
        lexical_similarity=scored.candidate.lexical_sim,
        final_score=scored.final_score,
        rule_no=entry.rule_no,
        section_no=entry.section_no,
        rights_scope=entry.rights_scope,
        source_urls=list(entry.source_urls[:MAX_SOURCE_URLS]),
        external_relations=[
            {key: str(relation.get(key) or "") for key in ("citation", "title", "url", "note")}
            for relation in relations
            if relation.get("type") == "external"
        ][:MAX_EXTERNAL_RELATIONS],
        internal_relations=[
            str(relation["entry_id"])
            for relation in relations
            if relation.get("type") == "internal" and relation.get("entry_id")
        ][:MAX_INTERNAL_RELATIONS],
    )


class RetrievalEngine:
    """Hybrid retrieval, gating and answer generation over an in-memory corpus.

    Args:
        entries: The corpus. It is indexed once, here.
        embedder: Text embedder. Defaults to :class:`OpenAIEmbedder`; always
            wrapped with the embedding cache.
        generator: Answer generator. Defaults to :class:`OpenAIGenerator`,
            built on first use.
        vector_index: Nearest-neighbour index. Defaults to exact search over
            the embeddings stored on the entries.
        settings: Runtime configuration.
        structured_generator: Optional LLM extractor for query metadata. The
            heuristic fallback is used when omitted.
        reranker: Optional reranker. Defaults to the one named by
            ``settings.retrieval.reranker``.
    """

    def __init__(
        self,
        entries: list[KnowledgeEntry],
        embedder: Embedder | None = None,
        generator: Generator | None = None,
        vector_index: VectorIndex | None = None,
        settings: Settings | None = None,
        structured_generator: StructuredQueryGenerator | None = None,
        reranker: Reranker | None = None,
    ):
        self.settings = settings or Settings()
        cache_settings = self.settings.cache
        retrieval = self.settings.retrieval

        self.entries = list(entries)
        self.executor = ThreadPoolExecutor(max_workers=retrieval.max_workers, thread_name_prefix="legal-kb")
        self.embedder = CachedEmbedder(
            embedder or OpenAIEmbedder(self.settings.openai.embedding_model),
            TTLCache(max_size=cache_settings.embed_max, ttl_seconds=cache_settings.embed_ttl_s),
        )
        self._generator = generator
        self.structured_generator = structured_generator
        self.reranker = reranker or build_reranker(
            retrieval.reranker,
            cross_encoder_model=retrieval.cross_encoder_model,
            llm_model=self.settings.openai.rerank_model,
            llm_strong_model=self.settings.openai.rerank_model_strong,
            top_n=retrieval.rerank_top_n,
            max_candidates=retrieval.rerank_max_candidates,
            cache=TTLCache(max_size=cache_settings.rerank_max, ttl_seconds=cache_settings.rerank_ttl_s),
        )
        self.fusor = VectorFusor(vector_index or InMemoryVectorIndex(self.entries), self.embedder, self.executor)
        self.citations = CitationIndex(self.entries)
        self.trigrams = TrigramIndex(self.entries, threshold=retrieval.trigram_threshold)
        self.keywords = KeywordIndex(self.entries)
        self.gate = ConfidenceGate(self.settings.gate)
        self.answer_cache: TTLCache[str, ChatResponse] = TTLCache(
            max_size=cache_settings.answer_max, ttl_seconds=cache_settings.answer_ttl_s
        )
        self.retrieval_cache: TTLCache[str, Retrieval] = TTLCache(
            max_size=cache_settings.answer_max, ttl_seconds=cache_settings.answer_ttl_s
        )
        self.tracer = get_tracer("legal_kb.pipeline")

    def __enter__(self) -> RetrievalEngine:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.executor.shutdown(wait=False)

    @property
    def generator(self) -> Generator:
        if self._generator is None:
            self._generator = OpenAIGenerator(self.settings.openai.chat_model)
        return self._generator

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _lexical_candidates(self, profile: QueryProfile) -> list[Candidate]:
        limit = self.settings.retrieval.lexical_limit
        texts = list(dict.fromkeys(text for text in (profile.normalized, profile.raw.strip()) if text))
        trigram_futures = [self.executor.submit(self.trigrams.search, text, limit) for text in texts]
        keyword_future = self.executor.submit(self.keywords.search, list(profile.tokens), limit)
        candidates = [
            Candidate(entry=entry, lexical_sim=similarity)
            for future in trigram_futures
            for entry, similarity in future.result()
        ]
        candidates.extend(Candidate(entry=entry, bm25_score=score) for entry, score in keyword_future.result())
        return candidates

    def retrieve(self, question: str) -> Retrieval:
        """Run every retrieval channel, rank, and gate one question.

        Args:
            question: Raw user question.

        Returns:
            A :class:`Retrieval` carrying the ranked candidates (at most the
            per-query ``top_k``) and the gate decision. Reranking has been
            applied when the gate answered and did not ask to skip it.

        Raises:
            EmptyQueryError: If the question is blank.
        """
        if not question or not question.strip():
            raise EmptyQueryError("question")
        cached = self.retrieval_cache.get(normalize(question))
        if cached is not None:
            return cached

        with traced_stage(self.tracer, "legal-kb.retrieve", **{ATTR_INPUT_VALUE: question}) as root:
            with traced_stage(self.tracer, "normalize"):
                structured = self.structured_generator.generate(question) if self.structured_generator else None
                profile = build_profile(question, structured)
            top_k, sim_threshold = retrieval_knobs(profile, self.settings.retrieval)

            citation_future = self.executor.submit(self.citations.lookup, profile.citation, profile.normalized)
            with traced_stage(self.tracer, "vector", top_k=top_k) as span:
                vector: VectorResult = self.fusor.retrieve(profile, top_k)
                span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(vector.candidates))
                span.set_attribute("best_sim", vector.best_sim)
            with traced_stage(self.tracer, "citation") as span:
                direct_matches = citation_future.result()
                span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(direct_matches))

            pool = CandidatePool()
            pool.add_all(vector.candidates.values())
            pool.add_direct_matches(direct_matches)
            used_lexical = vector.degraded or needs_lexical(profile, vector.best_sim, sim_threshold)
            if used_lexical:
                with traced_stage(self.tracer, "lexical") as span:
                    lexical = self._lexical_candidates(profile)
                    pool.add_all(lexical)
                    span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(lexical))

            with traced_stage(self.tracer, "rank") as span:
                signals = RankingSignals(sim_threshold=sim_threshold, weights=self.settings.weights)
                ranked = rank_candidates(pool, profile, signals, limit=top_k)
                span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(ranked))

            with traced_stage(self.tracer, "gate") as span:
                decision = self.gate.decide(GateInputs.from_ranked(ranked, profile))
                span.set_attribute("outcome", decision.outcome.value)
                span.set_attribute("confidence", decision.confidence)

            if decision.should_answer and self.reranker is not None:
                with traced_stage(self.tracer, "rerank", skipped=decision.skip_rerank):
                    ranked = apply_reranker(
                        self.reranker,
                        question,
                        ranked,
                        decision.confidence,
                        skip=decision.skip_rerank,
                        executor=self.executor,
                        timeout_s=self.settings.retrieval.rerank_timeout_s,
                    )
            root.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(ranked))

        best = ranked[0] if ranked else None
        logger.info(
            "retrieval",
            question=question,
            best_sim=round(vector.best_sim, 4),
            used_lexical=used_lexical,
            degraded=vector.degraded,
            top_k_returned=len(ranked),
            top1=None
            if best is None
            else {
                "entry_id": best.entry_id,
                "vector_sim": round(best.candidate.vector_sim, 4),
                "lexical_sim": round(best.candidate.lexical_sim, 4),
                "final_score": round(best.final_score, 4),
            },
        )
        retrieval = Retrieval(
            profile=profile,
            ranked=ranked,
            decision=decision,
            best_sim=vector.best_sim,
            used_lexical=used_lexical,
            degraded=vector.degraded,
        )
        self.retrieval_cache.set(profile.normalized, retrieval)
        return retrieval

    # ------------------------------------------------------------------
    # Conversational path
    # ------------------------------------------------------------------

    def _fixed_response(self, retrieval: Retrieval) -> ChatResponse | None:
        outcome = retrieval.decision.outcome
        if outcome is GateOutcome.SAFETY_ADVISORY:
            return ChatResponse(answer=SAFETY_MESSAGE, sources=[])
        if outcome is GateOutcome.REFUSE:
            return ChatResponse(answer=REFUSAL_ANSWER, sources=[to_source(scored) for scored in retrieval.ranked])
        return None

    def answer(self, question: str) -> ChatResponse:
        """Answer a question from the corpus, or refuse with ``"I don't know."``.

        Raises:
            EmptyQueryError: If the question is blank.
            UpstreamError: If answer generation fails.
        """
        if not question or not question.strip():
            raise EmptyQueryError("question")
        key = normalize(question)
        cached = self.answer_cache.get(key)
        if cached is not None:
            return cached

        retrieval = self.retrieve(question)
        response = self._fixed_response(retrieval)
        if response is None:
            entries = [scored.entry for scored in retrieval.ranked]
            with traced_stage(
                self.tracer,
                "generation",
                **{ATTR_INPUT_VALUE: question, ATTR_LLM_MODEL_NAME: getattr(self.generator, "model", None)},
            ) as span:
                text = self.generator.generate(build_prompt(question, entries))
                span.set_attribute(ATTR_OUTPUT_VALUE, text[:500])
            response = ChatResponse(answer=text, sources=[to_source(scored) for scored in retrieval.ranked])
        self.answer_cache.set(key, response)
        return response

    def stream(self, question: str) -> Iterator[StreamEvent]:
        """Stream an answer as events.

        Yields ``start``, ``retrieval_complete``, zero or more ``token``
        events, then exactly one terminal ``complete`` or ``error``. Blank
        questions raise :class:`EmptyQueryError` immediately, before any
        event. Stopping iteration stops generation.
        """
        if not question or not question.strip():
            raise EmptyQueryError("question")
        return self._stream_events(question)

    def _stream_events(self, question: str) -> Iterator[StreamEvent]:
        yield StreamEvent(type="start")
        try:
            retrieval = self.retrieve(question)
        except UpstreamError as exc:
            logger.error("stream_failed", stage="retrieval", error=str(exc))
            yield StreamEvent(type="error", message=str(exc))
            return

        sources = [to_source(scored) for scored in retrieval.ranked]
        yield StreamEvent(type="retrieval_complete", sources=sources)
        fixed = self._fixed_response(retrieval)
        if fixed is not None:
            yield StreamEvent(type="complete", content=fixed.answer, sources=fixed.sources)
            return

        prompt = build_prompt(question, [scored.entry for scored in retrieval.ranked])
        parts: list[str] = []
        try:
            for delta in self.generator.stream(prompt):
                parts.append(delta)
                yield StreamEvent(type="token", content=delta)
        except UpstreamError as exc:
            logger.error("stream_failed", stage="generation", error=str(exc))
            yield StreamEvent(type="error", message=str(exc))
            return
        except Exception as exc:
            # Every stream ends with a terminal event, whatever the generator raised.
            logger.exception("stream_failed", stage="generation", error=str(exc), error_type=type(exc).__name__)
            yield StreamEvent(type="error", message=str(exc) or type(exc).__name__)
            return
        answer = "".join(parts)
        self.answer_cache.set(normalize(question), ChatResponse(answer=answer, sources=sources))
        yield StreamEvent(type="complete", content=answer, sources=sources)

    # ------------------------------------------------------------------
    # Dashboard path
    # ------------------------------------------------------------------

    def search(self, query: str, filters: SearchFilters | None = None, limit: int | None = None) -> SearchResponse:
        """Deterministic lexical search with title suggestions for sparse results."""
        results = lexical_search(self.entries, query, filters, limit)
        if len(results) >= MIN_RESULTS_BEFORE_SUGGESTING or not query or not query.strip():
            return SearchResponse(results=results)

        titles = list(dict.fromkeys(entry.title for entry in self.entries if entry.title))
        matches = process.extract(
            query,
            titles,
            scorer=fuzz.WRatio,
            processor=normalize,
            limit=SUGGESTION_LIMIT + len(results),
            score_cutoff=SUGGESTION_MIN_SCORE,
        )
        shown = {entry.title for entry in results}
        suggestions = [title for title, _, _ in matches if title not in shown][:SUGGESTION_LIMIT]
        return SearchResponse(
            results=results,
            suggestion=suggestions[0] if suggestions else None,
            suggestions=suggestions,
        )
