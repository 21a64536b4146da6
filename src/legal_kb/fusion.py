"""Semantic candidate generation from the normalized and raw query embeddings."""
from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field

from .embeddings import Embedder
from .errors import UpstreamError
from .log import get_logger
from .query_profile import QueryProfile
from .schema import Candidate
from .settings import RetrievalSettings
from .vector_store import VectorIndex

logger = get_logger(__name__)

SHORT_QUERY_TOKENS = 3
CITATION_TOP_K = 8
CITATION_SIM_THRESHOLD = 0.24
SHORT_QUERY_TOP_K = 16
SHORT_QUERY_SIM_THRESHOLD = 0.18


@dataclass(slots=True)
class VectorResult:
    """Merged vector-channel candidates keyed by entry id."""

    candidates: dict[str, Candidate] = field(default_factory=dict)
    best_sim: float = 0.0
    degraded: bool = False


def retrieval_knobs(profile: QueryProfile, settings: RetrievalSettings) -> tuple[int, float]:
    """Per-query ``(top_k, sim_threshold)``.

    Rule+section and article queries narrow the candidate list and demand more
    similarity; very short queries widen it and demand less.
    """
    top_k = settings.top_k
    threshold = settings.sim_threshold
    if profile.has_rule_section or profile.has_article:
        top_k = min(top_k, CITATION_TOP_K)
        threshold = max(threshold, CITATION_SIM_THRESHOLD)
    if profile.token_count <= SHORT_QUERY_TOKENS:
        top_k = max(top_k, SHORT_QUERY_TOP_K)
        threshold = min(threshold, SHORT_QUERY_SIM_THRESHOLD)
    return top_k, threshold


def needs_lexical(profile: QueryProfile, best_sim: float, sim_threshold: float) -> bool:
    """Lexical channels are skipped for strong vector hits unless the query cites a provision."""
    return best_sim < sim_threshold or profile.is_citation_query


def merge_candidate(pool: dict[str, Candidate], candidate: Candidate) -> None:
    previous = pool.get(candidate.entry_id)
    pool[candidate.entry_id] = previous.merged_with(candidate) if previous else candidate


class VectorFusor:
    """Runs both embeddings and both nearest-neighbour lookups concurrently.

    Args:
        index: Vector index to query.
        embedder: Text embedder, usually a :class:`~legal_kb.embeddings.CachedEmbedder`.
        executor: Executor shared with the rest of the request. A private
            pool is created when omitted.
    """

    def __init__(self, index: VectorIndex, embedder: Embedder, executor: Executor | None = None):
        self.index = index
        self.embedder = embedder
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="legal-kb-vector")

    def _embed(self, text: str) -> list[float] | None:
        try:
            return self.embedder(text)
        except UpstreamError as exc:
            logger.warning("embedding_unavailable", error=str(exc))
            return None

    def _search(self, embedding: list[float] | None, top_k: int) -> list | None:
        if embedding is None:
            return None
        try:
            return self.index.search(embedding, top_k)
        except UpstreamError as exc:
            logger.warning("vector_index_unavailable", error=str(exc))
            return None

    def retrieve(self, profile: QueryProfile, top_k: int) -> VectorResult:
        """Embed the semantic and raw query texts, search both, and merge by identity.

        Args:
            profile: Query profile carrying the semantic (normalized and
                expanded) and raw texts.
            top_k: Nearest neighbours requested per lookup.

        Returns:
            A :class:`VectorResult`. When embedding or search fails the result
            is empty (or partial) and ``degraded`` is set; nothing is raised.
        """
        texts = list(dict.fromkeys(text for text in (profile.semantic_text, profile.raw.strip()) if text))
        embed_futures = [self.executor.submit(self._embed, text) for text in texts]
        embeddings = [future.result() for future in embed_futures]
        search_futures = [self.executor.submit(self._search, embedding, top_k) for embedding in embeddings]
        result = VectorResult()
        for future in search_futures:
            hits = future.result()
            if hits is None:
                result.degraded = True
                continue
            for entry, similarity in hits:
                merge_candidate(result.candidates, Candidate(entry=entry, vector_sim=similarity))
                result.best_sim = max(result.best_sim, similarity)
        return result
