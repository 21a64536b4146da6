from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


@dataclass(slots=True)
class OpenAISettings:
    """Runtime model configuration for embedding, generation and rerank calls."""

    embedding_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4.1-mini"
    rerank_model: str = "gpt-4o-mini"
    rerank_model_strong: str = "gpt-4o"


@dataclass(slots=True)
class RetrievalSettings:
    """Per-request retrieval knobs for the conversational path."""

    top_k: int = 12
    sim_threshold: float = 0.20
    lexical_limit: int = 24
    trigram_threshold: float = 0.3
    reranker: str = "none"
    rerank_timeout_s: float = 8.0
    rerank_top_n: int = 8
    rerank_max_candidates: int = 24
    cross_encoder_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    max_workers: int = 6


@dataclass(slots=True)
class CacheSettings:
    """TTL and capacity for each process-wide cache."""

    embed_ttl_s: float = 300.0
    embed_max: int = 200
    answer_ttl_s: float = 600.0
    answer_max: int = 200
    rerank_ttl_s: float = 3600.0
    rerank_max: int = 200


@dataclass(slots=True)
class ScoringWeights:
    """Composite-score blend weights and additive boosts.

    These are tuned values. Changing them is a tuning exercise and every one of
    them can be overridden by constructing a new instance.
    """

    high_vec_weight: float = 0.65
    high_lex_weight: float = 0.25
    high_kw_weight: float = 0.10
    low_vec_weight: float = 0.35
    low_lex_weight: float = 0.45
    low_kw_weight: float = 0.20
    bm25_scale: float = 8.0
    type_hint_bonus: float = 0.03
    topic_overlap_bonus: float = 0.05
    topic_overlap_cap: float = 0.10
    keyword_bonus: float = 0.05
    keyword_cap: float = 0.15
    direct_match_boost: float = 2.0
    exact_title_citation_boost: float = 10.0
    article_lexical_boost: float = 0.35
    nearby_article_boost: float = 0.10
    statute_citation_bonus: float = 0.50


@dataclass(slots=True)
class GateThresholds:
    """Confidence-gate threshold, its floor, and the per-rule reductions."""

    base: float = 0.22
    floor: float = 0.08
    high_confidence: float = 0.85
    safety_max_vec: float = 0.35
    citation_drop: float = 0.10
    urgent_drop: float = 0.04
    broad_drop: float = 0.03
    metadata_drop: float = 0.04
    rights_drop: float = 0.04
    definitional_drop: float = 0.03
    generic_statute_drop: float = 0.05
    metadata_low_sim: float = 0.35
    broad_min_candidates: int = 5
    broad_max_tokens: int = 4


@dataclass(slots=True)
class Paths:
    """Common project paths used by the evaluation tools."""

    data_dir: str = "data"
    artifacts_dir: str = "artifacts"


@dataclass(slots=True)
class Settings:
    """Bundle of every settings group loaded at startup."""

    openai: OpenAISettings = field(default_factory=OpenAISettings)
    retrieval: RetrievalSettings = field(default_factory=RetrievalSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    gate: GateThresholds = field(default_factory=GateThresholds)
    paths: Paths = field(default_factory=Paths)
    log_level: str = "INFO"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def load_settings() -> Settings:
    """Load environment-backed settings and return typed config objects.

    Returns:
        A :class:`Settings` bundle whose fields fall back to the dataclass
        defaults when the matching environment variable is unset.
    """
    load_dotenv()
    openai_settings = OpenAISettings(
        embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
        chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4.1-mini"),
        rerank_model=os.getenv("OPENAI_RERANK_MODEL", "gpt-4o-mini"),
        rerank_model_strong=os.getenv("OPENAI_RERANK_MODEL_STRONG", "gpt-4o"),
    )
    retrieval = RetrievalSettings(
        top_k=_env_int("LEGAL_KB_TOP_K", 12),
        sim_threshold=_env_float("LEGAL_KB_SIM_THRESHOLD", 0.20),
        reranker=os.getenv("LEGAL_KB_RERANKER", "none").lower(),
        rerank_timeout_s=_env_float("LEGAL_KB_RERANK_TIMEOUT", 8.0),
    )
    cache = CacheSettings(
        embed_ttl_s=_env_float("LEGAL_KB_EMBED_CACHE_TTL", 300.0),
        embed_max=_env_int("LEGAL_KB_EMBED_CACHE_MAX", 200),
        answer_ttl_s=_env_float("LEGAL_KB_ANSWER_CACHE_TTL", 600.0),
        answer_max=_env_int("LEGAL_KB_ANSWER_CACHE_MAX", 200),
    )
    gate = GateThresholds(base=_env_float("LEGAL_KB_CONF_THRESHOLD", 0.22))
    return Settings(
        openai=openai_settings,
        retrieval=retrieval,
        cache=cache,
        gate=gate,
        log_level=os.getenv("LEGAL_KB_LOG_LEVEL", "INFO"),
    )
