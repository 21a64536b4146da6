"""Derived query facts shared by retrieval, ranking and the confidence gate."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from openai import OpenAI, OpenAIError

from .cache import TTLCache
from .citations import CitationPattern, detect_citation
from .log import get_logger
from .normalization import normalize, tokenize
from .variants import expand_query_text, expand_query_variants

logger = get_logger(__name__)

_DEFINITIONAL_RE = re.compile(r"\b(?:what is|what are|define|meaning of|definition of|explain)\b")
_URGENT_RE = re.compile(
    r"\b(?:bail|warrant|arrest\w*|custody|detention|detained|emergency|inquest|deadline|filing|time limit)\b"
)
_THREAT_RE = re.compile(
    r"\b(?:(?:i|we) (?:want|will|am going|m going|plan|am planning|m planning|wanna|need) (?:to )?"
    r"|how (?:do|can|to) (?:i |we )?)"
    r"(?:kill|murder|hurt|harm|stab|shoot|poison|attack|bomb|beat up)\b"
)
_RIGHTS_OF_RE = re.compile(r"\b(?:right of|my right|right when|right during|right as)\b")
_GENERIC_STATUTE_RE = re.compile(
    r"\b(?:revised penal code|rule of court|civil code|family code|labor code|constitution"
    r"|anti \w+(?: \w+)? (?:act|law)|\w+ act|\w+ law)\b"
)
_DIGIT_RE = re.compile(r"\d")

FALLBACK_STOPWORDS = frozenset(
    {"the", "a", "an", "is", "are", "what", "how", "when", "where", "why", "can", "in", "of", "to", "for"}
)
URGENCY_LEVELS = ("low", "medium", "high")

STRUCTURED_QUERY_PROMPT = """You are a Structured Query Generator for a legal assistant specializing in Philippine law.
Transform the user's question into a structured JSON query that improves hybrid retrieval.
Do NOT answer the question. Do NOT fabricate statute sections that are not explicitly mentioned.
If no statute is referenced, output "statutes_referenced": [].
Respond ONLY with a JSON object with these keys:
normalized_question (string), keywords (array), legal_topics (array), statutes_referenced (array),
jurisdiction (string, default "Philippines"), temporal_scope (string), related_terms (array),
urgency ("low" | "medium" | "high"; high for bail, warrants, custody), query_expansions (array)."""


def _str_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if item)


@dataclass(frozen=True, slots=True)
class StructuredQuery:
    """Retrieval metadata extracted from the question (LLM or heuristic)."""

    normalized_question: str = ""
    keywords: tuple[str, ...] = ()
    legal_topics: tuple[str, ...] = ()
    statutes_referenced: tuple[str, ...] = ()
    jurisdiction: str = "Philippines"
    temporal_scope: str = ""
    related_terms: tuple[str, ...] = ()
    urgency: str = "low"
    query_expansions: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> StructuredQuery:
        urgency = str(record.get("urgency") or "").lower()
        return cls(
            normalized_question=str(record.get("normalized_question") or ""),
            keywords=_str_list(record.get("keywords")),
            legal_topics=_str_list(record.get("legal_topics")),
            statutes_referenced=_str_list(record.get("statutes_referenced")),
            jurisdiction=str(record.get("jurisdiction") or "Philippines"),
            temporal_scope=str(record.get("temporal_scope") or ""),
            related_terms=_str_list(record.get("related_terms")),
            urgency=urgency if urgency in URGENCY_LEVELS else "low",
            query_expansions=_str_list(record.get("query_expansions")),
        )


def fallback_structured_query(question: str) -> StructuredQuery:
    """Heuristic metadata used when the LLM generator is disabled or fails."""
    lowered = question.lower()
    urgency = "low"
    if re.search(r"\b(?:bail|warrant|arrest|custody|detention|emergency)\b", lowered):
        urgency = "high"
    elif re.search(r"\b(?:deadline|filing|period|time limit)\b", lowered):
        urgency = "medium"
    keywords = [word for word in tokenize(normalize(question)) if len(word) > 2 and word not in FALLBACK_STOPWORDS]
    return StructuredQuery(normalized_question=question, keywords=tuple(keywords[:10]), urgency=urgency)


class StructuredQueryGenerator:
    """OpenAI-backed structured query extraction with a TTL cache and heuristic fallback."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        client: OpenAI | None = None,
        cache: TTLCache[str, StructuredQuery] | None = None,
    ):
        self.model = model
        self.client = client or OpenAI()
        self.cache = cache if cache is not None else TTLCache(max_size=300, ttl_seconds=600.0)

    def generate(self, question: str) -> StructuredQuery:
        cached = self.cache.get(question)
        if cached is not None:
            return cached
        try:
            response = self.client.responses.create(
                model=self.model,
                instructions=STRUCTURED_QUERY_PROMPT,
                input=question,
                temperature=0.1,
                text={"format": {"type": "json_object"}},
            )
            parsed = json.loads(response.output_text or "{}")
        except (OpenAIError, json.JSONDecodeError) as exc:
            logger.warning("structured_query_failed", error=str(exc))
            return fallback_structured_query(question)
        if not isinstance(parsed, dict):
            return fallback_structured_query(question)
        structured = StructuredQuery.from_dict(parsed)
        self.cache.set(question, structured)
        logger.info(
            "structured_query_generated",
            model=self.model,
            keywords=len(structured.keywords),
            statutes=len(structured.statutes_referenced),
            urgency=structured.urgency,
        )
        return structured


@dataclass(frozen=True, slots=True)
class QueryProfile:
    """Everything the pipeline derives from one raw question.

    The boolean flags describe the query's shape. Ranking uses them for type
    hints and the confidence gate uses them to relax its threshold.
    """

    raw: str
    normalized: str
    tokens: tuple[str, ...]
    variants: frozenset[str]
    semantic_text: str
    citation: CitationPattern
    structured: StructuredQuery = field(default_factory=StructuredQuery)
    is_definitional: bool = False
    is_urgent: bool = False
    is_threat: bool = False
    is_rights_of: bool = False
    is_generic_statute: bool = False

    @property
    def token_count(self) -> int:
        return len(self.tokens)

    @property
    def has_rule_section(self) -> bool:
        return self.citation.has_rule_section

    @property
    def has_article(self) -> bool:
        return self.citation.has_article

    @property
    def has_statute_reference(self) -> bool:
        return bool(self.citation.statute_refs)

    @property
    def is_citation_query(self) -> bool:
        return not self.citation.is_empty

    @property
    def statute_refs(self) -> tuple[str, ...]:
        """Statute references from the query text plus any the structured metadata names."""
        refs = list(self.citation.statute_refs)
        for raw in self.structured.statutes_referenced:
            refs.extend(detect_citation(normalize(raw)).statute_refs)
        return tuple(dict.fromkeys(refs))


def build_profile(question: str, structured: StructuredQuery | None = None) -> QueryProfile:
    """Normalize, expand and classify a raw question.

    Args:
        question: Raw user text.
        structured: Optional structured metadata. The heuristic fallback is
            used when omitted.

    Returns:
        A frozen :class:`QueryProfile`.
    """
    normalized = normalize(question)
    tokens = tokenize(normalized)
    citation = detect_citation(normalized)
    structured = structured or fallback_structured_query(question)
    return QueryProfile(
        raw=question,
        normalized=normalized,
        tokens=tuple(tokens),
        variants=frozenset(expand_query_variants(tokens)),
        semantic_text=expand_query_text(normalized),
        citation=citation,
        structured=structured,
        is_definitional=bool(_DEFINITIONAL_RE.search(normalized)),
        is_urgent=structured.urgency != "low" or bool(_URGENT_RE.search(normalized)),
        is_threat=bool(_THREAT_RE.search(normalized)),
        is_rights_of=bool(_RIGHTS_OF_RE.search(normalized)),
        is_generic_statute=bool(_GENERIC_STATUTE_RE.search(normalized)) and not _DIGIT_RE.search(normalized),
    )
