from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EntryType(str, Enum):
    """Document kinds stored in the knowledge base."""

    STATUTE_SECTION = "statute_section"
    RULE_OF_COURT = "rule_of_court"
    CONSTITUTION_PROVISION = "constitution_provision"
    RIGHTS_ADVISORY = "rights_advisory"
    AGENCY_CIRCULAR = "agency_circular"
    DOJ_ISSUANCE = "doj_issuance"
    EXECUTIVE_ISSUANCE = "executive_issuance"
    CITY_ORDINANCE_SECTION = "city_ordinance_section"
    PNP_SOP = "pnp_sop"
    INCIDENT_CHECKLIST = "incident_checklist"
    TRAFFIC_RULE = "traffic_rule"


class EntryStatus(str, Enum):
    ACTIVE = "active"
    AMENDED = "amended"
    REPEALED = "repealed"


STATUTE_LIKE_TYPES = frozenset({EntryType.STATUTE_SECTION, EntryType.CITY_ORDINANCE_SECTION})


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item) for item in value if item is not None and str(item).strip())


@dataclass(frozen=True, slots=True)
class KnowledgeEntry:
    """A single legal provision as exported by the entry-management layer.

    Only ``entry_id``, ``type`` and ``title`` are required. Type-specific
    fields (``rule_no``, ``elements``, ``rights_scope`` ...) are meaningful
    only for the entry types that carry them and are left empty otherwise.
    """

    entry_id: str
    type: EntryType
    title: str
    canonical_citation: str = ""
    summary: str = ""
    body_text: str = ""
    tags: frozenset[str] = frozenset()
    law_family: str = ""
    section_id: str = ""
    status: EntryStatus = EntryStatus.ACTIVE
    effective_date: str | None = None
    verified: bool | None = None
    jurisdiction: str | None = None
    embedding: tuple[float, ...] | None = None
    rule_no: str | None = None
    section_no: str | None = None
    elements: tuple[str, ...] = ()
    penalties: tuple[str, ...] = ()
    defenses: tuple[str, ...] = ()
    rights_scope: str | None = None
    advice_points: tuple[str, ...] = ()
    source_urls: tuple[str, ...] = ()
    legal_bases: tuple[dict, ...] = ()
    related_sections: tuple[dict, ...] = ()

    @property
    def sorted_tags(self) -> list[str]:
        return sorted(self.tags)

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> KnowledgeEntry:
        """Build an entry from a loosely-shaped JSON record.

        Args:
            record: Entry object as exported by the CRUD API. ``text`` is
                accepted as an alias of ``body_text`` and ``id`` of
                ``entry_id``.

        Returns:
            A validated, immutable entry.

        Raises:
            ValueError: If the identifier is missing or ``type``/``status``
                is not a known enumeration value.
        """
        entry_id = _str_or_none(record.get("entry_id") or record.get("id"))
        if entry_id is None:
            raise ValueError("entry record has no entry_id")
        entry_type = EntryType(str(record.get("type") or "").strip().lower())
        status_raw = str(record.get("status") or "active").strip().lower()
        embedding = record.get("embedding")
        verified = record.get("verified")
        return cls(
            entry_id=entry_id,
            type=entry_type,
            title=str(record.get("title") or ""),
            canonical_citation=str(record.get("canonical_citation") or ""),
            summary=str(record.get("summary") or ""),
            body_text=str(record.get("body_text") or record.get("text") or ""),
            tags=frozenset(_str_tuple(record.get("tags"))),
            law_family=str(record.get("law_family") or ""),
            section_id=str(record.get("section_id") or ""),
            status=EntryStatus(status_raw),
            effective_date=_str_or_none(record.get("effective_date")),
            verified=verified if isinstance(verified, bool) else None,
            jurisdiction=_str_or_none(record.get("jurisdiction")),
            embedding=tuple(float(x) for x in embedding) if embedding else None,
            rule_no=_str_or_none(record.get("rule_no")),
            section_no=_str_or_none(record.get("section_no")),
            elements=_str_tuple(record.get("elements")),
            penalties=_str_tuple(record.get("penalties")),
            defenses=_str_tuple(record.get("defenses")),
            rights_scope=_str_or_none(record.get("rights_scope")),
            advice_points=_str_tuple(record.get("advice_points")),
            source_urls=_str_tuple(record.get("source_urls")),
            legal_bases=tuple(r for r in record.get("legal_bases") or () if isinstance(r, dict)),
            related_sections=tuple(r for r in record.get("related_sections") or () if isinstance(r, dict)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the JSON record shape accepted by :meth:`from_dict`."""
        return {
            "entry_id": self.entry_id,
            "type": self.type.value,
            "title": self.title,
            "canonical_citation": self.canonical_citation,
            "summary": self.summary,
            "text": self.body_text,
            "tags": self.sorted_tags,
            "law_family": self.law_family,
            "section_id": self.section_id,
            "status": self.status.value,
            "effective_date": self.effective_date,
            "verified": self.verified,
            "jurisdiction": self.jurisdiction,
            "rule_no": self.rule_no,
            "section_no": self.section_no,
            "elements": list(self.elements),
            "penalties": list(self.penalties),
            "defenses": list(self.defenses),
            "rights_scope": self.rights_scope,
            "advice_points": list(self.advice_points),
            "source_urls": list(self.source_urls),
            "legal_bases": list(self.legal_bases),
            "related_sections": list(self.related_sections),
        }


@dataclass(frozen=True, slots=True)
class SearchFilters:
    """Structured dashboard filters. ``None`` or ``"all"`` disables a filter."""

    type: str | None = None
    jurisdiction: str | None = None
    status: str | None = None
    verified: str | None = None

    @classmethod
    def from_dict(cls, record: dict[str, Any] | None) -> SearchFilters:
        record = record or {}
        return cls(
            type=record.get("type"),
            jurisdiction=record.get("jurisdiction"),
            status=record.get("status"),
            verified=record.get("verified"),
        )

    def accepts(self, entry: KnowledgeEntry) -> bool:
        if self.type and self.type != "all" and entry.type.value != self.type:
            return False
        if self.jurisdiction and self.jurisdiction != "all" and entry.jurisdiction != self.jurisdiction:
            return False
        if self.status and self.status != "all" and entry.status.value != self.status:
            return False
        if self.verified and self.verified != "all":
            wants_verified = self.verified == "yes"
            if (entry.verified is True) != wants_verified:
                return False
        return True


@dataclass(frozen=True, slots=True)
class Candidate:
    """Per-entry evidence gathered across retrieval channels.

    Sub-scores only ever go up when two observations of the same entry are
    merged, and match flags only ever switch on.
    """

    entry: KnowledgeEntry
    vector_sim: float = 0.0
    lexical_sim: float = 0.0
    bm25_score: float = 0.0
    direct_match: bool = False
    exact_match: bool = False
    article_match: bool = False
    nearby_article: bool = False

    @property
    def entry_id(self) -> str:
        return self.entry.entry_id

    def merged_with(self, other: Candidate) -> Candidate:
        if other.entry_id != self.entry_id:
            raise ValueError(f"cannot merge {other.entry_id} into {self.entry_id}")
        return Candidate(
            entry=self.entry,
            vector_sim=max(self.vector_sim, other.vector_sim),
            lexical_sim=max(self.lexical_sim, other.lexical_sim),
            bm25_score=max(self.bm25_score, other.bm25_score),
            direct_match=self.direct_match or other.direct_match,
            exact_match=self.exact_match or other.exact_match,
            article_match=self.article_match or other.article_match,
            nearby_article=self.nearby_article or other.nearby_article,
        )


@dataclass(frozen=True, slots=True)
class ScoredCandidate:
    """Candidate plus its final composite score and the rules that built it."""

    candidate: Candidate
    final_score: float
    contributions: tuple[tuple[str, float], ...] = ()
    rerank_score: float | None = None

    @property
    def entry(self) -> KnowledgeEntry:
        return self.candidate.entry

    @property
    def entry_id(self) -> str:
        return self.candidate.entry_id


@dataclass(slots=True)
class Source:
    """Response-facing view of one ranked entry."""

    entry_id: str
    type: str
    title: str
    canonical_citation: str
    summary: str
    tags: list[str]
    similarity: float
    lexical_similarity: float
    final_score: float
    rule_no: str | None = None
    section_no: str | None = None
    rights_scope: str | None = None
    source_urls: list[str] = field(default_factory=list)
    external_relations: list[dict] = field(default_factory=list)
    internal_relations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ChatResponse:
    answer: str
    sources: list[Source]


@dataclass(slots=True)
class SearchResponse:
    """Dashboard search output with best-effort suggestions for sparse results."""

    results: list[KnowledgeEntry]
    suggestion: str | None = None
    suggestions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StreamEvent:
    """One event of a streamed answer. ``complete`` and ``error`` are terminal."""

    type: str
    content: str = ""
    sources: list[Source] = field(default_factory=list)
    message: str = ""


@dataclass(slots=True)
class GoldQueryRecord:
    """Labeled evaluation query with the entry ids considered correct."""

    query: str
    ideal_top: list[str] = field(default_factory=list)
    filters: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> GoldQueryRecord:
        return cls(
            query=str(record.get("query") or ""),
            ideal_top=[str(item) for item in record.get("ideal_top") or []],
            filters=record.get("filters"),
        )

    def to_dict(self) -> dict[str, Any]:
        record: dict[str, Any] = {"query": self.query}
        if self.filters is not None:
            record["filters"] = self.filters
        record["ideal_top"] = list(self.ideal_top)
        return record


@dataclass(slots=True)
class EvaluationResult:
    total: int
    p1: float
    p3: float
    ndcg10: float


@dataclass(slots=True)
class MissReport:
    """Expected ids absent from the top-k of one gold query."""

    query: str
    missing: list[str]
    ranked: list[str]
