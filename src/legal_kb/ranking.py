"""Composite scoring over merged retrieval candidates.

``score_candidate`` is a pure function: it applies the rules in ``RULES`` in
order, records each non-zero contribution, and returns a frozen
:class:`~legal_kb.schema.ScoredCandidate`. Nothing here mutates a candidate.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .citations import DIRECT_KINDS, DirectMatch, MatchKind, citation_key, contains_ref
from .lexical import SCORE_PRECISION, tie_break_key
from .normalization import normalize
from .query_profile import QueryProfile
from .schema import Candidate, EntryType, KnowledgeEntry, ScoredCandidate, STATUTE_LIKE_TYPES
from .settings import ScoringWeights

# (query hint pattern, entry types it favours), matched on normalized text.
TYPE_HINTS: tuple[tuple[re.Pattern[str], frozenset[EntryType]], ...] = (
    (re.compile(r"element|penalt|defense"), STATUTE_LIKE_TYPES),
    (re.compile(r"rule|section|form|time limit"), frozenset({EntryType.RULE_OF_COURT})),
    (re.compile(r"right|arrest|counsel|privacy|minor|gbv"), frozenset({EntryType.RIGHTS_ADVISORY})),
)


@dataclass(frozen=True, slots=True)
class RankingSignals:
    """Per-request inputs to scoring that are not part of the query itself."""

    sim_threshold: float = 0.20
    weights: ScoringWeights = field(default_factory=ScoringWeights)


class CandidatePool:
    """Candidates merged by ``entry_id`` across every retrieval channel."""

    def __init__(self):
        self._items: dict[str, Candidate] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items.values())

    def get(self, entry_id: str) -> Candidate | None:
        return self._items.get(entry_id)

    def add(self, candidate: Candidate) -> None:
        previous = self._items.get(candidate.entry_id)
        self._items[candidate.entry_id] = previous.merged_with(candidate) if previous else candidate

    def add_all(self, candidates: Iterable[Candidate]) -> None:
        for candidate in candidates:
            self.add(candidate)

    def add_direct_matches(self, matches: Iterable[DirectMatch]) -> None:
        for match in matches:
            self.add(
                Candidate(
                    entry=match.entry,
                    direct_match=match.kind in DIRECT_KINDS,
                    exact_match=match.kind is MatchKind.EXACT_TITLE_CITATION,
                    article_match=match.kind is MatchKind.ARTICLE_CROSS_SOURCE,
                    nearby_article=match.kind is MatchKind.NEARBY_ARTICLE,
                )
            )


def _entry_topic_text(entry: KnowledgeEntry) -> str:
    return normalize(" ".join([entry.title, entry.summary, *entry.sorted_tags]))


def blend_rule(candidate: Candidate, profile: QueryProfile, signals: RankingSignals) -> float:
    weights = signals.weights
    keyword = min(1.0, candidate.bm25_score / weights.bm25_scale) if weights.bm25_scale > 0 else 0.0
    if candidate.vector_sim >= signals.sim_threshold:
        return (
            weights.high_vec_weight * candidate.vector_sim
            + weights.high_lex_weight * candidate.lexical_sim
            + weights.high_kw_weight * keyword
        )
    return (
        weights.low_vec_weight * candidate.vector_sim
        + weights.low_lex_weight * candidate.lexical_sim
        + weights.low_kw_weight * keyword
    )


def type_hint_rule(candidate: Candidate, profile: QueryProfile, signals: RankingSignals) -> float:
    for pattern, types in TYPE_HINTS:
        if candidate.entry.type in types and pattern.search(profile.normalized):
            return signals.weights.type_hint_bonus
    return 0.0


def topic_overlap_rule(candidate: Candidate, profile: QueryProfile, signals: RankingSignals) -> float:
    topics = [normalize(topic) for topic in profile.structured.legal_topics]
    topics = [topic for topic in topics if topic]
    if not topics:
        return 0.0
    text = _entry_topic_text(candidate.entry)
    hits = sum(1 for topic in topics if contains_ref(text, topic))
    weights = signals.weights
    return min(weights.topic_overlap_cap, hits * weights.topic_overlap_bonus)


def match_boost_rule(candidate: Candidate, profile: QueryProfile, signals: RankingSignals) -> float:
    weights = signals.weights
    boost = 0.0
    if candidate.direct_match:
        boost += weights.direct_match_boost
    if candidate.exact_match:
        boost += weights.exact_title_citation_boost
    if candidate.article_match:
        boost += weights.article_lexical_boost
    if candidate.nearby_article:
        boost += weights.nearby_article_boost
    return boost


def keyword_rule(candidate: Candidate, profile: QueryProfile, signals: RankingSignals) -> float:
    keywords = [normalize(keyword) for keyword in profile.structured.keywords]
    keywords = [keyword for keyword in keywords if keyword]
    if not keywords:
        return 0.0
    entry = candidate.entry
    text = normalize(" ".join([entry.title, entry.canonical_citation, *entry.sorted_tags]))
    hits = sum(1 for keyword in keywords if contains_ref(text, keyword))
    weights = signals.weights
    return min(weights.keyword_cap, hits * weights.keyword_bonus)


def statute_citation_rule(candidate: Candidate, profile: QueryProfile, signals: RankingSignals) -> float:
    refs = profile.statute_refs
    if not refs:
        return 0.0
    citation = citation_key(normalize(candidate.entry.canonical_citation))
    if citation and any(contains_ref(citation, ref) for ref in refs):
        return signals.weights.statute_citation_bonus
    return 0.0


ScoringRule = Callable[[Candidate, QueryProfile, RankingSignals], float]

RULES: tuple[tuple[str, ScoringRule], ...] = (
    ("blend", blend_rule),
    ("type_hint", type_hint_rule),
    ("topic_overlap", topic_overlap_rule),
    ("match_boost", match_boost_rule),
    ("keyword", keyword_rule),
    ("statute_citation", statute_citation_rule),
)


def score_candidate(candidate: Candidate, profile: QueryProfile, signals: RankingSignals) -> ScoredCandidate:
    """Apply every scoring rule in order and keep the explanation.

    Args:
        candidate: Merged evidence for one entry.
        profile: Derived query facts.
        signals: Request-level threshold and weights.

    Returns:
        A :class:`ScoredCandidate` whose ``contributions`` lists each rule
        that changed the score, in application order. ``blend`` is always
        present.
    """
    total = 0.0
    contributions: list[tuple[str, float]] = []
    for name, rule in RULES:
        delta = rule(candidate, profile, signals)
        if delta or name == "blend":
            contributions.append((name, delta))
            total += delta
    return ScoredCandidate(candidate=candidate, final_score=total, contributions=tuple(contributions))


def rank_key(scored: ScoredCandidate) -> tuple:
    # Scores are compared at fixed precision so float noise cannot reorder ties.
    return (-round(scored.final_score, SCORE_PRECISION), tie_break_key(scored.entry))


def rank_candidates(
    candidates: Iterable[Candidate],
    profile: QueryProfile,
    signals: RankingSignals,
    limit: int | None = None,
) -> list[ScoredCandidate]:
    """Score every candidate and return them best first with deterministic tie-breaks."""
    scored = sorted((score_candidate(candidate, profile, signals) for candidate in candidates), key=rank_key)
    return scored[:limit] if limit else scored
