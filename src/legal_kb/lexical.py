"""Lexical retrieval channels.

Three independent scorers live here:

* the tiered field scorer (``score_entry`` / ``lexical_search``) used by the
  dashboard search and the evaluation tools,
* ``TrigramIndex``, a pg_trgm-compatible similarity channel for the
  conversational path,
* ``KeywordIndex``, a BM25 channel over each entry's embedding text.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from rank_bm25 import BM25Okapi
from rapidfuzz.distance import Levenshtein

from .embeddings import build_embedding_text
from .normalization import compact, loose_form, normalize, number_letter_form, parenthetical_form, tokenize
from .schema import EntryType, KnowledgeEntry, SearchFilters
from .variants import AGENCY_ACRONYMS, expand_query_variants, expand_word_variants

EXACT_TITLE_CITATION_SCORE = 1000.0
PROXIMITY_WINDOW = 40
SCORE_PRECISION = 6

# (document-type phrase, hinted entry type). The first phrase found wins; a
# ``None`` type still counts as a signal for the agency-field boost.
TYPE_PHRASE_SIGNALS: tuple[tuple[str, EntryType | None], ...] = (
    ("memorandum circular", EntryType.AGENCY_CIRCULAR),
    ("mc ", EntryType.AGENCY_CIRCULAR),
    ("department order", EntryType.EXECUTIVE_ISSUANCE),
    ("license to sell", EntryType.EXECUTIVE_ISSUANCE),
    ("franchise suspension", EntryType.AGENCY_CIRCULAR),
    ("clearance", None),
)
TYPE_MATCH_BONUS = 6.0
AGENCY_FIELDS = frozenset({"title", "law_family", "tags"})


@dataclass(frozen=True, slots=True)
class QueryTerms:
    """Precomputed query forms compared against every field."""

    normalized: str
    words: tuple[str, ...]
    variants: frozenset[str]
    word_variants: tuple[frozenset[str], ...]
    compact: str
    parenthetical: str
    agency_signal: bool = False
    has_type_signal: bool = False
    type_hint: EntryType | None = None


@dataclass(frozen=True, slots=True)
class LexicalMatch:
    score: float
    has_match: bool


def build_query_terms(query: str) -> QueryTerms:
    normalized = normalize(query)
    words = tokenize(normalized)
    word_set = set(words)
    signal = next(((phrase, hint) for phrase, hint in TYPE_PHRASE_SIGNALS if phrase in f"{normalized} "), None)
    return QueryTerms(
        normalized=normalized,
        words=tuple(words),
        variants=frozenset(expand_query_variants(words)),
        word_variants=tuple(frozenset(expand_word_variants(word)) for word in words),
        compact=compact(normalized),
        parenthetical=parenthetical_form(normalized),
        agency_signal=any(acronym in word_set for acronym in AGENCY_ACRONYMS),
        has_type_signal=signal is not None,
        type_hint=signal[1] if signal else None,
    )


def entry_fields(entry: KnowledgeEntry) -> list[tuple[str, str, float]]:
    """The weighted ``(name, text, weight)`` fields an entry is scored on."""
    tags = " ".join(entry.sorted_tags)
    has_pair = bool(entry.title and entry.canonical_citation)
    blob = " ".join(
        part
        for part in (entry.title, entry.canonical_citation, entry.section_id, entry.law_family, tags, entry.summary)
        if part
    )
    return [
        ("title", entry.title, 12),
        ("title_citation", f"{entry.title} {entry.canonical_citation}" if has_pair else "", 13),
        ("citation_title", f"{entry.canonical_citation} {entry.title}" if has_pair else "", 12),
        ("citation", entry.canonical_citation, 9),
        ("section_id", entry.section_id, 6),
        ("law_family", entry.law_family, 5),
        ("tags", tags, 4),
        ("entry_id", entry.entry_id, 5),
        ("all_fields", blob, 3),
        ("summary", entry.summary, 3),
        ("effective_date", entry.effective_date or "", 3),
        ("body", entry.body_text, 2),
    ]


def has_ordered_proximity(text: str, words: Iterable[str], window: int = PROXIMITY_WINDOW) -> bool:
    """True when every word occurs in order and the first-to-last span fits *window*."""
    words = list(words)
    if len(words) < 2:
        return False
    start = 0
    positions = []
    for word in words:
        index = text.find(word, start)
        if index == -1:
            return False
        positions.append(index)
        start = index + len(word)
    return positions[-1] - positions[0] <= window


def simple_fuzzy_match(normalized_text: str, terms: QueryTerms) -> bool:
    if not normalized_text or not terms.normalized:
        return False
    query = terms.normalized
    compact_text = compact(normalized_text)
    if query in normalized_text or terms.compact in compact_text:
        return True
    number_letter = number_letter_form(query)
    if number_letter in normalized_text or number_letter in compact_text:
        return True
    text_words = tokenize(normalized_text)
    if any(word.startswith(query) or query.startswith(word) for word in text_words):
        return True
    if len(terms.words) > 1:
        return all(
            word in normalized_text or any(tw.startswith(word) or word.startswith(tw) for tw in text_words)
            for word in terms.words
        )
    return False


def edit_distance_one_match(terms: QueryTerms, text_words: list[str]) -> bool:
    """Any 3..6 character query token within one edit of some field token."""
    short = [word for word in terms.words if 3 <= len(word) <= 6]
    return any(
        abs(len(query_word) - len(text_word)) <= 1
        and Levenshtein.distance(query_word, text_word, score_cutoff=1) <= 1
        for query_word in short
        for text_word in text_words
    )


def _variant_coverage(terms: QueryTerms, text_words: list[str]) -> tuple[float, int]:
    field_variants: set[str] = set()
    for word in text_words:
        field_variants.update(expand_word_variants(word))
    matched = sum(1 for variants in terms.word_variants if variants & field_variants)
    if not matched and terms.variants & field_variants:
        matched = 1
    return matched / max(1, len(terms.words)), matched


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive boosts, so 4.5 becomes 5 rather than 4."""
    return math.floor(value + 0.5)


def score_field(text: str, weight: float, terms: QueryTerms, is_summary: bool, phrase_boost_used: bool):
    """Score one field by the first tier it satisfies.

    Returns:
        Tuple ``(score, matched, phrase_boost_used)``.
    """
    normalized_text = normalize(text)
    if not normalized_text:
        return 0.0, False, phrase_boost_used
    query = terms.normalized
    if normalized_text == query:
        return weight * 3, True, phrase_boost_used
    if normalized_text.startswith(query):
        return weight * 2, True, phrase_boost_used
    if query in normalized_text:
        score = weight
        multiword = len(terms.words) > 1
        if not phrase_boost_used and multiword and (weight >= 12 or is_summary):
            score += min(20, round_half_up(weight * 1.5))
            phrase_boost_used = True
        if multiword and weight >= 9 and has_ordered_proximity(normalized_text, terms.words):
            score += min(10, round_half_up(weight * 0.5))
        return score, True, phrase_boost_used
    if terms.compact and terms.compact in compact(normalized_text):
        return weight * 0.9, True, phrase_boost_used
    if terms.parenthetical != query and terms.parenthetical in loose_form(text):
        return weight * 0.9, True, phrase_boost_used
    text_words = tokenize(normalized_text)
    coverage, matched = _variant_coverage(terms, text_words)
    if coverage >= 0.6:
        return weight * (0.6 + 0.4 * min(1.0, coverage)), True, phrase_boost_used
    if matched >= 1:
        return weight * 0.4, True, phrase_boost_used
    if simple_fuzzy_match(normalized_text, terms):
        return weight * 0.5, True, phrase_boost_used
    if weight >= 6 and edit_distance_one_match(terms, text_words):
        return weight * 0.6, True, phrase_boost_used
    return 0.0, False, phrase_boost_used


def score_entry(entry: KnowledgeEntry, terms: QueryTerms) -> LexicalMatch:
    """Sum the tiered field scores plus the exact title+citation and signal boosts.

    Args:
        entry: Entry to score.
        terms: Query forms from :func:`build_query_terms`.

    Returns:
        The total score and whether any field matched at all.
    """
    if not terms.normalized:
        return LexicalMatch(0.0, False)
    score = 0.0
    has_match = False
    if entry.title and entry.canonical_citation:
        pair = normalize(f"{entry.title} {entry.canonical_citation}")
        reverse = normalize(f"{entry.canonical_citation} {entry.title}")
        if terms.normalized in (pair, reverse):
            score += EXACT_TITLE_CITATION_SCORE
            has_match = True
    phrase_boost_used = False
    for name, text, weight in entry_fields(entry):
        if not text:
            continue
        field_score, matched, phrase_boost_used = score_field(
            text, weight, terms, name == "summary", phrase_boost_used
        )
        if not matched:
            continue
        score += field_score
        has_match = True
        if (terms.agency_signal or terms.has_type_signal) and name in AGENCY_FIELDS:
            score += weight * 0.5
        if terms.type_hint is not None and entry.type is terms.type_hint:
            score += TYPE_MATCH_BONUS
    return LexicalMatch(score, has_match)


def tie_break_key(entry: KnowledgeEntry) -> tuple:
    """Secondary ordering for equal scores: verified, active, newer, shorter title, id."""
    return (
        0 if entry.verified is True else 1,
        0 if entry.status.value == "active" else 1,
        -_date_ordinal(entry.effective_date),
        len(entry.title),
        entry.entry_id,
    )


def _date_ordinal(value: str | None) -> int:
    # Missing or unparseable dates rank as the oldest.
    if not value:
        return 0
    try:
        return date.fromisoformat(value[:10]).toordinal()
    except ValueError:
        return 0


def sort_scored(scored: list[tuple[KnowledgeEntry, float]]) -> list[tuple[KnowledgeEntry, float]]:
    """Order by score descending, then by the tie-break chain.

    Scores are compared at ``SCORE_PRECISION`` decimals so float noise cannot
    reorder ties.
    """
    return sorted(scored, key=lambda item: (-round(item[1], SCORE_PRECISION), tie_break_key(item[0])))


def lexical_search(
    entries: list[KnowledgeEntry],
    query: str,
    filters: SearchFilters | None = None,
    limit: int | None = None,
) -> list[KnowledgeEntry]:
    """Dashboard search: filter, score every entry, and return the hits in rank order.

    An empty query returns the filtered corpus unchanged.
    """
    filters = filters or SearchFilters()
    candidates = [entry for entry in entries if filters.accepts(entry)]
    if not query or not query.strip():
        return candidates[:limit] if limit else candidates
    terms = build_query_terms(query)
    scored = []
    for entry in candidates:
        match = score_entry(entry, terms)
        if match.has_match:
            scored.append((entry, match.score))
    ranked = [entry for entry, _ in sort_scored(scored)]
    return ranked[:limit] if limit else ranked


# ---------------------------------------------------------------------------
# Trigram channel (pg_trgm semantics)
# ---------------------------------------------------------------------------

_TRGM_WORD_RE = re.compile(r"[a-z0-9]+")


def trigrams(text: str) -> frozenset[str]:
    """pg_trgm trigram set: each word padded with two leading and one trailing space."""
    grams: set[str] = set()
    for word in _TRGM_WORD_RE.findall(text.lower()):
        padded = f"  {word} "
        grams.update(padded[i : i + 3] for i in range(len(padded) - 2))
    return frozenset(grams)


def trigram_similarity(left: frozenset[str], right: frozenset[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


class TrigramIndex:
    """Fuzzy similarity over title, citation and body text."""

    def __init__(self, entries: list[KnowledgeEntry], threshold: float = 0.3):
        self.threshold = threshold
        self._rows = [
            (entry, trigrams(entry.title), trigrams(entry.canonical_citation), trigrams(entry.body_text))
            for entry in entries
        ]

    def search(self, text: str, limit: int = 24) -> list[tuple[KnowledgeEntry, float]]:
        """Entries with any field at or above the threshold, by best field similarity.

        Args:
            text: Query text, normalized or raw.
            limit: Maximum number of hits.

        Returns:
            ``(entry, lexical_sim)`` pairs with ``lexical_sim`` in [0, 1].
        """
        query = trigrams(text)
        if not query:
            return []
        hits = []
        for entry, title, citation, body in self._rows:
            similarity = max(
                trigram_similarity(query, title),
                trigram_similarity(query, citation),
                trigram_similarity(query, body),
            )
            if similarity >= self.threshold:
                hits.append((entry, similarity))
        hits.sort(key=lambda item: (-item[1], item[0].entry_id))
        return hits[:limit]


# ---------------------------------------------------------------------------
# Keyword channel (BM25)
# ---------------------------------------------------------------------------


class KeywordIndex:
    """BM25 index over normalized embedding text, one document per entry."""

    def __init__(self, entries: list[KnowledgeEntry]):
        self.entries = list(entries)
        tokenized = [tokenize(normalize(build_embedding_text(entry))) for entry in self.entries]
        self.index = BM25Okapi(tokenized) if self.entries else None

    def search(self, tokens: list[str], limit: int = 24) -> list[tuple[KnowledgeEntry, float]]:
        """Run BM25 keyword retrieval and return positively scored entries.

        Args:
            tokens: Normalized query tokens.
            limit: Number of results to return.

        Returns:
            ``(entry, bm25_score)`` pairs sorted by score descending.
        """
        if self.index is None or not tokens:
            return []
        scores = self.index.get_scores(tokens)
        ranked = sorted(range(len(scores)), key=lambda idx: (-scores[idx], self.entries[idx].entry_id))
        return [(self.entries[idx], float(scores[idx])) for idx in ranked[:limit] if scores[idx] > 0]
