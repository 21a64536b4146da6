"""Structural citation detection and direct-match lookups.

Queries such as "rule 113 section 5", "article 266-A" or "RA 9262" name a
provision outright. Vector search under-recalls numbered provisions, so these
patterns are resolved against the corpus directly and the hits are boosted
far above anything similarity alone can produce.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .normalization import normalize, roman_to_arabic
from .schema import EntryType, KnowledgeEntry

_RULE_RE = re.compile(r"\brule (\d+)\b")
_SECTION_RE = re.compile(r"\bsection (\d+)\b")
_ARTICLE_RE = re.compile(r"\barticle (\d+|[ivxlcdm]+)(?: ([a-z]))?\b")
_REPUBLIC_ACT_RE = re.compile(r"\brepublic act (?:number )?(\d+)\b")
_OTHER_STATUTE_RES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:bp|batas pambansa)(?: bilang)?(?: number)? (\d+)\b"), "batas pambansa"),
    (re.compile(r"\b(?:pd|presidential decree)(?: number)? (\d+)\b"), "presidential decree"),
    (re.compile(r"\b(?:ca|commonwealth act)(?: number)? (\d+)\b"), "commonwealth act"),
)
_NUMBER_WORD_RE = re.compile(r"\bnumber\b")
_DIGITS_RE = re.compile(r"\d+")
_SPACES_RE = re.compile(r"\s+")

# Source qualifiers in priority order. The first family whose pattern occurs
# in the text is the detected source.
SOURCE_CONTEXTS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("constitution", re.compile(r"\b(?:constitution\w*|consti|bill of right)\b")),
    ("revised penal code", re.compile(r"\b(?:revised penal code|penal code|rpc)\b")),
    ("rules of court", re.compile(r"\b(?:rule of court|roc)\b")),
    ("civil code", re.compile(r"\bcivil code\b")),
    ("family code", re.compile(r"\bfamily code\b")),
    ("labor code", re.compile(r"\blabor code\b")),
)

NEARBY_ARTICLE_SPAN = 5


class MatchKind(str, Enum):
    RULE_SECTION = "rule_section"
    ARTICLE = "article"
    STATUTE = "statute"
    EXACT_TITLE_CITATION = "exact_title_citation"
    ARTICLE_CROSS_SOURCE = "article_cross_source"
    NEARBY_ARTICLE = "nearby_article"


DIRECT_KINDS = frozenset({MatchKind.RULE_SECTION, MatchKind.ARTICLE, MatchKind.STATUTE})


@dataclass(frozen=True, slots=True)
class CitationPattern:
    """Structural citation parts found in one normalized query."""

    rule_no: str | None = None
    section_no: str | None = None
    article_no: str | None = None
    article_suffix: str | None = None
    republic_act_no: str | None = None
    source: str | None = None
    statute_refs: tuple[str, ...] = ()

    @property
    def has_rule_section(self) -> bool:
        return self.rule_no is not None and self.section_no is not None

    @property
    def has_article(self) -> bool:
        return self.article_no is not None

    @property
    def is_empty(self) -> bool:
        return not (self.has_rule_section or self.has_article or self.republic_act_no or self.statute_refs)


@dataclass(frozen=True, slots=True)
class DirectMatch:
    entry: KnowledgeEntry
    kind: MatchKind
    distance: int = 0


def citation_key(normalized: str) -> str:
    """Drop "number" filler words so "republic act number 9262" keys as "republic act 9262"."""
    return _SPACES_RE.sub(" ", _NUMBER_WORD_RE.sub(" ", normalized)).strip()


def contains_ref(text: str, ref: str) -> bool:
    """Whole-word containment, so "republic act 92" does not match "republic act 9262"."""
    return re.search(rf"\b{re.escape(ref)}\b", text) is not None


def _digits(value: str | None) -> str | None:
    if not value:
        return None
    match = _DIGITS_RE.search(value)
    return (match.group(0).lstrip("0") or "0") if match else None


def _article_number(token: str) -> str | None:
    if token.isdigit():
        return token.lstrip("0") or "0"
    value = roman_to_arabic(token)
    return str(value) if value is not None else None


def detect_source(normalized: str) -> str | None:
    for name, pattern in SOURCE_CONTEXTS:
        if pattern.search(normalized):
            return name
    return None


def detect_citation(normalized: str) -> CitationPattern:
    """Extract rule/section, article, and statute references from a normalized query.

    Args:
        normalized: Output of :func:`legal_kb.normalization.normalize`.

    Returns:
        A :class:`CitationPattern`. Parts that are not present are ``None``;
        an empty pattern means the query names no provision.
    """
    text = citation_key(normalized)
    rule = _RULE_RE.search(text)
    section = _SECTION_RE.search(text)
    article_no = article_suffix = None
    for match in _ARTICLE_RE.finditer(text):
        article_no = _article_number(match.group(1))
        if article_no is not None:
            article_suffix = match.group(2)
            break
    refs: list[str] = []
    republic_act = _REPUBLIC_ACT_RE.search(text)
    if republic_act:
        refs.append(f"republic act {republic_act.group(1)}")
    for pattern, family in _OTHER_STATUTE_RES:
        for match in pattern.finditer(text):
            refs.append(f"{family} {match.group(1)}")
    return CitationPattern(
        rule_no=rule.group(1) if rule else None,
        section_no=section.group(1) if section else None,
        article_no=article_no,
        article_suffix=article_suffix,
        republic_act_no=republic_act.group(1) if republic_act else None,
        source=detect_source(text),
        statute_refs=tuple(dict.fromkeys(refs)),
    )


def entry_source(entry: KnowledgeEntry) -> str | None:
    if entry.type is EntryType.CONSTITUTION_PROVISION:
        return "constitution"
    if entry.type is EntryType.RULE_OF_COURT:
        return "rules of court"
    return detect_source(normalize(f"{entry.law_family} {entry.canonical_citation} {entry.title}"))


@dataclass(frozen=True, slots=True)
class _EntryKeys:
    entry: KnowledgeEntry
    source: str | None
    rule_no: str | None
    section_no: str | None
    article_no: str | None
    article_suffix: str | None
    citation: str
    title_citation: str
    citation_title: str


class CitationIndex:
    """Precomputed citation keys for every entry, queried per request."""

    def __init__(self, entries: list[KnowledgeEntry], nearby_limit: int = 3):
        self.nearby_limit = nearby_limit
        self._keys = [self._build_keys(entry) for entry in entries]

    @staticmethod
    def _build_keys(entry: KnowledgeEntry) -> _EntryKeys:
        citation = citation_key(normalize(entry.canonical_citation))
        parsed = detect_citation(citation or normalize(entry.title))
        rule_no = _digits(entry.rule_no) or parsed.rule_no
        section_no = _digits(entry.section_no) or (parsed.section_no if rule_no else None)
        has_pair = bool(entry.title and entry.canonical_citation)
        return _EntryKeys(
            entry=entry,
            source=entry_source(entry),
            rule_no=rule_no,
            section_no=section_no,
            article_no=parsed.article_no,
            article_suffix=parsed.article_suffix,
            citation=citation,
            title_citation=normalize(f"{entry.title} {entry.canonical_citation}") if has_pair else "",
            citation_title=normalize(f"{entry.canonical_citation} {entry.title}") if has_pair else "",
        )

    def __len__(self) -> int:
        return len(self._keys)

    def exact_lookup(self, normalized_query: str) -> list[KnowledgeEntry]:
        """Entries whose ``title + citation`` (or its reverse) equals the query."""
        if not normalized_query:
            return []
        return [
            keys.entry
            for keys in self._keys
            if normalized_query in (keys.title_citation, keys.citation_title) and keys.title_citation
        ]

    def _same_source(self, keys: _EntryKeys, source: str | None) -> bool:
        return source is None or keys.source is None or keys.source == source

    def lookup(self, pattern: CitationPattern, normalized_query: str = "") -> list[DirectMatch]:
        """Resolve a citation pattern to direct matches.

        Args:
            pattern: Pattern detected in the query.
            normalized_query: The normalized query, used for the exact
                title+citation lookup.

        Returns:
            Direct matches in corpus order. When an article is requested but
            absent from its source, the nearest articles of that source are
            returned instead as ``NEARBY_ARTICLE`` matches, closest first.
        """
        matches: list[DirectMatch] = [
            DirectMatch(entry, MatchKind.EXACT_TITLE_CITATION) for entry in self.exact_lookup(normalized_query)
        ]
        if pattern.is_empty:
            return matches
        found_article = False
        for keys in self._keys:
            if (
                pattern.has_rule_section
                and keys.rule_no == pattern.rule_no
                and keys.section_no == pattern.section_no
            ):
                matches.append(DirectMatch(keys.entry, MatchKind.RULE_SECTION))
                continue
            if (
                pattern.has_article
                and keys.article_no == pattern.article_no
                and keys.article_suffix == pattern.article_suffix
            ):
                if self._same_source(keys, pattern.source):
                    matches.append(DirectMatch(keys.entry, MatchKind.ARTICLE))
                    found_article = True
                else:
                    matches.append(DirectMatch(keys.entry, MatchKind.ARTICLE_CROSS_SOURCE))
                continue
            if any(contains_ref(keys.citation, ref) for ref in pattern.statute_refs):
                matches.append(DirectMatch(keys.entry, MatchKind.STATUTE))
        if pattern.has_article and not found_article:
            matches.extend(self.nearby_articles(pattern))
        return matches

    def nearby_articles(self, pattern: CitationPattern) -> list[DirectMatch]:
        """Articles within +-NEARBY_ARTICLE_SPAN of the requested one, same source only."""
        if pattern.article_no is None:
            return []
        target = int(pattern.article_no)
        found: list[DirectMatch] = []
        for distance in range(1, NEARBY_ARTICLE_SPAN + 1):
            for number in (target - distance, target + distance):
                if number <= 0:
                    continue
                for keys in self._keys:
                    if keys.article_no != str(number) or keys.article_suffix is not None:
                        continue
                    if not self._same_source(keys, pattern.source):
                        continue
                    found.append(DirectMatch(keys.entry, MatchKind.NEARBY_ARTICLE, distance))
                    if len(found) >= self.nearby_limit:
                        return found
        return found
