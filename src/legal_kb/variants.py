"""Lexical variant expansion for normalized query and field tokens."""
from __future__ import annotations

import re

from .normalization import arabic_to_roman, is_roman, roman_to_arabic

# Bases an "anti-" prefixed token may be reduced to. Anything else keeps its
# prefix, so "anti-red-tape" never matches a bare "red".
ANTI_ALLOWLIST = frozenset(
    {
        "graft",
        "trafficking",
        "terrorism",
        "wiretapping",
        "fencing",
        "hazing",
        "money-laundering",
        "moneylaundering",
        "red-tape",
        "redtape",
        "trafficking-in-persons",
        "carnapping",
        "illegal-drugs",
        "dangerous-drugs",
        "terrorism-financing",
    }
)

SYNONYMS: dict[str, tuple[str, ...]] = {
    "rpc": ("revised", "penal", "code", "revised penal code"),
    "ord": ("ordinance",),
    "ordinance": ("ord",),
    "ca": ("commonwealth", "act", "commonwealth act"),
    "bp": ("batas", "pambansa", "batas pambansa"),
    "blg": ("bilang",),
    "pd": ("presidential", "decree", "presidential decree"),
    "irr": ("implementing", "rule", "regulation", "implementing rules and regulations"),
    "roc": ("rule", "of", "court", "rules of court"),
    "doj": ("department", "of", "justice", "department of justice"),
    "brgy": ("barangay",),
    "bir": ("bureau", "of", "internal", "revenue", "bureau of internal revenue"),
    "nbi": ("national", "bureau", "of", "investigation", "national bureau of investigation"),
    "dilg": (
        "department", "of", "the", "interior", "and", "local", "government",
        "department of the interior and local government",
    ),
    "ltfrb": (
        "land", "transportation", "franchising", "and", "regulatory", "board",
        "land transportation franchising and regulatory board",
    ),
    "dotr": ("department", "of", "transportation", "department of transportation"),
    "dhsud": (
        "department", "of", "human", "settlement", "and", "urban", "development",
        "department of human settlements and urban development",
    ),
}

# Full phrase (in normalized form) -> acronym, for the reverse direction.
PHRASE_ACRONYMS: dict[str, str] = {
    "revised penal code": "rpc",
    "commonwealth act": "ca",
    "batas pambansa": "bp",
    "presidential decree": "pd",
    "implementing rule and regulation": "irr",
    "rule of court": "roc",
    "department of justice": "doj",
    "bureau of internal revenue": "bir",
    "national bureau of investigation": "nbi",
    "department of the interior and local government": "dilg",
    "land transportation franchising and regulatory board": "ltfrb",
    "department of transportation": "dotr",
    "department of human settlement and urban development": "dhsud",
}

AGENCY_ACRONYMS = ("nbi", "bir", "dilg", "ltfrb", "dotr", "dhsud")

# Colloquial phrases appended with their pinpoint citation for the semantic
# query text. Keys and values are in normalized form.
PHRASE_EXPANSIONS: tuple[tuple[str, str], ...] = (
    ("warrantless arrest", "rule 113 section 5"),
    ("bail", "rule 114"),
    ("roc", "rule of court"),
    ("sheriff s return", "sheriff return"),
)

_DIGITS_RE = re.compile(r"^\d+$")
_LETTER_RE = re.compile(r"^[a-z]$")


def expand_word_variants(word: str) -> set[str]:
    """Return the lexical variants of one normalized token.

    Args:
        word: A single token from :func:`legal_kb.normalization.normalize`.

    Returns:
        The token itself plus allow-listed anti-prefix bases, ``v``/``vs``
        aliases, acronym synonyms and Roman/Arabic numeral conversions.
    """
    variants = {word}
    if word.startswith("anti") and len(word) > 4:
        base = re.sub(r"^anti[-\s]?", "", word)
        if base in ANTI_ALLOWLIST or re.sub(r"\s+", "-", base) in ANTI_ALLOWLIST:
            variants.add(base)
    if word in ("vs", "versus"):
        variants.add("v")
    elif word == "v":
        variants.add("vs")
    variants.update(SYNONYMS.get(word, ()))
    if _DIGITS_RE.match(word):
        roman = arabic_to_roman(word)
        if roman:
            variants.add(roman)
    elif is_roman(word):
        arabic = roman_to_arabic(word)
        if arabic is not None:
            variants.add(str(arabic))
    return variants


def composite_forms(first: str, second: str) -> set[str]:
    """Sub-clause spellings for an adjacent ``(number, letter)`` token pair."""
    if not _LETTER_RE.match(second):
        return set()
    bases: list[str] = []
    if _DIGITS_RE.match(first):
        bases.append(first)
    elif is_roman(first):
        bases.append(first)
        arabic = roman_to_arabic(first)
        if arabic is not None:
            bases.append(str(arabic))
    forms: set[str] = set()
    for base in bases:
        forms.update({f"{base}{second}", f"{base}({second})", f"{base}-{second}"})
    return forms


def expand_query_variants(tokens: list[str]) -> set[str]:
    """Union of per-token variants, composite sub-clause forms and acronyms.

    Args:
        tokens: Normalized query tokens in their original order.

    Returns:
        Every variant any token (or adjacent token pair) may match.
    """
    variants: set[str] = set()
    for token in tokens:
        variants.update(expand_word_variants(token))
    for first, second in zip(tokens, tokens[1:]):
        variants.update(composite_forms(first, second))
    joined = " ".join(tokens)
    for phrase, acronym in PHRASE_ACRONYMS.items():
        if phrase in joined:
            variants.add(acronym)
    return variants


def expand_query_text(normalized: str) -> str:
    """Append pinpoint citations for colloquial phrases to the semantic query.

    Each expansion is appended once and only when its text is not already in
    the query, so the result is stable under repeated application.
    """
    out = normalized
    for phrase, expansion in PHRASE_EXPANSIONS:
        if re.search(rf"\b{re.escape(phrase)}\b", normalized) and expansion not in out:
            out = f"{out} {expansion}"
    return out
