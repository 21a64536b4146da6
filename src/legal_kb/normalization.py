"""Query and field text canonicalization.

``normalize`` is the single canonical form used by every lexical comparison in
the engine, so it has to be idempotent: feeding its output back in returns the
same string.
"""
from __future__ import annotations

import re
import unicodedata

_DIACRITICS_RE = re.compile("[\u0300-\u036f]")
_MULTISPACE_RE = re.compile(r"\s+")
_DOUBLE_QUOTES_RE = re.compile("[\u201c\u201d\u201e\u201f\u275b\u275c\u275d\u275e]")
_SINGLE_QUOTES_RE = re.compile("[\u2018\u2019\u201a\u201b]")
_DASHES_RE = re.compile("[\u2013\u2014\u2015]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_ROMAN_RE = re.compile(r"^[ivxlcdm]+$")
_NUMBER_LETTER_RE = re.compile(r"\b(\d+)\s*([a-z])\b")
_PAREN_SPACING_RE = re.compile(r"\s*\(\s*([a-z0-9]+)\s*\)")

# Dotted and symbolic abbreviations. These must run before punctuation is
# stripped, since "r.a." and "g.r. no." are unrecognizable afterwards.
_ABBREVIATIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile("\u00a7"), " section "),
    (re.compile(r"\bg\.?\s*r\.?\s*no\.?\b"), " gr number "),
    (re.compile(r"\bgr\.?\s*no\.?\b"), " gr number "),
    (re.compile(r"\bblg\.?\b"), " bilang "),
    (re.compile(r"\bart\.?\b"), " article "),
    (re.compile(r"\barticulo\b"), " article "),
    (re.compile(r"\bsubsec\.?\b"), " subsection "),
    (re.compile(r"\bsub\."), " subsection "),
    (re.compile(r"\bsec\.?\b"), " section "),
    (re.compile(r"\bpar\.?\b"), " paragraph "),
    (re.compile(r"\br\.?a\.?\b"), " republic act "),
    (re.compile(r"\bno\.?\b"), " number "),
]

# Bare-token forms, applied after singularization so that plurals such as
# "secs" or "arts" land on the same expansion.
_TOKEN_EXPANSIONS = {
    "sec": "section",
    "art": "article",
    "articulo": "article",
    "par": "paragraph",
    "subsec": "subsection",
    "ra": "republic act",
    "no": "number",
    "blg": "bilang",
}

_ROMAN_VALUES = {"m": 1000, "d": 500, "c": 100, "l": 50, "x": 10, "v": 5, "i": 1}
_ROMAN_TABLE = [
    (1000, "m"), (900, "cm"), (500, "d"), (400, "cd"),
    (100, "c"), (90, "xc"), (50, "l"), (40, "xl"),
    (10, "x"), (9, "ix"), (5, "v"), (4, "iv"), (1, "i"),
]
MAX_ROMAN = 3999
MAX_NORMALIZE_PASSES = 8


def strip_diacritics(text: str) -> str:
    return _DIACRITICS_RE.sub("", unicodedata.normalize("NFKD", text))


def _singularize(word: str) -> str:
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def _normalize_pass(s: str) -> str:
    for pattern, replacement in _ABBREVIATIONS:
        s = pattern.sub(replacement, s)
    s = _NON_ALNUM_RE.sub(" ", s)
    s = _MULTISPACE_RE.sub(" ", s).strip()
    if not s:
        return ""
    words = [_TOKEN_EXPANSIONS.get(word, word) for word in map(_singularize, s.split(" "))]
    return " ".join(words)


def normalize(text: str | None) -> str:
    """Canonicalize text for lexical comparison.

    Args:
        text: Raw query or field text. ``None`` is treated as empty.

    Returns:
        Lowercase ASCII text with legal abbreviations expanded, punctuation
        removed, whitespace collapsed and plurals naively stripped.
    """
    if not text:
        return ""
    s = strip_diacritics(str(text)).lower()
    s = _DOUBLE_QUOTES_RE.sub('"', s)
    s = _SINGLE_QUOTES_RE.sub("'", s)
    s = _DASHES_RE.sub("-", s)
    s = re.sub(r"[&/]", " and ", s)
    # Stripping punctuation or a plural "s" can expose a new abbreviation
    # ("grnos" -> "grno"), so repeat until the text is a fixed point.
    for _ in range(MAX_NORMALIZE_PASSES):
        normalized = _normalize_pass(s)
        if normalized == s:
            break
        s = normalized
    return s


def tokenize(normalized: str) -> list[str]:
    return [token for token in normalized.split(" ") if token]


def compact(text: str) -> str:
    """Remove all whitespace, so "266 a" and "266a" compare equal."""
    return _MULTISPACE_RE.sub("", text)


def number_letter_form(normalized: str) -> str:
    return _NUMBER_LETTER_RE.sub(r"\1\2", normalized)


def parenthetical_form(normalized: str) -> str:
    """Rewrite ``"5 a"`` sub-clause pairs as ``"5(a)"``."""
    return _NUMBER_LETTER_RE.sub(r"\1(\2)", normalized)


def loose_form(text: str | None) -> str:
    """Lowercase text that keeps parentheses, for sub-clause comparisons."""
    if not text:
        return ""
    s = strip_diacritics(str(text)).lower()
    s = _MULTISPACE_RE.sub(" ", s).strip()
    return _PAREN_SPACING_RE.sub(r"(\1)", s)


def is_roman(word: str) -> bool:
    return bool(_ROMAN_RE.match(word))


def arabic_to_roman(value: int | str) -> str | None:
    """Convert 1..3999 to a lowercase Roman numeral, else ``None``."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    if n <= 0 or n > MAX_ROMAN:
        return None
    out = []
    for amount, numeral in _ROMAN_TABLE:
        while n >= amount:
            out.append(numeral)
            n -= amount
    return "".join(out)


def roman_to_arabic(word: str) -> int | None:
    """Convert a canonical lowercase Roman numeral to its integer value.

    Words built from Roman letters that are not canonical numerals ("civil",
    "dim", "lid") return ``None`` so they never pick up numeric variants.
    """
    if not word or not is_roman(word):
        return None
    total = 0
    previous = 0
    for char in reversed(word):
        value = _ROMAN_VALUES[char]
        if value < previous:
            total -= value
        else:
            total += value
            previous = value
    if total <= 0 or total > MAX_ROMAN:
        return None
    if arabic_to_roman(total) != word:
        return None
    return total
