"""Tests for variants.py — token variants, composite forms and phrase expansion."""
from __future__ import annotations

from legal_kb.variants import (
    composite_forms,
    expand_query_text,
    expand_query_variants,
    expand_word_variants,
)


# ---------------------------------------------------------------------------
# expand_word_variants
# ---------------------------------------------------------------------------


class TestExpandWordVariants:
    def test_includes_token_itself(self):
        assert "theft" in expand_word_variants("theft")

    def test_allow_listed_anti_prefix_is_stripped(self):
        assert "graft" in expand_word_variants("antigraft")

    def test_other_anti_prefix_is_kept(self):
        assert expand_word_variants("antibiotic") == {"antibiotic"}

    def test_versus_aliases(self):
        assert "v" in expand_word_variants("vs")
        assert "v" in expand_word_variants("versus")
        assert "vs" in expand_word_variants("v")

    def test_acronym_expands_to_words_and_phrase(self):
        variants = expand_word_variants("rpc")
        assert {"revised", "penal", "code", "revised penal code"} <= variants

    def test_arabic_to_roman(self):
        assert "xiv" in expand_word_variants("14")

    def test_roman_to_arabic(self):
        assert "14" in expand_word_variants("xiv")

    def test_ordinary_word_has_no_numeric_variant(self):
        assert expand_word_variants("civil") == {"civil"}

    def test_large_number_has_no_roman_variant(self):
        assert expand_word_variants("9262") == {"9262"}


# ---------------------------------------------------------------------------
# composite_forms
# ---------------------------------------------------------------------------


class TestCompositeForms:
    def test_number_letter(self):
        assert composite_forms("5", "a") == {"5a", "5(a)", "5-a"}

    def test_roman_letter_adds_arabic_forms(self):
        forms = composite_forms("iv", "b")
        assert {"ivb", "iv(b)", "iv-b", "4b", "4(b)", "4-b"} <= forms

    def test_second_token_must_be_single_letter(self):
        assert composite_forms("5", "ab") == set()

    def test_first_token_must_be_numeric(self):
        assert composite_forms("rule", "a") == set()


# ---------------------------------------------------------------------------
# expand_query_variants
# ---------------------------------------------------------------------------


class TestExpandQueryVariants:
    def test_union_of_token_variants(self):
        variants = expand_query_variants(["rpc", "14"])
        assert {"rpc", "revised penal code", "14", "xiv"} <= variants

    def test_adjacent_pair_composites(self):
        assert "5(a)" in expand_query_variants(["section", "5", "a"])

    def test_phrase_adds_acronym(self):
        variants = expand_query_variants(["revised", "penal", "code", "article", "308"])
        assert "rpc" in variants

    def test_agency_phrase_adds_acronym(self):
        tokens = "national bureau of investigation clearance".split()
        assert "nbi" in expand_query_variants(tokens)

    def test_empty_tokens(self):
        assert expand_query_variants([]) == set()


# ---------------------------------------------------------------------------
# expand_query_text
# ---------------------------------------------------------------------------


class TestExpandQueryText:
    def test_warrantless_arrest_adds_rule_113(self):
        assert expand_query_text("warrantless arrest") == "warrantless arrest rule 113 section 5"

    def test_bail_adds_rule_114(self):
        assert expand_query_text("when is bail denied").endswith("rule 114")

    def test_expansion_not_duplicated(self):
        text = "bail under rule 114"
        assert expand_query_text(text) == text

    def test_stable_under_repetition(self):
        once = expand_query_text("roc bail")
        assert expand_query_text(once) == once

    def test_no_expansion_for_unrelated_text(self):
        assert expand_query_text("theft penalty") == "theft penalty"

    def test_bail_inside_other_word_not_expanded(self):
        assert expand_query_text("bailable offense") == "bailable offense"
