"""Tests for query_profile.py — query flags, heuristic metadata and the structured generator."""
from __future__ import annotations

from unittest.mock import MagicMock

import openai
import pytest

from legal_kb.query_profile import (
    StructuredQuery,
    StructuredQueryGenerator,
    build_profile,
    fallback_structured_query,
)


# ---------------------------------------------------------------------------
# build_profile flags
# ---------------------------------------------------------------------------


class TestBuildProfile:
    def test_normalizes_and_tokenizes(self):
        profile = build_profile("What is Art. 308?")
        assert profile.normalized == "what is article 308"
        assert profile.tokens == ("what", "is", "article", "308")
        assert profile.token_count == 4

    def test_citation_query(self):
        profile = build_profile("Rule 113 Sec. 5")
        assert profile.has_rule_section
        assert profile.is_citation_query

    def test_plain_question_is_not_citation(self):
        assert not build_profile("What is theft?").is_citation_query

    def test_semantic_text_is_expanded(self):
        assert build_profile("warrantless arrest").semantic_text.endswith("rule 113 section 5")

    @pytest.mark.parametrize(
        "question",
        ["What is estafa?", "Define theft", "meaning of bail", "Explain custodial investigation"],
    )
    def test_definitional(self, question):
        assert build_profile(question).is_definitional

    @pytest.mark.parametrize("question", ["Can I post bail?", "I was arrested last night", "inquest deadline"])
    def test_urgent(self, question):
        assert build_profile(question).is_urgent

    def test_not_urgent(self):
        assert not build_profile("penalty for theft").is_urgent

    @pytest.mark.parametrize(
        "question",
        ["I want to kill my neighbor", "how do I poison someone", "we plan to bomb the mall"],
    )
    def test_threat(self, question):
        assert build_profile(question).is_threat

    @pytest.mark.parametrize("question", ["What is the penalty for murder?", "Is it legal to kill in self-defense?"])
    def test_legal_question_about_violence_is_not_threat(self, question):
        assert not build_profile(question).is_threat

    def test_rights_of(self):
        assert build_profile("What are my rights when arrested?").is_rights_of

    def test_generic_statute(self):
        assert build_profile("anti graft law").is_generic_statute

    def test_numbered_statute_is_not_generic(self):
        assert not build_profile("republic act 9262").is_generic_statute

    def test_structured_urgency_marks_urgent(self):
        profile = build_profile("penalty for theft", StructuredQuery(urgency="medium"))
        assert profile.is_urgent

    def test_statute_refs_include_structured_metadata(self):
        structured = StructuredQuery(statutes_referenced=("R.A. 9262",))
        profile = build_profile("violence against women", structured)
        assert profile.statute_refs == ("republic act 9262",)


# ---------------------------------------------------------------------------
# Heuristic fallback
# ---------------------------------------------------------------------------


class TestFallbackStructuredQuery:
    def test_high_urgency(self):
        assert fallback_structured_query("Can I get bail?").urgency == "high"

    def test_medium_urgency(self):
        assert fallback_structured_query("filing period for appeal").urgency == "medium"

    def test_low_urgency(self):
        assert fallback_structured_query("what is theft").urgency == "low"

    def test_keywords_drop_stopwords_and_short_words(self):
        assert fallback_structured_query("What is the penalty for theft?").keywords == ("penalty", "theft")

    def test_keeps_question(self):
        assert fallback_structured_query("Theft?").normalized_question == "Theft?"


class TestStructuredQuery:
    def test_from_dict_defaults(self):
        parsed = StructuredQuery.from_dict({})
        assert parsed.jurisdiction == "Philippines"
        assert parsed.urgency == "low"

    def test_unknown_urgency_becomes_low(self):
        assert StructuredQuery.from_dict({"urgency": "critical"}).urgency == "low"

    def test_non_list_fields_ignored(self):
        assert StructuredQuery.from_dict({"keywords": "theft"}).keywords == ()


# ---------------------------------------------------------------------------
# StructuredQueryGenerator — OpenAI client mocked
# ---------------------------------------------------------------------------


def _client_returning(text: str) -> MagicMock:
    client = MagicMock()
    client.responses.create.return_value = MagicMock(output_text=text)
    return client


class TestStructuredQueryGenerator:
    def test_parses_json_response(self):
        client = _client_returning('{"keywords": ["theft"], "urgency": "HIGH", "statutes_referenced": []}')
        structured = StructuredQueryGenerator(client=client).generate("theft")
        assert structured.keywords == ("theft",)
        assert structured.urgency == "high"

    def test_requests_json_output(self):
        client = _client_returning("{}")
        StructuredQueryGenerator(model="gpt-4o-mini", client=client).generate("theft")
        kwargs = client.responses.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["text"] == {"format": {"type": "json_object"}}

    def test_results_are_cached(self):
        client = _client_returning('{"keywords": ["theft"]}')
        generator = StructuredQueryGenerator(client=client)
        generator.generate("theft")
        generator.generate("theft")
        assert client.responses.create.call_count == 1

    def test_api_error_falls_back(self):
        client = MagicMock()
        client.responses.create.side_effect = openai.APIConnectionError(request=MagicMock())
        structured = StructuredQueryGenerator(client=client).generate("Can I get bail?")
        assert structured.urgency == "high"

    def test_bad_json_falls_back(self):
        structured = StructuredQueryGenerator(client=_client_returning("not json")).generate("theft penalty")
        assert structured.keywords == ("theft", "penalty")

    def test_non_object_json_falls_back(self):
        structured = StructuredQueryGenerator(client=_client_returning("[1, 2]")).generate("theft")
        assert structured.normalized_question == "theft"

    def test_fallbacks_are_not_cached(self):
        client = _client_returning("not json")
        generator = StructuredQueryGenerator(client=client)
        generator.generate("theft")
        generator.generate("theft")
        assert client.responses.create.call_count == 2
