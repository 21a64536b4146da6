"""Shared pytest fixtures for legal_kb unit tests.

The corpus is small enough to reason about by hand. Embeddings are
five-dimensional: each entry leans on one axis and the last axis is never
used by any entry, so a query embedded there has zero similarity to all of
them.
"""
from __future__ import annotations

import pytest

from legal_kb.schema import KnowledgeEntry

THEFT_AXIS = [1.0, 0.0, 0.0, 0.0, 0.0]
ESTAFA_AXIS = [0.0, 1.0, 0.0, 0.0, 0.0]
ARREST_AXIS = [0.0, 0.0, 1.0, 0.0, 0.0]
UNRELATED_AXIS = [0.0, 0.0, 0.0, 0.0, 1.0]

CORPUS_RECORDS = [
    {
        "entry_id": "RPC-308",
        "type": "statute_section",
        "title": "Theft",
        "canonical_citation": "RPC Art. 308",
        "section_id": "Art. 308",
        "law_family": "Revised Penal Code",
        "summary": "Theft is committed by any person who, with intent to gain but without violence, "
        "takes personal property of another without the latter's consent.",
        "text": "Who are liable for theft. Theft is committed by any person who, with intent to gain "
        "but without violence against or intimidation of persons nor force upon things, shall take "
        "personal property of another without the latter's consent.",
        "tags": ["theft", "property"],
        "elements": ["taking of personal property", "property belongs to another", "intent to gain"],
        "penalties": ["prision correccional to prision mayor depending on value"],
        "status": "active",
        "verified": True,
        "effective_date": "1932-01-01",
        "jurisdiction": "PH",
        "embedding": THEFT_AXIS,
    },
    {
        "entry_id": "RPC-315",
        "type": "statute_section",
        "title": "Estafa",
        "canonical_citation": "RPC Art. 315",
        "section_id": "Art. 315",
        "law_family": "Revised Penal Code",
        "summary": "Estafa is committed by defrauding another by abuse of confidence or by means of deceit.",
        "text": "Swindling (estafa). Any person who shall defraud another by any of the means mentioned.",
        "tags": ["estafa", "fraud"],
        "status": "active",
        "verified": True,
        "effective_date": "1932-01-01",
        "jurisdiction": "PH",
        "embedding": ESTAFA_AXIS,
    },
    {
        "entry_id": "ROC-113-5",
        "type": "rule_of_court",
        "title": "Arrest without warrant; when lawful",
        "canonical_citation": "Rule 113 Sec. 5",
        "rule_no": "113",
        "section_no": "5",
        "law_family": "Rules of Court",
        "summary": "A peace officer or a private person may, without a warrant, arrest a person caught "
        "in flagrante delicto, in hot pursuit, or an escaped prisoner.",
        "tags": ["arrest", "warrantless arrest"],
        "status": "active",
        "verified": True,
        "effective_date": "2000-12-01",
        "jurisdiction": "PH",
        "embedding": ARREST_AXIS,
    },
    {
        "entry_id": "ROC-114-7",
        "type": "rule_of_court",
        "title": "Capital offense or offense punishable by reclusion perpetua, not bailable",
        "canonical_citation": "Rule 114 Sec. 7",
        "rule_no": "114",
        "section_no": "7",
        "law_family": "Rules of Court",
        "summary": "No person charged with a capital offense shall be admitted to bail when evidence "
        "of guilt is strong.",
        "tags": ["bail"],
        "status": "active",
        "verified": True,
        "effective_date": "2000-12-01",
        "jurisdiction": "PH",
        "embedding": [0.0, 0.0, 0.8, 0.6, 0.0],
    },
    {
        "entry_id": "ROC-114-1",
        "type": "rule_of_court",
        "title": "Bail defined",
        "canonical_citation": "Rule 114 Sec. 1",
        "rule_no": "114",
        "section_no": "1",
        "law_family": "Rules of Court",
        "summary": "Bail is the security given for the release of a person in custody of the law.",
        "tags": ["bail"],
        "status": "active",
        "verified": True,
        "effective_date": "2000-12-01",
        "jurisdiction": "PH",
        "embedding": [0.0, 0.0, 0.6, 0.8, 0.0],
    },
    {
        "entry_id": "ADV-CUSTODIAL",
        "type": "rights_advisory",
        "title": "Rights of a person under custodial investigation",
        "canonical_citation": "RA 7438",
        "summary": "A person arrested or under custodial investigation has the right to counsel and "
        "to remain silent.",
        "tags": ["custodial investigation", "right to counsel"],
        "rights_scope": "arrest",
        "advice_points": ["Ask for a lawyer", "You may remain silent"],
        "source_urls": ["https://example.gov.ph/ra7438"],
        "legal_bases": [
            {
                "type": "external",
                "citation": "RA 7438",
                "title": "Rights of persons arrested, detained or under custodial investigation",
                "url": "https://example.gov.ph/ra7438",
            },
            {"type": "internal", "entry_id": "ROC-113-5"},
        ],
        "status": "active",
        "verified": False,
        "jurisdiction": "PH",
        "embedding": [0.0, 0.0, 0.5, 0.0, 0.0],
    },
    {
        "entry_id": "LTFRB-MC-2019-001",
        "type": "agency_circular",
        "title": "LTFRB Memorandum Circular on franchise suspension",
        "canonical_citation": "LTFRB MC 2019-001",
        "law_family": "LTFRB",
        "summary": "Grounds and procedure for the suspension of public utility vehicle franchises.",
        "tags": ["ltfrb", "franchise"],
        "status": "active",
        "jurisdiction": "PH",
        "embedding": [0.0, 0.3, 0.0, 0.0, 0.0],
    },
]


@pytest.fixture()
def corpus_records() -> list[dict]:
    return [dict(record) for record in CORPUS_RECORDS]


@pytest.fixture()
def corpus() -> list[KnowledgeEntry]:
    return [KnowledgeEntry.from_dict(record) for record in CORPUS_RECORDS]


@pytest.fixture()
def by_id(corpus) -> dict[str, KnowledgeEntry]:
    return {entry.entry_id: entry for entry in corpus}


class FakeEmbedder:
    """Keyword-driven embedder: theft/estafa/arrest texts land on their axis."""

    def __init__(self):
        self.calls: list[str] = []

    def __call__(self, text: str) -> list[float]:
        self.calls.append(text)
        lowered = text.lower()
        if "theft" in lowered or "steal" in lowered:
            return list(THEFT_AXIS)
        if "estafa" in lowered or "swindl" in lowered:
            return list(ESTAFA_AXIS)
        if "arrest" in lowered:
            return list(ARREST_AXIS)
        return list(UNRELATED_AXIS)


class FakeGenerator:
    """Generator that records prompts and streams a canned answer word by word."""

    model = "fake-model"

    def __init__(self, answer: str = "Theft is the taking of personal property (RPC Art. 308)."):
        self.answer = answer
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answer

    def stream(self, prompt: str):
        self.prompts.append(prompt)
        for word in self.answer.split(" "):
            yield word + " "


@pytest.fixture()
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture()
def fake_generator() -> FakeGenerator:
    return FakeGenerator()
