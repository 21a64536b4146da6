from __future__ import annotations

from typing import Callable

import numpy as np
from openai import OpenAI, OpenAIError

from .cache import TTLCache
from .errors import UpstreamError
from .schema import KnowledgeEntry

Embedder = Callable[[str], list[float]]

_BULLET = " • "


def embed_texts(
    texts: list[str],
    model: str = "text-embedding-3-small",
    client: OpenAI | None = None,
) -> np.ndarray:
    """Generate embedding vectors for input texts using OpenAI embeddings API.

    Args:
        texts: Input strings to embed.
        model: Embedding model name.
        client: Optional preconfigured client; a default ``OpenAI()`` is built
            otherwise.

    Returns:
        A `float32` NumPy matrix shaped `(len(texts), embedding_dim)`.

    Raises:
        UpstreamError: If the embeddings API call fails.
    """
    client = client or OpenAI()
    try:
        response = client.embeddings.create(model=model, input=texts)
    except OpenAIError as exc:
        raise UpstreamError(f"embedding request failed: {exc}") from exc
    vectors = [row.embedding for row in response.data]
    return np.array(vectors, dtype=np.float32)


def cosine_similarity(query_vector: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between one query vector and many vectors.

    Args:
        query_vector: Query embedding vector.
        matrix: Candidate embedding matrix where each row is one vector.

    Returns:
        A 1D array of cosine similarity scores aligned to matrix rows.
    """
    query_norm = np.linalg.norm(query_vector)
    matrix_norm = np.linalg.norm(matrix, axis=1)
    denominator = np.maximum(query_norm * matrix_norm, 1e-12)
    return (matrix @ query_vector) / denominator


class OpenAIEmbedder:
    """Single-text embedder backed by the OpenAI embeddings API."""

    def __init__(self, model: str = "text-embedding-3-small", client: OpenAI | None = None):
        self.model = model
        self.client = client or OpenAI()

    def __call__(self, text: str) -> list[float]:
        return embed_texts([text], model=self.model, client=self.client)[0].tolist()


class CachedEmbedder:
    """Wrap an embedder with the process-wide embedding cache.

    Failures are not cached, so the next request retries the upstream call.
    """

    def __init__(self, embedder: Embedder, cache: TTLCache[str, list[float]]):
        self.embedder = embedder
        self.cache = cache

    def __call__(self, text: str) -> list[float]:
        return self.cache.get_or_compute(f"emb:{text}", lambda: self.embedder(text))


def _join(values) -> str:
    return _BULLET.join(str(value).strip() for value in values if value is not None and str(value).strip())


def _flatten_relations(relations: tuple[dict, ...]) -> str:
    parts = []
    for relation in relations:
        bits = [f"[{relation['type']}]"] if relation.get("type") else []
        bits.extend(str(relation[key]) for key in ("entry_id", "citation", "title", "url", "note") if relation.get(key))
        if bits:
            parts.append(" ".join(bits))
    return _BULLET.join(parts)


def build_embedding_text(entry: KnowledgeEntry) -> str:
    """Flatten core, type-specific and relation fields into one labelled text blob.

    This is the text both the vector index and the keyword channel see for an
    entry, one ``Label: value`` line per non-empty field.
    """
    rows = [
        ("Title", entry.title),
        ("Type", entry.type.value),
        ("Canonical Citation", entry.canonical_citation),
        ("Section", entry.section_id),
        ("Status", entry.status.value),
        ("Jurisdiction", entry.jurisdiction),
        ("Law Family", entry.law_family),
        ("Summary", entry.summary),
        ("Text", entry.body_text),
        ("Tags", _join(entry.sorted_tags)),
        ("Source URLs", _join(entry.source_urls)),
        ("Effective Date", entry.effective_date),
        ("Elements", _join(entry.elements)),
        ("Penalties", _join(entry.penalties)),
        ("Defenses", _join(entry.defenses)),
        ("Rule No", entry.rule_no),
        ("Section No", entry.section_no),
        ("Rights Scope", entry.rights_scope),
        ("Advice Points", _join(entry.advice_points)),
        ("Legal Bases", _flatten_relations(entry.legal_bases)),
        ("Related Sections", _flatten_relations(entry.related_sections)),
    ]
    return "\n".join(f"{label}: {str(value).strip()}" for label, value in rows if value and str(value).strip())
