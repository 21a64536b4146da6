from __future__ import annotations

from pathlib import Path
from typing import Protocol

import chromadb
import numpy as np

from .embeddings import build_embedding_text, cosine_similarity
from .errors import UpstreamError
from .schema import KnowledgeEntry


class VectorIndex(Protocol):
    """Nearest-neighbour lookup returning ``(entry, similarity)`` pairs, best first."""

    def search(self, query_embedding: list[float], top_k: int) -> list[tuple[KnowledgeEntry, float]]: ...


def _clip(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


class InMemoryVectorIndex:
    """Exact cosine search over the embeddings stored on the entries themselves.

    Entries without an embedding are not indexed.
    """

    def __init__(self, entries: list[KnowledgeEntry]):
        self.entries = [entry for entry in entries if entry.embedding]
        self.matrix = (
            np.array([entry.embedding for entry in self.entries], dtype=np.float32)
            if self.entries
            else np.zeros((0, 0), dtype=np.float32)
        )

    def __len__(self) -> int:
        return len(self.entries)

    def search(self, query_embedding: list[float], top_k: int = 12) -> list[tuple[KnowledgeEntry, float]]:
        if not self.entries or not query_embedding:
            return []
        query_vector = np.asarray(query_embedding, dtype=np.float32)
        if query_vector.shape[0] != self.matrix.shape[1]:
            raise UpstreamError(
                f"query embedding has {query_vector.shape[0]} dimensions, index has {self.matrix.shape[1]}"
            )
        scores = cosine_similarity(query_vector, self.matrix)
        order = sorted(range(len(scores)), key=lambda idx: (-scores[idx], self.entries[idx].entry_id))
        return [(self.entries[idx], _clip(scores[idx])) for idx in order[:top_k]]


def build_chroma_collection(
    entries: list[KnowledgeEntry],
    embeddings: list[list[float]],
    collection_name: str,
    persist_dir: str = "artifacts/chroma",
):
    """Create (or replace) a persistent Chroma collection from entry embeddings.

    Args:
        entries: Knowledge entries to index.
        embeddings: Embedding vectors aligned to entries.
        collection_name: Chroma collection name.
        persist_dir: Local path for Chroma persistence.

    Returns:
        The created Chroma collection instance, configured for cosine distance.
    """
    Path(persist_dir).mkdir(parents=True, exist_ok=True)
    client = chromadb.PersistentClient(path=persist_dir)
    # Older clients list names, newer ones list Collection objects.
    existing = {getattr(collection, "name", collection) for collection in client.list_collections()}
    if collection_name in existing:
        client.delete_collection(collection_name)

    collection = client.create_collection(name=collection_name, metadata={"hnsw:space": "cosine"})
    if entries:
        collection.add(
            ids=[entry.entry_id for entry in entries],
            embeddings=embeddings,
            documents=[build_embedding_text(entry) for entry in entries],
            metadatas=[{"type": entry.type.value, "status": entry.status.value} for entry in entries],
        )
    return collection


class ChromaVectorIndex:
    """Vector index backed by a Chroma collection keyed by ``entry_id``."""

    def __init__(self, collection, entries: list[KnowledgeEntry]):
        self.collection = collection
        self.by_id = {entry.entry_id: entry for entry in entries}

    @classmethod
    def build(
        cls,
        entries: list[KnowledgeEntry],
        embeddings: list[list[float]],
        collection_name: str = "legal_kb",
        persist_dir: str = "artifacts/chroma",
    ) -> ChromaVectorIndex:
        collection = build_chroma_collection(entries, embeddings, collection_name, persist_dir)
        return cls(collection, entries)

    def search(self, query_embedding: list[float], top_k: int = 12) -> list[tuple[KnowledgeEntry, float]]:
        """Query the collection and map cosine distances to similarities in [0, 1].

        Raises:
            UpstreamError: If the Chroma query fails.
        """
        if not self.by_id or not query_embedding:
            return []
        try:
            response = self.collection.query(
                query_embeddings=[query_embedding],
                n_results=min(top_k, len(self.by_id)),
            )
        except Exception as exc:
            raise UpstreamError(f"vector index query failed: {exc}") from exc

        ids = response["ids"][0]
        distances = response["distances"][0]
        return [
            (self.by_id[entry_id], _clip(1.0 - distance))
            for entry_id, distance in zip(ids, distances, strict=True)
            if entry_id in self.by_id
        ]
