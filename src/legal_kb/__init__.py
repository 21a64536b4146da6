"""Hybrid retrieval, ranking and confidence gating over a legal knowledge base."""

from .errors import EmptyQueryError, EvaluationInputError, LegalKBError, RerankError, UpstreamError
from .pipeline import RetrievalEngine
from .schema import (
    ChatResponse,
    EntryStatus,
    EntryType,
    EvaluationResult,
    GoldQueryRecord,
    KnowledgeEntry,
    SearchFilters,
    SearchResponse,
    Source,
    StreamEvent,
)
from .settings import Settings, load_settings

__all__ = [
    "RetrievalEngine",
    "KnowledgeEntry",
    "EntryType",
    "EntryStatus",
    "SearchFilters",
    "ChatResponse",
    "SearchResponse",
    "Source",
    "StreamEvent",
    "GoldQueryRecord",
    "EvaluationResult",
    "Settings",
    "load_settings",
    "LegalKBError",
    "EmptyQueryError",
    "UpstreamError",
    "RerankError",
    "EvaluationInputError",
]
