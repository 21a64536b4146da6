"""Exception taxonomy for the retrieval engine.

Low-confidence results are not errors: they surface as the ``REFUSE`` outcome of
the confidence gate. Everything here is a genuine failure of some kind.
"""
from __future__ import annotations


class LegalKBError(Exception):
    """Base class for all errors raised by ``legal_kb``."""


class EmptyQueryError(LegalKBError, ValueError):
    """Raised when a request carries no usable query text."""

    def __init__(self, field: str = "question"):
        super().__init__(f"{field} is required")
        self.field = field


class UpstreamError(LegalKBError):
    """Embedding service or vector index could not be reached."""


class RerankError(LegalKBError):
    """A reranking strategy failed or produced no usable scores."""


class EvaluationInputError(LegalKBError):
    """An offline evaluation input file is missing or cannot be parsed."""
