from __future__ import annotations

from typing import Iterator, Protocol

from openai import OpenAI, OpenAIError

from .errors import UpstreamError
from .gate import REFUSAL_ANSWER
from .schema import EntryType, KnowledgeEntry, STATUTE_LIKE_TYPES

SNIPPET_HALF_WINDOW = 280
SNIPPET_FALLBACK_CHARS = 320
SNIPPET_MAX_WINDOWS = 2
SNIPPET_MAX_OVERLAP = 100
SNIPPET_STOPWORDS = frozenset(
    {
        "the", "a", "an", "of", "and", "or", "to", "for", "in", "on", "at", "by", "with", "from",
        "is", "are", "was", "were", "be", "been", "it", "this", "that", "these", "those",
    }
)

ANSWER_RULES = f"""You are a legal assistant specialized in Philippine law. Answer strictly from the provided context.
If nothing in the context addresses the question, reply only with: "{REFUSAL_ANSWER}"

Rules:
- Quote short phrases from the context before paraphrasing.
- Do not invent facts, laws, or citations beyond what is in the context.
- End each paragraph with a parenthetical citation using canonical identifiers (e.g. "Rule 114 Sec. 20", "RPC Art. 308").
- If sources conflict, prefer exact matches by rule, section or article number.
- When asked "what is X", start with a one-sentence definition synthesized from the context.
- Use elements, penalties and defenses when present for breakdowns.
- Keep answers concise but legally precise."""


class Generator(Protocol):
    """Text generation collaborator: one-shot and streamed."""

    def generate(self, prompt: str) -> str: ...

    def stream(self, prompt: str) -> Iterator[str]: ...


def keyword_window_snippet(text: str, question: str) -> str:
    """Excerpt up to two non-overlapping windows around the densest query keywords.

    Falls back to the first 320 characters when no keyword occurs.
    """
    if not text:
        return ""
    tokens = [t for t in question.lower().split() if t not in SNIPPET_STOPWORDS and len(t) > 2]
    if not tokens:
        return text[:SNIPPET_FALLBACK_CHARS]

    lower = text.lower()
    spans: list[tuple[int, int, int]] = []
    for token in tokens[:6]:
        found = lower.find(token)
        while found != -1 and len(spans) <= 64:
            start = max(0, found - SNIPPET_HALF_WINDOW)
            end = min(len(text), found + SNIPPET_HALF_WINDOW)
            window = lower[start:end]
            spans.append((start, end, sum(1 for other in tokens if other in window)))
            found = lower.find(token, found + len(token))
    if not spans:
        return text[:SNIPPET_FALLBACK_CHARS]

    chosen: list[tuple[int, int, int]] = []
    # Stable sort keeps the earliest span first among equal scores.
    for span in sorted(spans, key=lambda item: -item[2]):
        if len(chosen) >= SNIPPET_MAX_WINDOWS:
            break
        overlaps = any(
            min(span[1], other[1]) - max(span[0], other[0]) > SNIPPET_MAX_OVERLAP for other in chosen
        )
        if not overlaps:
            chosen.append(span)
    return " … ".join(text[start:end].strip() for start, end, _ in sorted(chosen))


def slice_context(entry: KnowledgeEntry, question: str) -> str:
    """Render the fields of one entry that matter for its type as labelled lines."""
    lines: list[str] = []

    def add(label: str, value) -> None:
        if value is None:
            return
        rendered = " • ".join(value) if isinstance(value, (list, tuple)) else str(value)
        if rendered.strip():
            lines.append(f"{label}: {rendered}")

    add("Title", entry.title)
    add("Citation", entry.canonical_citation)
    if entry.type is EntryType.RULE_OF_COURT:
        add("Rule", entry.rule_no)
        add("Section", entry.section_no)
    elif entry.type in STATUTE_LIKE_TYPES:
        add("Elements", entry.elements)
        add("Penalties", entry.penalties)
        add("Defenses", entry.defenses)
    elif entry.type is EntryType.RIGHTS_ADVISORY:
        add("Scope", entry.rights_scope)
        add("Advice", entry.advice_points)
    add("Text", keyword_window_snippet(entry.body_text, question))
    add("Summary", entry.summary)
    return "\n".join(lines)


def build_context(entries: list[KnowledgeEntry], question: str) -> str:
    return "\n\n".join(
        f"Source {idx + 1} [{entry.type.value}] {entry.title}\n"
        f"Citation: {entry.canonical_citation}\n"
        f"{slice_context(entry, question)}"
        for idx, entry in enumerate(entries)
    )


def build_prompt(question: str, entries: list[KnowledgeEntry]) -> str:
    """Assemble the grounded-answer prompt from the ranked entries."""
    return f"{ANSWER_RULES}\n\n### CONTEXT ###\n{build_context(entries, question)}\n\n### QUESTION ###\n{question}\n"


class OpenAIGenerator:
    """Answer generation through the OpenAI Responses API."""

    def __init__(self, model: str = "gpt-4.1-mini", client: OpenAI | None = None, temperature: float = 0.0):
        self.model = model
        self.client = client or OpenAI()
        self.temperature = temperature

    def generate(self, prompt: str) -> str:
        try:
            response = self.client.responses.create(model=self.model, input=prompt, temperature=self.temperature)
        except OpenAIError as exc:
            raise UpstreamError(f"generation request failed: {exc}") from exc
        return response.output_text

    def stream(self, prompt: str) -> Iterator[str]:
        """Yield text deltas as they arrive.

        Closing the iterator early closes the underlying HTTP stream.

        Raises:
            UpstreamError: If the request fails before or during streaming.
        """
        try:
            with self.client.responses.stream(
                model=self.model, input=prompt, temperature=self.temperature
            ) as stream:
                for event in stream:
                    if event.type == "response.output_text.delta" and event.delta:
                        yield event.delta
        except OpenAIError as exc:
            raise UpstreamError(f"generation stream failed: {exc}") from exc
