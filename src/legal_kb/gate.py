"""Answer / refuse decision over the ranked candidate list."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .log import get_logger
from .query_profile import QueryProfile
from .schema import ScoredCandidate
from .settings import GateThresholds

logger = get_logger(__name__)

REFUSAL_ANSWER = "I don't know."
SAFETY_MESSAGE = (
    "I can't help with harming anyone. If you or someone else is in immediate danger, "
    "call 911 or the nearest police station. If you are struggling, reach out to someone "
    "you trust or the NCMH crisis hotline at 1553."
)


class GateOutcome(str, Enum):
    ANSWER = "answer"
    REFUSE = "refuse"
    SAFETY_ADVISORY = "safety_advisory"


@dataclass(frozen=True, slots=True)
class GateInputs:
    """Signals the gate looks at. Similarities are the maxima over the ranked list."""

    max_vec: float = 0.0
    max_lex: float = 0.0
    max_final: float = 0.0
    candidate_count: int = 0
    token_count: int = 0
    is_citation_query: bool = False
    is_urgent: bool = False
    is_threat: bool = False
    is_rights_of: bool = False
    is_definitional: bool = False
    is_generic_statute: bool = False
    metadata_filtered: bool = False
    has_exact_match: bool = False
    has_article_match: bool = False

    @classmethod
    def from_ranked(cls, ranked: list[ScoredCandidate], profile: QueryProfile) -> GateInputs:
        candidates = [scored.candidate for scored in ranked]
        return cls(
            max_vec=max((c.vector_sim for c in candidates), default=0.0),
            max_lex=max((c.lexical_sim for c in candidates), default=0.0),
            max_final=max((scored.final_score for scored in ranked), default=0.0),
            candidate_count=len(ranked),
            token_count=profile.token_count,
            is_citation_query=profile.is_citation_query,
            is_urgent=profile.is_urgent,
            is_threat=profile.is_threat,
            is_rights_of=profile.is_rights_of,
            is_definitional=profile.is_definitional,
            is_generic_statute=profile.is_generic_statute,
            metadata_filtered=any(
                name == "topic_overlap" for scored in ranked for name, _ in scored.contributions
            ),
            has_exact_match=any(c.exact_match for c in candidates),
            has_article_match=any(
                c.article_match or (profile.has_article and c.direct_match) for c in candidates
            ),
        )


@dataclass(frozen=True, slots=True)
class GateDecision:
    outcome: GateOutcome
    confidence: float
    threshold: float
    reasons: tuple[str, ...] = field(default_factory=tuple)
    skip_rerank: bool = False

    @property
    def should_answer(self) -> bool:
        return self.outcome is GateOutcome.ANSWER


def confidence_score(inputs: GateInputs) -> float:
    return max(0.9 * inputs.max_vec, 0.8 * inputs.max_lex, 0.7 * inputs.max_final)


class ConfidenceGate:
    """Decide whether the evidence supports generating an answer.

    The threshold starts at ``thresholds.base`` and each rule that fires
    lowers it by its own amount. It is never raised and never drops below
    ``thresholds.floor``.
    """

    def __init__(self, thresholds: GateThresholds | None = None):
        self.thresholds = thresholds or GateThresholds()

    def threshold_for(self, inputs: GateInputs) -> tuple[float, tuple[str, ...]]:
        """Return the effective threshold and the names of the rules that lowered it."""
        t = self.thresholds
        rules = (
            ("citation_query", inputs.is_citation_query, t.citation_drop),
            ("urgent_procedural", inputs.is_urgent, t.urgent_drop),
            (
                "broad_multi_candidate",
                inputs.candidate_count >= t.broad_min_candidates and inputs.token_count <= t.broad_max_tokens,
                t.broad_drop,
            ),
            (
                "metadata_low_similarity",
                inputs.metadata_filtered and inputs.max_vec < t.metadata_low_sim,
                t.metadata_drop,
            ),
            ("rights_of", inputs.is_rights_of, t.rights_drop),
            ("definitional", inputs.is_definitional, t.definitional_drop),
            ("generic_statute", inputs.is_generic_statute, t.generic_statute_drop),
        )
        threshold = t.base
        reasons = []
        for name, fired, drop in rules:
            if fired:
                threshold -= drop
                reasons.append(name)
        return max(t.floor, threshold), tuple(reasons)

    def decide(self, inputs: GateInputs) -> GateDecision:
        """Classify one request as answer, refuse or safety advisory.

        Args:
            inputs: Maxima and query-shape flags for the ranked candidates.

        Returns:
            A :class:`GateDecision`. ``skip_rerank`` is set when an exact or
            article-pattern match exists or confidence is already high.
        """
        confidence = confidence_score(inputs)
        t = self.thresholds
        if inputs.is_threat and inputs.max_vec < t.safety_max_vec:
            decision = GateDecision(
                outcome=GateOutcome.SAFETY_ADVISORY,
                confidence=confidence,
                threshold=t.base,
                reasons=("threat_phrasing",),
                skip_rerank=True,
            )
            logger.info("gate_decision", outcome=decision.outcome.value, confidence=round(confidence, 4))
            return decision

        threshold, reasons = self.threshold_for(inputs)
        skip_rerank = confidence > t.high_confidence or inputs.has_exact_match or inputs.has_article_match
        if inputs.candidate_count == 0:
            outcome = GateOutcome.REFUSE
            reasons = (*reasons, "no_candidates")
        elif confidence < threshold:
            outcome = GateOutcome.REFUSE
            reasons = (*reasons, "below_threshold")
        else:
            outcome = GateOutcome.ANSWER
        logger.info(
            "gate_decision",
            outcome=outcome.value,
            confidence=round(confidence, 4),
            threshold=round(threshold, 4),
            reasons=list(reasons),
        )
        return GateDecision(
            outcome=outcome,
            confidence=confidence,
            threshold=threshold,
            reasons=reasons,
            skip_rerank=skip_rerank,
        )
