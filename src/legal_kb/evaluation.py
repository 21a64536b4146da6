from __future__ import annotations

import math

from .lexical import lexical_search
from .log import get_logger
from .schema import EvaluationResult, GoldQueryRecord, KnowledgeEntry, MissReport, SearchFilters

logger = get_logger(__name__)


def precision_at_k(ranked_ids: list[str], ideal_ids: list[str], k: int) -> float:
    """Binary precision@k: 1.0 when any of the top *k* ids is an ideal id."""
    ideal = set(ideal_ids)
    return 1.0 if any(entry_id in ideal for entry_id in ranked_ids[:k]) else 0.0


def dcg(ranked_ids: list[str], ideal_ids: list[str], k: int) -> float:
    """Discounted cumulative gain with binary relevance, gain ``2^rel - 1`` and discount ``log2(rank + 2)``."""
    ideal = set(ideal_ids)
    total = 0.0
    for rank, entry_id in enumerate(ranked_ids[:k]):
        relevance = 1 if entry_id in ideal else 0
        total += (2**relevance - 1) / math.log2(rank + 2)
    return total


def ndcg_at_k(ranked_ids: list[str], ideal_ids: list[str], k: int = 10) -> float:
    """DCG normalized by the DCG of the ideal ordering itself."""
    ideal_dcg = dcg(ideal_ids, ideal_ids, k)
    if ideal_dcg == 0:
        return 0.0
    return dcg(ranked_ids, ideal_ids, k) / ideal_dcg


def rank_ids(entries: list[KnowledgeEntry], record: GoldQueryRecord, limit: int | None = None) -> list[str]:
    """Run the dashboard ranking for one gold query and return the entry ids."""
    results = lexical_search(entries, record.query, SearchFilters.from_dict(record.filters), limit)
    return [entry.entry_id for entry in results]


def evaluate(entries: list[KnowledgeEntry], gold: list[GoldQueryRecord], limit: int = 20) -> EvaluationResult:
    """Score the lexical ranking against a gold set.

    Args:
        entries: Corpus to search.
        gold: Labeled queries. Records without ``ideal_top`` are skipped.
        limit: Results considered per query.

    Returns:
        :class:`EvaluationResult` with p@1, p@3 and nDCG@10 averaged over the
        labeled records, rounded to three decimals. A query that returns
        nothing scores zero on every metric.
    """
    labeled = [record for record in gold if record.ideal_top]
    p1 = p3 = ndcg10 = 0.0
    for record in labeled:
        ranked = rank_ids(entries, record, limit)
        p1 += precision_at_k(ranked, record.ideal_top, 1)
        p3 += precision_at_k(ranked, record.ideal_top, 3)
        ndcg10 += ndcg_at_k(ranked, record.ideal_top, 10)

    total = len(labeled)
    denominator = total or 1
    result = EvaluationResult(
        total=total,
        p1=round(p1 / denominator, 3),
        p3=round(p3 / denominator, 3),
        ndcg10=round(ndcg10 / denominator, 3),
    )
    logger.info("evaluation_complete", total=result.total, p1=result.p1, p3=result.p3, ndcg10=result.ndcg10)
    return result


def bootstrap_gold(entries: list[KnowledgeEntry], gold: list[GoldQueryRecord], top: int = 3) -> list[GoldQueryRecord]:
    """Fill empty ``ideal_top`` lists from the current ranking.

    Curated ``ideal_top`` lists are copied through unchanged.
    """
    top = max(1, top)
    bootstrapped = []
    for record in gold:
        ideal = list(record.ideal_top) or rank_ids(entries, record, top)
        bootstrapped.append(GoldQueryRecord(query=record.query, ideal_top=ideal, filters=record.filters))
    filled = sum(1 for before, after in zip(gold, bootstrapped) if not before.ideal_top and after.ideal_top)
    logger.info("gold_bootstrapped", total=len(gold), filled=filled)
    return bootstrapped


def find_misses(entries: list[KnowledgeEntry], gold: list[GoldQueryRecord], k: int = 3) -> list[MissReport]:
    """List, per gold query, the expected ids missing from the top *k* and what ranked instead."""
    k = max(1, k)
    reports = []
    for record in gold:
        ranked = rank_ids(entries, record, k)
        missing = [entry_id for entry_id in record.ideal_top if entry_id not in ranked]
        if missing:
            reports.append(MissReport(query=record.query, missing=missing, ranked=ranked))
    return reports
