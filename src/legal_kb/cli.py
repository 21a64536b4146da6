"""Offline evaluation tools: metrics, gold-set bootstrapping and miss analysis.

Each entry point returns a process exit status: 0 on success, 1 when an input
file cannot be read or parsed. Usage errors exit with 2 through argparse.
"""
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path

from .errors import EvaluationInputError
from .evaluation import bootstrap_gold, evaluate, find_misses
from .io_utils import load_entries, load_gold, misses_to_json, save_gold
from .log import configure_logging, get_logger
from .settings import load_settings

logger = get_logger(__name__)


def _parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--entries", "-e", type=Path, required=True, help="Entries JSON array or JSONL file.")
    parser.add_argument("--gold", "-g", type=Path, required=True, help="Gold queries JSON array or JSONL file.")
    return parser


def _setup() -> None:
    configure_logging(load_settings().log_level, json_output=True)


def eval_main(argv: list[str] | None = None) -> int:
    parser = _parser("Compute p@1, p@3 and nDCG@10 of the lexical ranking over a gold set.")
    parser.add_argument("--limit", type=int, default=20, help="Results considered per query.")
    args = parser.parse_args(argv)
    _setup()

    try:
        entries = load_entries(args.entries)
        gold = load_gold(args.gold)
    except EvaluationInputError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    logger.info("evaluation_started", entries=len(entries), queries=len(gold), limit=args.limit)
    result = evaluate(entries, gold, limit=max(1, args.limit))
    print(json.dumps(asdict(result), indent=2))
    return 0


def bootstrap_main(argv: list[str] | None = None) -> int:
    parser = _parser("Fill empty ideal_top lists of a gold set from the current ranking.")
    parser.add_argument("--top", type=int, default=3, help="Ids written per bootstrapped query.")
    parser.add_argument("--out", "-o", type=Path, help="Output path. Defaults to <gold>.bootstrapped.json.")
    args = parser.parse_args(argv)
    _setup()

    try:
        entries = load_entries(args.entries)
        gold = load_gold(args.gold)
    except EvaluationInputError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    out = args.out or args.gold.with_suffix(".bootstrapped.json")
    try:
        save_gold(bootstrap_gold(entries, gold, top=args.top), out)
    except OSError as exc:
        print(f"error: cannot write {out}: {exc}", file=sys.stderr)
        return 1
    print(f"Wrote {len(gold)} gold records to {out}")
    return 0


def misses_main(argv: list[str] | None = None) -> int:
    parser = _parser("Show expected entry ids missing from the top-k of each gold query.")
    parser.add_argument("--k", type=int, default=3, help="Ranking depth checked per query.")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON.")
    args = parser.parse_args(argv)
    _setup()

    try:
        entries = load_entries(args.entries)
        gold = load_gold(args.gold)
    except EvaluationInputError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    reports = find_misses(entries, gold, k=args.k)
    if args.json:
        print(misses_to_json(reports))
        return 0
    k = max(1, args.k)
    for report in reports:
        print(f"Query: {report.query}")
        print(f"  Missing (expected in top-{k}): {', '.join(report.missing)}")
        print(f"  Ranked top-{k}: {', '.join(report.ranked)}")
    print(f"{len(reports)} of {len(gold)} queries have misses")
    return 0


if __name__ == "__main__":
    raise SystemExit(eval_main())
