from __future__ import annotations

from dataclasses import asdict
import json
from pathlib import Path

from .errors import EvaluationInputError
from .schema import GoldQueryRecord, KnowledgeEntry, MissReport


def _load_records(path: str | Path) -> list[dict]:
    """Read a JSON array file, or a JSONL file with one object per line."""
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise EvaluationInputError(f"cannot read {source}: {exc}") from exc

    try:
        if text.lstrip().startswith("["):
            records = json.loads(text)
        else:
            records = [json.loads(line) for line in text.splitlines() if line.strip()]
    except json.JSONDecodeError as exc:
        raise EvaluationInputError(f"{source} is not valid JSON: {exc}") from exc

    if not all(isinstance(record, dict) for record in records):
        raise EvaluationInputError(f"{source} must contain JSON objects only")
    return records


def load_entries(path: str | Path = "data/entries.json") -> list[KnowledgeEntry]:
    records = _load_records(path)
    try:
        return [KnowledgeEntry.from_dict(record) for record in records]
    except ValueError as exc:
        raise EvaluationInputError(f"{path}: invalid entry: {exc}") from exc


def load_gold(path: str | Path = "data/gold.json") -> list[GoldQueryRecord]:
    return [GoldQueryRecord.from_dict(record) for record in _load_records(path)]


def save_gold(records: list[GoldQueryRecord], path: str | Path) -> None:
    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    payload = [record.to_dict() for record in records]
    destination.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def misses_to_json(reports: list[MissReport]) -> str:
    return json.dumps([asdict(report) for report in reports], indent=2, ensure_ascii=False)
