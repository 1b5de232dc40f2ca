#!/usr/bin/env python3
"""Shared JSONL helpers for the decision log sink."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

from logging_utils import get_logger

_log = get_logger("jsonl_io")


def append_jsonl(path: str, record: Dict[str, Any]) -> None:
    """Append one record as a JSON line, creating parent directories."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str) + "\n")


def read_jsonl(path: str) -> List[Dict[str, Any]]:
    """Read all well-formed object lines; malformed lines are skipped with a warning."""
    p = Path(path)
    if not p.exists():
        return []
    rows: List[Dict[str, Any]] = []
    with p.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as exc:
                _log.warning(f"Skipping malformed JSONL line {lineno} in {p}: {exc}")
                continue
            if isinstance(row, dict):
                rows.append(row)
    return rows
