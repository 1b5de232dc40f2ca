#!/usr/bin/env python3
"""Append-only decision log (the agent's audit trail).

Exactly one record per cycle. Records are totally ordered by cycle start
time; appending a record that is older than the last one is rejected.
An optional JSONL sink mirrors every record for a reporting layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from jsonl_io import append_jsonl
from logging_utils import get_logger

ACTION_ENTER = "ENTER"
ACTION_REBALANCE = "REBALANCE"
ACTION_HOLD = "HOLD"
ACTIONS = (ACTION_ENTER, ACTION_REBALANCE, ACTION_HOLD)


@dataclass(frozen=True)
class DecisionRecord:
    seq: int
    timestamp: datetime
    action: str
    reason: str
    opportunities: Tuple[Dict[str, Any], ...] = ()
    allocations: Tuple[Dict[str, Any], ...] = ()
    regime: Optional[Dict[str, Any]] = None
    policy: Optional[Dict[str, Any]] = None
    halt_reasons: Tuple[str, ...] = ()
    economics: Optional[Dict[str, Any]] = None
    feeds: Dict[str, str] = field(default_factory=dict)
    execution: Optional[Dict[str, Any]] = None
    projected_returns: Optional[Dict[str, float]] = None  # daily / monthly / yearly of `allocations`

    def __post_init__(self) -> None:
        if self.action not in ACTIONS:
            raise ValueError(f"Unknown action {self.action!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "reason": self.reason,
            "opportunities": list(self.opportunities),
            "allocations": list(self.allocations),
            "regime": self.regime,
            "policy": self.policy,
            "halt_reasons": list(self.halt_reasons),
            "economics": self.economics,
            "feeds": dict(self.feeds),
            "execution": self.execution,
            "projected_returns": self.projected_returns,
        }


class DecisionLog:
    """In-memory append-only record sequence with an optional JSONL mirror."""

    def __init__(self, jsonl_path: Optional[str] = None):
        self.jsonl_path = jsonl_path or None
        self._records: List[DecisionRecord] = []
        self.log = get_logger("decision_log")

    def __len__(self) -> int:
        return len(self._records)

    @property
    def next_seq(self) -> int:
        return self._records[-1].seq + 1 if self._records else 1

    def records(self) -> Tuple[DecisionRecord, ...]:
        return tuple(self._records)

    def last(self) -> Optional[DecisionRecord]:
        return self._records[-1] if self._records else None

    def append(self, record: DecisionRecord) -> DecisionRecord:
        last = self.last()
        if last is not None:
            if record.seq <= last.seq:
                raise ValueError(f"Decision seq {record.seq} not after {last.seq}")
            if record.timestamp < last.timestamp:
                raise ValueError(
                    f"Decision at {record.timestamp.isoformat()} precedes {last.timestamp.isoformat()}"
                )
        self._records.append(record)
        if self.jsonl_path:
            try:
                append_jsonl(self.jsonl_path, record.to_dict())
            except OSError as exc:
                # In-memory log stays authoritative; the sink is for reporting only.
                self.log.warning(f"Decision sink write failed ({self.jsonl_path}): {exc}")
        self.log.info(f"Decision #{record.seq}: {record.action} - {record.reason}")
        return record
