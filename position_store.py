#!/usr/bin/env python3
"""
Position records owned by the decision engine.

The store is a table keyed by position id. The agent runs it as a single
slot (at most one active position) and replaces it wholesale on
ENTER/REBALANCE; nothing else writes to it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from yield_scanner import Allocation


def _new_position_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class Position:
    """One tracked yield position. entry_apy is fixed at entry time."""

    protocol: str
    asset: str
    amount: float
    entry_apy: float
    entry_timestamp: datetime
    strategy: str = ""
    id: str = field(default_factory=_new_position_id)

    @classmethod
    def from_allocation(cls, allocation: Allocation, entered_at: datetime) -> "Position":
        opp = allocation.opportunity
        return cls(
            protocol=opp.protocol,
            asset=opp.asset,
            amount=allocation.amount,
            entry_apy=opp.apy,
            entry_timestamp=entered_at,
            strategy=opp.strategy,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/persistence."""
        return {
            'id': self.id,
            'protocol': self.protocol,
            'strategy': self.strategy,
            'asset': self.asset,
            'amount': self.amount,
            'entry_apy': self.entry_apy,
            'entry_timestamp': self.entry_timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        """Create from dictionary."""
        ts = data.get('entry_timestamp')
        return cls(
            protocol=data.get('protocol', ''),
            asset=data.get('asset', ''),
            amount=float(data.get('amount', 0.0)),
            entry_apy=float(data.get('entry_apy', 0.0)),
            entry_timestamp=datetime.fromisoformat(ts) if isinstance(ts, str) else ts,
            strategy=data.get('strategy', ''),
            id=data.get('id') or _new_position_id(),
        )


class PositionStore:
    """In-memory position table keyed by id."""

    def __init__(self, max_positions: int = 1):
        if max_positions < 1:
            raise ValueError("max_positions must be >= 1")
        self.max_positions = max_positions
        self._positions: Dict[str, Position] = {}

    def __len__(self) -> int:
        return len(self._positions)

    def get(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def all(self) -> List[Position]:
        return list(self._positions.values())

    def active(self) -> Optional[Position]:
        """The oldest tracked position (the single slot in single-slot mode)."""
        for pos in self._positions.values():
            return pos
        return None

    def add(self, position: Position) -> None:
        if position.id in self._positions:
            raise ValueError(f"Position {position.id} already tracked")
        if len(self._positions) >= self.max_positions:
            raise ValueError(f"Position store full ({self.max_positions})")
        self._positions[position.id] = position

    def replace_all(self, position: Position) -> Optional[Position]:
        """Drop every tracked position and track only `position`; returns the previous active one."""
        previous = self.active()
        self._positions = {position.id: position}
        return previous

    def clear(self) -> None:
        self._positions = {}
