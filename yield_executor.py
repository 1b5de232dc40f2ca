#!/usr/bin/env python3
"""
Executor boundary for the decision engine.

The engine hands the executor the allocation(s) to act on and inspects only
`success` and `tx_id` of the result. Signing, swapping and confirmation live
behind this interface; nothing here reads or holds key material.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from logging_utils import get_logger
from yield_scanner import Allocation


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutionResult:
    """Result of one executor call."""
    success: bool
    tx_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'tx_id': self.tx_id,
            'error': self.error,
            'timestamp': self.timestamp.isoformat(),
        }


class YieldExecutor(abc.ABC):
    """Base class for on-chain executors."""

    def __init__(self, log=None):
        self.log = log or get_logger(self.name)

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abc.abstractmethod
    async def execute(
        self,
        allocations: Sequence[Allocation],
        *,
        action: str,
        max_slippage: float,
    ) -> ExecutionResult:
        """Act on allocations. May raise errors.ExecutionFailure."""
        raise NotImplementedError


class DryRunExecutor(YieldExecutor):
    """Logs the intended stake/deposit and reports success without touching chain."""

    def __init__(self, log=None):
        super().__init__(log)
        self.calls = 0

    @staticmethod
    def _route(allocation: Allocation) -> str:
        kind = allocation.opportunity.opportunity_type
        if kind == "liquid-staking":
            return "stake"
        if kind == "vault":
            return "deposit"
        return "swap"

    async def execute(
        self,
        allocations: Sequence[Allocation],
        *,
        action: str,
        max_slippage: float,
    ) -> ExecutionResult:
        if not allocations:
            return ExecutionResult(success=False, error="no allocations to execute")
        self.calls += 1
        routes = []
        for alloc in allocations:
            route = self._route(alloc)
            routes.append(route)
            opp = alloc.opportunity
            self.log.info(
                f"[dry-run] {action}: {route} {alloc.amount:.4f} into {opp.protocol} "
                f"({opp.strategy}, {opp.apy * 100:.2f}% APY, slippage<={max_slippage * 100:.2f}%)"
            )
        return ExecutionResult(success=True, tx_id=f"dry-run-{routes[0]}-{self.calls}")
