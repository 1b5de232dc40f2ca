"""Error taxonomy for the MoluscoYield decision engine."""

from __future__ import annotations

from typing import List, Optional, Sequence


class MoluscoError(RuntimeError):
    """Base class for decision-engine errors."""


class DataUnavailable(MoluscoError):
    """An opportunity, price, capital or regime source failed with no fallback."""


class InvalidAllocationInput(MoluscoError):
    """Scores or sizing inputs are degenerate; never coerced to a number."""


class InvalidRiskInputs(InvalidAllocationInput):
    """Kelly or economics inputs are degenerate (e.g. zero loss denominator)."""


class CircuitBreakerTripped(MoluscoError):
    """Deliberate safety HOLD; carries the triggering conditions."""

    def __init__(self, reasons: Sequence[str]):
        self.reasons: List[str] = list(reasons)
        super().__init__("Circuit breaker: " + "; ".join(self.reasons))


class ExecutionFailure(MoluscoError):
    """Reported by the executor collaborator; never retried by the engine."""

    def __init__(self, message: str, tx_id: Optional[str] = None):
        self.tx_id = tx_id
        super().__init__(message)
