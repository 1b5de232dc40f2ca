#!/usr/bin/env python3
"""
Yield opportunity scoring and top-K capital allocation.

Scoring:
- score = APY x weight(risk tier) under the active risk-tolerance profile
- ties keep input order (stable sort) so allocation is deterministic

Allocation:
- only opportunities whose tier weight is > 0 are eligible
- the top-K eligible opportunities split total capital proportionally to score
- an all-zero top-K (or an empty list) is an error, never a silent allocation

Display ranking (rank_by_apy) is raw APY descending and ignores risk weights.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from agent_config import get_section
from errors import InvalidAllocationInput
from logging_utils import get_logger

RISK_TIERS = ("low", "medium", "high")
OPPORTUNITY_TYPES = ("liquid-staking", "vault", "other")

DEFAULT_TOP_K = 3

RISK_PROFILES: Dict[str, Dict[str, float]] = {
    "conservative": {"low": 1.0, "medium": 0.3, "high": 0.0},
    "moderate": {"low": 0.6, "medium": 1.0, "high": 0.3},
    "aggressive": {"low": 0.3, "medium": 0.7, "high": 1.0},
}

RiskTolerance = Union[str, Mapping[str, float]]

_log = get_logger("yield_scanner")


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class YieldOpportunity:
    """One yield-bearing position candidate produced by a scan."""

    protocol: str
    strategy: str
    asset: str
    apy: float  # decimal fraction, 0.08 = 8%
    tvl: float  # USD
    risk: str = "low"
    opportunity_type: str = "other"

    def __post_init__(self) -> None:
        risk = str(self.risk or "").strip().lower()
        kind = str(self.opportunity_type or "").strip().lower()
        if risk not in RISK_TIERS:
            raise ValueError(f"Unknown risk tier {self.risk!r} for {self.protocol}")
        if kind not in OPPORTUNITY_TYPES:
            raise ValueError(f"Unknown opportunity type {self.opportunity_type!r} for {self.protocol}")
        apy = float(self.apy)
        tvl = float(self.tvl)
        if not math.isfinite(apy) or apy < 0:
            raise ValueError(f"APY must be a finite non-negative fraction, got {self.apy!r}")
        if not math.isfinite(tvl) or tvl < 0:
            raise ValueError(f"TVL must be finite and non-negative, got {self.tvl!r}")
        object.__setattr__(self, "risk", risk)
        object.__setattr__(self, "opportunity_type", kind)
        object.__setattr__(self, "apy", apy)
        object.__setattr__(self, "tvl", tvl)

    @property
    def key(self) -> Tuple[str, str, str]:
        """Equivalence key: protocol + strategy + asset."""
        return (self.protocol, self.strategy, self.asset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "strategy": self.strategy,
            "asset": self.asset,
            "apy": self.apy,
            "tvl": self.tvl,
            "risk": self.risk,
            "opportunity_type": self.opportunity_type,
        }


@dataclass(frozen=True)
class ScoredOpportunity:
    opportunity: YieldOpportunity
    weight: float
    score: float

    def to_dict(self) -> Dict[str, Any]:
        payload = self.opportunity.to_dict()
        payload["weight"] = self.weight
        payload["score"] = self.score
        return payload


@dataclass(frozen=True)
class Allocation:
    """Capital assigned to one opportunity by a single allocate() call."""

    opportunity: YieldOpportunity
    amount: float
    expected_yield: float  # annualized: amount x APY
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.opportunity.protocol,
            "strategy": self.opportunity.strategy,
            "asset": self.opportunity.asset,
            "apy": self.opportunity.apy,
            "risk": self.opportunity.risk,
            "amount": self.amount,
            "expected_yield": self.expected_yield,
            "score": self.score,
        }


# =============================================================================
# Risk profiles
# =============================================================================

def _validate_weights(name: str, weights: Mapping[str, Any]) -> Dict[str, float]:
    if not isinstance(weights, Mapping):
        raise ValueError(f"Risk profile {name!r} must be a mapping of tier -> weight")
    out: Dict[str, float] = {}
    for tier in RISK_TIERS:
        if tier not in weights:
            raise ValueError(f"Risk profile {name!r} is missing tier {tier!r}")
        try:
            w = float(weights[tier])
        except (TypeError, ValueError):
            raise ValueError(f"Risk profile {name!r} weight for {tier!r} is not a number") from None
        if not 0.0 <= w <= 1.0:
            raise ValueError(f"Risk profile {name!r} weight for {tier!r} must be in [0, 1], got {w}")
        out[tier] = w
    return out


def configured_risk_profiles(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Dict[str, float]]:
    """Fixed profiles merged with custom tables from config.risk_profiles."""
    merged = {name: dict(weights) for name, weights in RISK_PROFILES.items()}
    for name, weights in get_section("risk_profiles", cfg).items():
        key = str(name or "").strip().lower()
        if key:
            merged[key] = _validate_weights(key, weights)
    return merged


def resolve_risk_weights(
    risk_tolerance: RiskTolerance,
    profiles: Optional[Mapping[str, Mapping[str, float]]] = None,
) -> Dict[str, float]:
    """Resolve a profile name or explicit weight table to {tier: weight}."""
    if isinstance(risk_tolerance, Mapping):
        return _validate_weights("custom", risk_tolerance)
    name = str(risk_tolerance or "").strip().lower()
    table = profiles if profiles is not None else RISK_PROFILES
    if name not in table:
        raise ValueError(f"Unknown risk tolerance profile {risk_tolerance!r}; known: {sorted(table)}")
    return _validate_weights(name, table[name])


# =============================================================================
# Scoring / allocation
# =============================================================================

def score(
    opportunities: Sequence[YieldOpportunity],
    risk_tolerance: RiskTolerance = "moderate",
    profiles: Optional[Mapping[str, Mapping[str, float]]] = None,
) -> List[ScoredOpportunity]:
    """Return opportunities ranked by risk-weighted score (stable on ties)."""
    weights = resolve_risk_weights(risk_tolerance, profiles)
    scored = [
        ScoredOpportunity(opportunity=opp, weight=weights[opp.risk], score=opp.apy * weights[opp.risk])
        for opp in opportunities
    ]
    # sorted() is stable with reverse=True as well.
    return sorted(scored, key=lambda s: s.score, reverse=True)


def allocate(
    opportunities: Sequence[YieldOpportunity],
    total_capital: float,
    risk_tolerance: RiskTolerance = "moderate",
    top_k: int = DEFAULT_TOP_K,
    profiles: Optional[Mapping[str, Mapping[str, float]]] = None,
) -> List[Allocation]:
    """Split total_capital across the top-K eligible opportunities by score.

    Raises InvalidAllocationInput when nothing is eligible or every top-K
    score is zero.
    """
    if int(top_k) < 1:
        raise ValueError("top_k must be >= 1")
    try:
        capital = float(total_capital)
    except (TypeError, ValueError):
        raise InvalidAllocationInput(f"total capital is not a number: {total_capital!r}") from None
    if not math.isfinite(capital) or capital < 0:
        raise InvalidAllocationInput(f"total capital must be finite and >= 0, got {total_capital!r}")
    if not opportunities:
        raise InvalidAllocationInput("no eligible opportunities: opportunity list is empty")

    ranked = score(opportunities, risk_tolerance, profiles)
    eligible = [s for s in ranked if s.weight > 0]
    top = eligible[: int(top_k)]
    total_score = sum(s.score for s in top)
    if not top or total_score <= 0:
        raise InvalidAllocationInput(
            f"no eligible opportunities: {len(opportunities)} candidate(s), "
            f"{len(eligible)} with nonzero risk weight, top-{int(top_k)} score sum {total_score:.6f}"
        )

    allocations = []
    for s in top:
        amount = (s.score / total_score) * capital
        allocations.append(
            Allocation(
                opportunity=s.opportunity,
                amount=amount,
                expected_yield=amount * s.opportunity.apy,
                score=s.score,
            )
        )
    _log.debug(
        f"Allocated {capital:.2f} across {len(allocations)} opportunities: "
        + ", ".join(f"{a.opportunity.protocol}={a.amount:.2f}" for a in allocations)
    )
    return allocations


def rank_by_apy(opportunities: Iterable[YieldOpportunity]) -> List[YieldOpportunity]:
    """Display ranking: raw APY descending, independent of risk weights."""
    return sorted(opportunities, key=lambda o: o.apy, reverse=True)


def merge_opportunities(*provider_lists: Iterable[YieldOpportunity]) -> List[YieldOpportunity]:
    """Normalize several provider lists into one display-ranked list.

    Equivalent opportunities (same protocol+strategy+asset) are kept once;
    the first provider to report one wins.
    """
    seen = set()
    merged: List[YieldOpportunity] = []
    for provider in provider_lists:
        for opp in provider or []:
            if opp.key in seen:
                continue
            seen.add(opp.key)
            merged.append(opp)
    return rank_by_apy(merged)


def filter_min_yield(opportunities: Iterable[YieldOpportunity], min_apy: float) -> List[YieldOpportunity]:
    return [o for o in opportunities if o.apy >= float(min_apy)]


def projected_returns(allocations: Sequence[Allocation]) -> Dict[str, float]:
    """Daily / monthly (30d) / yearly expected yield of an allocation vector."""
    daily = sum(a.amount * a.opportunity.apy / 365.0 for a in allocations)
    return {
        "daily": daily,
        "monthly": daily * 30.0,
        "yearly": daily * 365.0,
    }


__all__ = [
    "Allocation",
    "DEFAULT_TOP_K",
    "OPPORTUNITY_TYPES",
    "RISK_PROFILES",
    "RISK_TIERS",
    "ScoredOpportunity",
    "YieldOpportunity",
    "allocate",
    "configured_risk_profiles",
    "filter_min_yield",
    "merge_opportunities",
    "projected_returns",
    "rank_by_apy",
    "resolve_risk_weights",
    "score",
]
