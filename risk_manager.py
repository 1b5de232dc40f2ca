#!/usr/bin/env python3
"""
MoluscoYield Risk Manager

Stateless risk computations consulted once per decision cycle:
  1. Market regime detection (normal / elevated / crisis) from raw signals
  2. Regime policy lookup (liquidity priority, yield floor, max hold days)
  3. Half-Kelly position sizing
  4. Operating-cost economics (net yield, breakeven capital)
  5. Circuit breaker (throughput / LST spread / consecutive losses)

Crisis signals (network throughput, LST spread) are evaluated before the
volatility band, so they always take precedence over volatility elevation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from agent_config import get_param, get_section
from errors import InvalidRiskInputs
from logging_utils import get_logger

REGIME_NORMAL = "normal"
REGIME_ELEVATED = "elevated"
REGIME_CRISIS = "crisis"

# Ordered from least to most severe.
REGIME_ORDER: Tuple[str, ...] = (REGIME_NORMAL, REGIME_ELEVATED, REGIME_CRISIS)

DAYS_PER_YEAR = 365


def _finite(name: str, value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        raise InvalidRiskInputs(f"invalid risk inputs: {name} is not a number ({value!r})") from None
    if not math.isfinite(out):
        raise InvalidRiskInputs(f"invalid risk inputs: {name} must be finite, got {value!r}")
    return out


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class RiskConfig:
    """Thresholds for regime detection, the circuit breaker and sizing."""

    # Regime detection
    crisis_tps_floor: float = get_param("risk", "crisis_tps_floor")
    crisis_spread_ceiling: float = get_param("risk", "crisis_spread_ceiling")
    volatility_elevated: float = get_param("risk", "volatility_elevated")
    volatility_crisis: float = get_param("risk", "volatility_crisis")

    # Circuit breaker
    halt_tps_floor: float = get_param("risk", "halt_tps_floor")
    halt_spread_ceiling: float = get_param("risk", "halt_spread_ceiling")
    max_consecutive_losses: int = get_param("risk", "max_consecutive_losses")

    # Sizing / economics
    kelly_safety_multiplier: float = get_param("risk", "kelly_safety_multiplier")
    target_apy: float = get_param("risk", "target_apy")

    def __post_init__(self) -> None:
        if self.volatility_crisis < self.volatility_elevated:
            raise ValueError("volatility_crisis must be >= volatility_elevated")
        if int(self.max_consecutive_losses) < 1:
            raise ValueError("max_consecutive_losses must be >= 1")
        if not 0 < float(self.kelly_safety_multiplier) <= 1:
            raise ValueError("kelly_safety_multiplier must be in (0, 1]")
        if float(self.target_apy) <= 0:
            raise ValueError("target_apy must be positive")
        self.max_consecutive_losses = int(self.max_consecutive_losses)

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "RiskConfig":
        values = get_section("risk", cfg)
        return cls(**{k: values[k] for k in cls.__dataclass_fields__})


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class RegimeSignals:
    """Raw market-stress signals supplied by the risk signal provider."""

    volatility_index: float
    network_tps: float
    lst_spread: float  # fraction, 0.05 = 5%

    def __post_init__(self) -> None:
        for name in ("volatility_index", "network_tps", "lst_spread"):
            value = float(getattr(self, name))
            if not math.isfinite(value):
                raise ValueError(f"{name} must be finite, got {getattr(self, name)!r}")
            object.__setattr__(self, name, value)

    def to_dict(self) -> Dict[str, float]:
        return {
            "volatility_index": self.volatility_index,
            "network_tps": self.network_tps,
            "lst_spread": self.lst_spread,
        }


@dataclass(frozen=True)
class MarketRegime:
    regime: str
    signals: RegimeSignals
    timestamp: datetime

    @property
    def severity(self) -> int:
        return REGIME_ORDER.index(self.regime)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"regime": self.regime}
        payload.update(self.signals.to_dict())
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


@dataclass(frozen=True)
class RegimePolicy:
    max_position_days: float
    preferred_protocols: Tuple[str, ...]
    liquidity_priority: float  # 0-1
    yield_threshold: float  # minimum acceptable APY

    @property
    def liquidity_first(self) -> bool:
        return self.liquidity_priority > 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_position_days": self.max_position_days,
            "preferred_protocols": list(self.preferred_protocols),
            "liquidity_priority": self.liquidity_priority,
            "yield_threshold": self.yield_threshold,
        }


@dataclass(frozen=True)
class CostTracker:
    """Daily operating figures for one cycle, common currency unit."""

    daily_api_cost: float = 0.0
    daily_compute_cost: float = 0.0
    daily_transaction_cost: float = 0.0
    gross_yield: float = 0.0  # daily

    @property
    def daily_costs(self) -> float:
        return self.daily_api_cost + self.daily_compute_cost + self.daily_transaction_cost


@dataclass(frozen=True)
class NetYield:
    gross: float
    costs: float
    net: float
    breakeven_capital: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "gross": self.gross,
            "costs": self.costs,
            "net": self.net,
            "breakeven_capital": self.breakeven_capital,
        }


# =============================================================================
# Regime policy table
# =============================================================================

DEFAULT_REGIME_POLICIES: Dict[str, RegimePolicy] = {
    REGIME_NORMAL: RegimePolicy(
        max_position_days=30,
        preferred_protocols=("JitoSOL", "mSOL", "bSOL", "INF", "Kamino"),
        liquidity_priority=0.3,
        yield_threshold=0.03,
    ),
    REGIME_ELEVATED: RegimePolicy(
        max_position_days=7,
        preferred_protocols=("JitoSOL", "mSOL", "bSOL"),
        liquidity_priority=0.6,
        yield_threshold=0.05,
    ),
    REGIME_CRISIS: RegimePolicy(
        max_position_days=1,
        preferred_protocols=("JitoSOL", "mSOL"),  # most liquid
        liquidity_priority=0.9,
        yield_threshold=0.06,
    ),
}


def validate_policy_table(table: Mapping[str, RegimePolicy]) -> None:
    """Raise ValueError unless severity never lowers liquidity priority or the
    yield floor, and never raises the max holding duration."""
    missing = [r for r in REGIME_ORDER if r not in table]
    if missing:
        raise ValueError(f"Regime policy table is missing {missing}")
    for lower, higher in zip(REGIME_ORDER, REGIME_ORDER[1:]):
        lo, hi = table[lower], table[higher]
        if not 0.0 <= hi.liquidity_priority <= 1.0 or not 0.0 <= lo.liquidity_priority <= 1.0:
            raise ValueError("liquidity_priority must be in [0, 1]")
        if hi.liquidity_priority < lo.liquidity_priority:
            raise ValueError(f"liquidity_priority must not decrease from {lower} to {higher}")
        if hi.yield_threshold < lo.yield_threshold:
            raise ValueError(f"yield_threshold must not decrease from {lower} to {higher}")
        if hi.max_position_days > lo.max_position_days:
            raise ValueError(f"max_position_days must not increase from {lower} to {higher}")


def configured_regime_policies(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, RegimePolicy]:
    """Default policy table with per-field overrides from config.regime_policies."""
    table = dict(DEFAULT_REGIME_POLICIES)
    overrides = get_section("regime_policies", cfg)
    for regime, fields in overrides.items():
        key = str(regime or "").strip().lower()
        if key not in REGIME_ORDER:
            raise ValueError(f"Unknown regime {regime!r} in regime_policies")
        if not isinstance(fields, dict):
            raise ValueError(f"regime_policies.{key} must be a mapping")
        base = table[key].to_dict()
        base.update(fields)
        table[key] = RegimePolicy(
            max_position_days=float(base["max_position_days"]),
            preferred_protocols=tuple(str(p) for p in base["preferred_protocols"]),
            liquidity_priority=float(base["liquidity_priority"]),
            yield_threshold=float(base["yield_threshold"]),
        )
    validate_policy_table(table)
    return table


# =============================================================================
# Risk Manager
# =============================================================================

class RiskManager:
    """Regime classification, sizing, economics and the circuit breaker.

    Holds configuration only; every method is a pure function of its inputs.
    """

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        policies: Optional[Mapping[str, RegimePolicy]] = None,
    ):
        self.config = config or RiskConfig()
        self.policies: Dict[str, RegimePolicy] = dict(policies) if policies is not None else dict(DEFAULT_REGIME_POLICIES)
        validate_policy_table(self.policies)
        self.log = get_logger("risk_mgr")

    # =========================================================================
    # Regime
    # =========================================================================

    def detect_regime(self, signals: RegimeSignals, now: Optional[datetime] = None) -> MarketRegime:
        """Classify market stress. Crisis conditions are checked first."""
        cfg = self.config
        if signals.network_tps < cfg.crisis_tps_floor or signals.lst_spread > cfg.crisis_spread_ceiling:
            regime = REGIME_CRISIS
        elif signals.volatility_index > cfg.volatility_elevated:
            regime = REGIME_ELEVATED
            if signals.volatility_index >= cfg.volatility_crisis:
                # Volatility alone never escalates to crisis; network signals are healthy.
                self.log.warning(
                    f"Volatility {signals.volatility_index:.1f} at/above crisis band "
                    f"{cfg.volatility_crisis:.1f}; regime held at {REGIME_ELEVATED}"
                )
        else:
            regime = REGIME_NORMAL
        return MarketRegime(
            regime=regime,
            signals=signals,
            timestamp=now or datetime.now(timezone.utc),
        )

    def get_regime_strategy(self, regime: Union[str, MarketRegime]) -> RegimePolicy:
        """Lookup the policy for a regime (table lookup, not a computation)."""
        name = regime.regime if isinstance(regime, MarketRegime) else str(regime or "").lower()
        if name not in self.policies:
            raise ValueError(f"Unknown regime {regime!r}")
        return self.policies[name]

    # =========================================================================
    # Position sizing
    # =========================================================================

    def kelly_fraction(self, win_rate: float, avg_win: float, avg_loss: float) -> float:
        """Raw Kelly fraction f* = (p*b - q) / b with b = avg_win / avg_loss."""
        p = _finite("win_rate", win_rate)
        win = _finite("avg_win", avg_win)
        loss = _finite("avg_loss", avg_loss)
        if not 0.0 <= p <= 1.0:
            raise InvalidRiskInputs(f"invalid risk inputs: win_rate must be in [0, 1], got {win_rate!r}")
        if loss <= 0:
            raise InvalidRiskInputs(f"invalid risk inputs: avg_loss must be positive, got {avg_loss!r}")
        if win <= 0:
            raise InvalidRiskInputs(f"invalid risk inputs: avg_win must be positive, got {avg_win!r}")
        q = 1.0 - p
        b = win / loss
        return (p * b - q) / b

    def kelly_position(self, win_rate: float, avg_win: float, avg_loss: float, bankroll: float) -> float:
        """Position amount = bankroll x max(0, f*) x safety multiplier (half-Kelly by default)."""
        capital = _finite("bankroll", bankroll)
        if capital < 0:
            raise InvalidRiskInputs(f"invalid risk inputs: bankroll must be >= 0, got {bankroll!r}")
        f_star = self.kelly_fraction(win_rate, avg_win, avg_loss)
        used = max(0.0, f_star) * float(self.config.kelly_safety_multiplier)
        return capital * used

    # =========================================================================
    # Economics
    # =========================================================================

    def net_yield(self, costs: CostTracker) -> NetYield:
        """Annualize daily figures (x365). Breakeven capital is informational."""
        daily_costs = _finite("daily costs", costs.daily_costs)
        gross_daily = _finite("gross_yield", costs.gross_yield)
        annual_costs = daily_costs * DAYS_PER_YEAR
        annual_gross = gross_daily * DAYS_PER_YEAR
        return NetYield(
            gross=annual_gross,
            costs=annual_costs,
            net=annual_gross - annual_costs,
            breakeven_capital=annual_costs / float(self.config.target_apy),
        )

    # =========================================================================
    # Circuit breaker
    # =========================================================================

    def halt_reasons(self, regime: MarketRegime, consecutive_losses: int) -> List[str]:
        """Every tripped condition; independent triggers, none overrides another."""
        cfg = self.config
        signals = regime.signals
        reasons: List[str] = []
        if signals.network_tps < cfg.halt_tps_floor:
            reasons.append(
                f"network throughput {signals.network_tps:.0f} tps below floor {cfg.halt_tps_floor:.0f}"
            )
        if signals.lst_spread > cfg.halt_spread_ceiling:
            reasons.append(
                f"LST spread {signals.lst_spread * 100:.2f}% above ceiling {cfg.halt_spread_ceiling * 100:.2f}%"
            )
        if int(consecutive_losses) >= cfg.max_consecutive_losses:
            reasons.append(
                f"{int(consecutive_losses)} consecutive losses (limit {cfg.max_consecutive_losses})"
            )
        return reasons

    def should_halt(self, regime: MarketRegime, consecutive_losses: int) -> bool:
        return bool(self.halt_reasons(regime, consecutive_losses))


__all__ = [
    "CostTracker",
    "DEFAULT_REGIME_POLICIES",
    "MarketRegime",
    "NetYield",
    "REGIME_CRISIS",
    "REGIME_ELEVATED",
    "REGIME_NORMAL",
    "REGIME_ORDER",
    "RegimePolicy",
    "RegimeSignals",
    "RiskConfig",
    "RiskManager",
    "configured_regime_policies",
    "validate_policy_table",
]
