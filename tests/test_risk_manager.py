#!/usr/bin/env python3
"""Regime detection, policy table, Kelly sizing, economics and circuit breaker."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from errors import InvalidRiskInputs
from risk_manager import (
    DEFAULT_REGIME_POLICIES,
    REGIME_CRISIS,
    REGIME_ELEVATED,
    REGIME_NORMAL,
    REGIME_ORDER,
    CostTracker,
    RegimePolicy,
    RegimeSignals,
    RiskConfig,
    RiskManager,
    configured_regime_policies,
    validate_policy_table,
)


def _mgr() -> RiskManager:
    return RiskManager(
        RiskConfig(
            crisis_tps_floor=500,
            crisis_spread_ceiling=0.05,
            volatility_elevated=30,
            volatility_crisis=40,
            halt_tps_floor=500,
            halt_spread_ceiling=0.05,
            max_consecutive_losses=3,
            kelly_safety_multiplier=0.5,
            target_apy=0.08,
        )
    )


def _signals(vol: float = 18.0, tps: float = 3500.0, spread: float = 0.001) -> RegimeSignals:
    return RegimeSignals(volatility_index=vol, network_tps=tps, lst_spread=spread)


def test_calm_market_is_normal() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    regime = _mgr().detect_regime(_signals(), now=now)
    assert regime.regime == REGIME_NORMAL
    assert regime.timestamp == now


def test_low_throughput_is_crisis_even_with_high_volatility() -> None:
    assert _mgr().detect_regime(_signals(vol=35, tps=300)).regime == REGIME_CRISIS


def test_wide_spread_is_crisis() -> None:
    assert _mgr().detect_regime(_signals(spread=0.06)).regime == REGIME_CRISIS


def test_volatility_band_boundaries() -> None:
    mgr = _mgr()
    assert mgr.detect_regime(_signals(vol=30)).regime == REGIME_NORMAL
    assert mgr.detect_regime(_signals(vol=30.5)).regime == REGIME_ELEVATED
    # Volatility alone never reaches crisis.
    assert mgr.detect_regime(_signals(vol=80)).regime == REGIME_ELEVATED


def test_threshold_edges_are_not_crisis() -> None:
    mgr = _mgr()
    assert mgr.detect_regime(_signals(tps=500)).regime == REGIME_NORMAL
    assert mgr.detect_regime(_signals(spread=0.05)).regime == REGIME_NORMAL


def test_lower_throughput_never_lowers_severity() -> None:
    mgr = _mgr()
    for vol in (10, 35, 60):
        for spread in (0.001, 0.08):
            severities = [
                mgr.detect_regime(_signals(vol=vol, tps=tps, spread=spread)).severity
                for tps in (5000, 1000, 501, 500, 499, 100, 0)
            ]
            assert severities == sorted(severities)


def test_policy_table_is_monotonic_in_severity() -> None:
    validate_policy_table(DEFAULT_REGIME_POLICIES)
    for lower, higher in zip(REGIME_ORDER, REGIME_ORDER[1:]):
        lo, hi = DEFAULT_REGIME_POLICIES[lower], DEFAULT_REGIME_POLICIES[higher]
        assert hi.liquidity_priority >= lo.liquidity_priority
        assert hi.yield_threshold >= lo.yield_threshold
        assert hi.max_position_days <= lo.max_position_days


def test_policy_lookup_and_liquidity_first() -> None:
    mgr = _mgr()
    assert mgr.get_regime_strategy("crisis").liquidity_first
    assert not mgr.get_regime_strategy(REGIME_NORMAL).liquidity_first
    regime = mgr.detect_regime(_signals(vol=35))
    assert mgr.get_regime_strategy(regime).max_position_days == 7
    with pytest.raises(ValueError):
        mgr.get_regime_strategy("panic")


def test_non_monotonic_override_is_rejected() -> None:
    cfg = {"config": {"regime_policies": {"crisis": {"max_position_days": 90}}}}
    with pytest.raises(ValueError):
        configured_regime_policies(cfg)


def test_policy_override_keeps_other_fields() -> None:
    cfg = {"config": {"regime_policies": {"crisis": {"max_position_days": 0.5}}}}
    table = configured_regime_policies(cfg)
    assert table[REGIME_CRISIS].max_position_days == 0.5
    assert table[REGIME_CRISIS].liquidity_priority == DEFAULT_REGIME_POLICIES[REGIME_CRISIS].liquidity_priority


def test_manager_rejects_inverted_table() -> None:
    table = dict(DEFAULT_REGIME_POLICIES)
    table[REGIME_ELEVATED] = RegimePolicy(7, ("JitoSOL",), 0.95, 0.05)
    with pytest.raises(ValueError):
        RiskManager(RiskConfig(), table)


def test_half_kelly_position() -> None:
    mgr = _mgr()
    assert mgr.kelly_fraction(0.6, 2, 1) == pytest.approx(0.4)
    assert mgr.kelly_position(0.6, 2, 1, 1000) == pytest.approx(200.0)


def test_negative_edge_sizes_to_zero() -> None:
    assert _mgr().kelly_position(0.2, 1, 1, 1000) == 0.0


def test_kelly_rejects_degenerate_inputs() -> None:
    mgr = _mgr()
    with pytest.raises(InvalidRiskInputs):
        mgr.kelly_position(0.6, 2, 0, 1000)
    with pytest.raises(InvalidRiskInputs):
        mgr.kelly_position(1.2, 2, 1, 1000)
    with pytest.raises(InvalidRiskInputs):
        mgr.kelly_position(0.6, float("inf"), 1, 1000)


def test_net_yield_annualizes_daily_figures() -> None:
    costs = CostTracker(daily_api_cost=1.0, daily_compute_cost=0.5, daily_transaction_cost=0.5, gross_yield=5.0)
    result = _mgr().net_yield(costs)

    assert result.gross == pytest.approx(1825.0)
    assert result.costs == pytest.approx(730.0)
    assert result.net == pytest.approx(1095.0)
    assert result.breakeven_capital == pytest.approx(730.0 / 0.08)


def test_halt_on_loss_streak_threshold() -> None:
    mgr = _mgr()
    regime = mgr.detect_regime(_signals())
    assert not mgr.should_halt(regime, 2)
    assert mgr.should_halt(regime, 3)
    assert "3 consecutive losses" in mgr.halt_reasons(regime, 3)[0]


def test_halt_triggers_are_independent() -> None:
    mgr = _mgr()
    regime = mgr.detect_regime(_signals(tps=300, spread=0.06))
    reasons = mgr.halt_reasons(regime, 5)
    assert len(reasons) == 3
    assert mgr.should_halt(mgr.detect_regime(_signals(tps=499)), 0)
    assert mgr.should_halt(mgr.detect_regime(_signals(spread=0.051)), 0)
    assert not mgr.should_halt(mgr.detect_regime(_signals(vol=90)), 0)


def test_signals_must_be_finite() -> None:
    with pytest.raises(ValueError):
        RegimeSignals(volatility_index=float("nan"), network_tps=1000, lst_spread=0.0)


def test_risk_config_validation() -> None:
    with pytest.raises(ValueError):
        RiskConfig(volatility_elevated=40, volatility_crisis=30)
    with pytest.raises(ValueError):
        RiskConfig(kelly_safety_multiplier=0)
