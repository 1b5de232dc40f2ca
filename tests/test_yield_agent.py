#!/usr/bin/env python3
"""Decision engine cycle behavior (ENTER / REBALANCE / HOLD / halt / errors)."""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agent_config import AgentConfig
from decision_log import ACTION_ENTER, ACTION_HOLD, ACTION_REBALANCE, DecisionLog
from errors import ExecutionFailure
from live_data_feed import OpportunityScan, StaticOpportunitySource, StaticSignalProvider
from position_store import Position, PositionStore
from risk_manager import CostTracker, RiskConfig, RiskManager
from yield_agent import YieldAgent, decide
from yield_executor import ExecutionResult
from yield_scanner import YieldOpportunity, allocate

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(hours=6)
        return current


class _Executor:
    def __init__(self, results=None) -> None:
        self.results = list(results or [])
        self.calls = []

    async def execute(self, allocations, *, action, max_slippage):
        self.calls.append((list(allocations), action, max_slippage))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ExecutionResult(success=True, tx_id=f"tx-{len(self.calls)}")


def _opp(protocol: str, apy: float, risk: str = "low") -> YieldOpportunity:
    return YieldOpportunity(
        protocol=protocol,
        strategy="Liquid Staking",
        asset="SOL",
        apy=apy,
        tvl=100_000_000.0,
        risk=risk,
        opportunity_type="liquid-staking",
    )


def _config(**overrides) -> AgentConfig:
    values = dict(
        check_interval_hours=6,
        rebalance_threshold=0.02,
        risk_tolerance="moderate",
        min_yield_threshold=0.05,
        max_slippage=0.01,
        top_k=3,
        total_capital_usd=1_000.0,
        decision_log_path="",
    )
    values.update(overrides)
    return AgentConfig(**values)


def _agent(opps, *, signals=None, executor=None, store=None, config=None, **kwargs) -> YieldAgent:
    return YieldAgent(
        StaticOpportunitySource(opps),
        signals or StaticSignalProvider(),
        config=config or _config(),
        risk_manager=RiskManager(RiskConfig(max_consecutive_losses=3)),
        executor=executor or _Executor(),
        position_store=store if store is not None else PositionStore(),
        clock=_Clock(),
        **kwargs,
    )


def _held(apy: float, protocol: str = "mSOL") -> PositionStore:
    store = PositionStore()
    store.add(
        Position(
            protocol=protocol,
            asset="SOL",
            amount=1_000.0,
            entry_apy=apy,
            entry_timestamp=T0 - timedelta(days=1),
        )
    )
    return store


def test_decide_rules() -> None:
    best = allocate([_opp("JitoSOL", 0.085)], 1_000.0, "moderate")[0]
    held = _held(0.06).active()

    assert decide(None, best, 0.02).action == ACTION_ENTER
    assert decide(held, best, 0.02).action == ACTION_REBALANCE
    assert decide(held, best, 0.03).action == ACTION_HOLD


def test_improvement_equal_to_threshold_holds() -> None:
    best = allocate([_opp("JitoSOL", 0.08)], 1_000.0, "moderate")[0]
    held = _held(0.06).active()

    # 0.08 - 0.06 is 0.020000000000000004 in binary floats.
    decision = decide(held, best, 0.02)

    assert decision.action == ACTION_HOLD
    assert decide(held, best, 0.0199).action == ACTION_REBALANCE


def test_first_cycle_enters_best_opportunity() -> None:
    executor = _Executor()
    agent = _agent([_opp("JitoSOL", 0.08)], executor=executor)

    record = asyncio.run(agent.run_cycle())

    assert record.action == ACTION_ENTER
    assert record.reason == "No active position. Entering JitoSOL at 8.00% APY"
    assert record.execution["success"] is True
    assert agent.current_position.protocol == "JitoSOL"
    assert agent.current_position.entry_apy == pytest.approx(0.08)
    assert agent.current_position.entry_timestamp == T0
    assert executor.calls[0][1] == ACTION_ENTER
    assert executor.calls[0][2] == pytest.approx(0.01)
    assert len(executor.calls[0][0]) == 1


def test_rebalance_when_improvement_exceeds_threshold() -> None:
    agent = _agent([_opp("JitoSOL", 0.085)], store=_held(0.06))

    record = asyncio.run(agent.run_cycle())

    assert record.action == ACTION_REBALANCE
    assert record.reason.startswith("APY improvement: 2.50%")
    assert agent.current_position.protocol == "JitoSOL"
    assert len(agent.positions) == 1


def test_hold_when_improvement_below_threshold() -> None:
    executor = _Executor()
    agent = _agent([_opp("JitoSOL", 0.07)], store=_held(0.06), executor=executor)

    record = asyncio.run(agent.run_cycle())

    assert record.action == ACTION_HOLD
    assert "below threshold 2.0%" in record.reason
    assert executor.calls == []
    assert agent.current_position.protocol == "mSOL"
    assert record.projected_returns is None


def test_circuit_breaker_forces_hold() -> None:
    executor = _Executor()
    agent = _agent(
        [_opp("JitoSOL", 0.20)],
        signals=StaticSignalProvider(network_tps=300),
        executor=executor,
    )

    record = asyncio.run(agent.run_cycle())

    assert record.action == ACTION_HOLD
    assert record.reason.startswith("Circuit breaker:")
    assert record.regime["regime"] == "crisis"
    assert record.halt_reasons
    assert executor.calls == []
    assert agent.current_position is None


def test_source_failure_records_hold_and_keeps_state() -> None:
    source = AsyncMock()
    source.fetch_opportunities.side_effect = RuntimeError("feed down")
    store = _held(0.06)
    agent = YieldAgent(
        source,
        StaticSignalProvider(),
        config=_config(),
        executor=_Executor(),
        position_store=store,
        clock=_Clock(),
    )

    record = asyncio.run(agent.run_cycle())

    assert record.action == ACTION_HOLD
    assert record.reason.startswith("Error during cycle: DataUnavailable:")
    assert "feed down" in record.reason
    assert agent.current_position.protocol == "mSOL"
    assert len(agent.decision_log) == 1


def test_signal_failure_records_hold() -> None:
    signals = AsyncMock()
    signals.fetch_signals.side_effect = TimeoutError()
    agent = _agent([_opp("JitoSOL", 0.08)], signals=signals)

    record = asyncio.run(agent.run_cycle())

    assert record.action == ACTION_HOLD
    assert "DataUnavailable" in record.reason
    assert agent.current_position is None


def test_nothing_above_min_yield_records_hold() -> None:
    agent = _agent([_opp("JitoSOL", 0.03)])

    record = asyncio.run(agent.run_cycle())

    assert record.action == ACTION_HOLD
    assert "InvalidAllocationInput" in record.reason
    assert record.regime is not None


def test_failed_execution_keeps_position_and_counts_loss() -> None:
    executor = _Executor(
        [
            ExecutionResult(success=False, error="slippage exceeded"),
            ExecutionFailure("rpc rejected", tx_id="sig-1"),
        ]
    )
    agent = _agent([_opp("JitoSOL", 0.085)], store=_held(0.06), executor=executor)

    first = asyncio.run(agent.run_cycle())
    second = asyncio.run(agent.run_cycle())

    assert first.action == ACTION_REBALANCE
    assert first.execution["success"] is False
    assert second.execution["tx_id"] == "sig-1"
    assert agent.current_position.protocol == "mSOL"
    assert agent.consecutive_losses == 2


def test_loss_streak_trips_breaker_then_success_resets() -> None:
    executor = _Executor([ExecutionResult(success=False, error="x")] * 3)
    agent = _agent([_opp("JitoSOL", 0.08)], executor=executor)

    for _ in range(3):
        asyncio.run(agent.run_cycle())
    halted = asyncio.run(agent.run_cycle())

    assert halted.action == ACTION_HOLD
    assert "3 consecutive losses" in halted.reason
    assert len(executor.calls) == 3

    agent.record_trade_result(True)
    record = asyncio.run(agent.run_cycle())
    assert record.action == ACTION_ENTER
    assert agent.consecutive_losses == 0


def test_one_record_per_cycle_in_time_order() -> None:
    log = DecisionLog()
    agent = _agent([_opp("JitoSOL", 0.08), _opp("mSOL", 0.07)], decision_log=log)

    for _ in range(3):
        asyncio.run(agent.run_cycle())

    records = log.records()
    assert [r.seq for r in records] == [1, 2, 3]
    assert [r.action for r in records] == [ACTION_ENTER, ACTION_HOLD, ACTION_HOLD]
    assert all(a.timestamp < b.timestamp for a, b in zip(records, records[1:]))


def test_enter_record_carries_allocations_and_economics() -> None:
    async def _costs() -> CostTracker:
        return CostTracker(daily_api_cost=0.1, gross_yield=2.0)

    async def _capital() -> float:
        return 5_000.0

    agent = _agent(
        [_opp("JitoSOL", 0.08), _opp("Kamino", 0.12, "medium")],
        cost_provider=_costs,
        capital_provider=_capital,
    )

    record = asyncio.run(agent.run_cycle())

    assert record.action == ACTION_ENTER
    assert sum(a["amount"] for a in record.allocations) == pytest.approx(5_000.0)
    assert record.opportunities[0]["protocol"] == "Kamino"
    assert record.economics["net"] == pytest.approx((2.0 - 0.1) * 365)
    assert record.feeds == {"static": "static"}
    assert record.policy["liquidity_priority"] == pytest.approx(0.3)
    assert record.projected_returns["yearly"] == pytest.approx(sum(a["expected_yield"] for a in record.allocations))
    assert record.to_dict()["projected_returns"] == record.projected_returns


def test_run_forever_stops_between_cycles() -> None:
    agent = _agent([_opp("JitoSOL", 0.08)], config=_config(check_interval_hours=0.0001))

    async def _run() -> int:
        task = asyncio.create_task(agent.run_forever())
        while len(agent.decision_log) < 2:
            await asyncio.sleep(0.01)
        agent.stop()
        return await asyncio.wait_for(task, timeout=2.0)

    cycles = asyncio.run(_run())

    assert cycles >= 2
    assert cycles == len(agent.decision_log)


def test_stop_during_cycle_lets_that_cycle_finish() -> None:
    async def _run():
        gate = asyncio.Event()
        source = AsyncMock()
        agent = YieldAgent(
            source,
            StaticSignalProvider(),
            config=_config(check_interval_hours=0.0001),
            executor=_Executor(),
            clock=_Clock(),
        )

        async def _slow_fetch():
            agent.stop()
            await gate.wait()
            return OpportunityScan(opportunities=(_opp("JitoSOL", 0.08),), feeds={"static": "static"})

        source.fetch_opportunities.side_effect = _slow_fetch
        task = asyncio.create_task(agent.run_forever())
        await asyncio.sleep(0.05)
        assert not task.done()
        assert len(agent.decision_log) == 0

        gate.set()
        cycles = await asyncio.wait_for(task, timeout=2.0)
        return agent, cycles

    agent, cycles = asyncio.run(_run())

    assert cycles == 1
    assert len(agent.decision_log) == 1
    record = agent.decision_log.last()
    assert record.action == ACTION_ENTER
    assert record.execution["success"] is True
    assert agent.current_position.protocol == "JitoSOL"


def test_stop_before_start_runs_no_cycles() -> None:
    agent = _agent([_opp("JitoSOL", 0.08)])
    agent.stop()

    assert asyncio.run(agent.run_forever()) == 0
    assert len(agent.decision_log) == 0


def test_unknown_risk_tolerance_fails_at_construction() -> None:
    with pytest.raises(ValueError):
        _agent([_opp("JitoSOL", 0.08)], config=_config(risk_tolerance="reckless"))
