#!/usr/bin/env python3
"""
MoluscoYield decision engine.

One cycle:
  1. scan opportunities (source may fall back to cached/default data)
  2. read risk signals -> regime + regime policy
  3. circuit breaker: any trigger forces HOLD
  4. allocate capital across the top-K opportunities
  5. decide ENTER / REBALANCE / HOLD against the single tracked position
  6. hand ENTER/REBALANCE to the executor, update the position on success
  7. append exactly one decision record

Cycles run strictly one after another. Every error raised inside a cycle is
turned into a HOLD record; nothing escapes the cycle boundary. A stop request
takes effect at the next sleep, never mid-cycle.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from agent_config import AgentConfig
from decision_log import (
    ACTION_ENTER,
    ACTION_HOLD,
    ACTION_REBALANCE,
    DecisionLog,
    DecisionRecord,
)
from errors import CircuitBreakerTripped, DataUnavailable, ExecutionFailure
from live_data_feed import OpportunityScan
from logging_utils import get_logger
from position_store import Position, PositionStore
from risk_manager import CostTracker, MarketRegime, RegimeSignals, RiskManager
from yield_executor import DryRunExecutor, ExecutionResult, YieldExecutor
from yield_scanner import (
    Allocation,
    YieldOpportunity,
    allocate,
    configured_risk_profiles,
    filter_min_yield,
    projected_returns,
    resolve_risk_weights,
    score,
)

RECORDED_OPPORTUNITIES = 3

# APY differences closer than this to the threshold count as equal to it.
APY_EPSILON = 1e-9


@dataclass(frozen=True)
class Decision:
    action: str
    reason: str


def decide(
    current: Optional[Position],
    best: Allocation,
    rebalance_threshold: float,
) -> Decision:
    """Compare the best allocation with the tracked position.

    The position's entry APY is the comparison baseline; its live APY is
    never re-read.
    """
    opp = best.opportunity
    if current is None:
        return Decision(
            ACTION_ENTER,
            f"No active position. Entering {opp.protocol} at {opp.apy * 100:.2f}% APY",
        )

    apy_diff = opp.apy - current.entry_apy
    if apy_diff - rebalance_threshold > APY_EPSILON:
        return Decision(
            ACTION_REBALANCE,
            f"APY improvement: {apy_diff * 100:.2f}% "
            f"({current.protocol} {current.entry_apy * 100:.2f}% -> {opp.protocol} {opp.apy * 100:.2f}%)",
        )

    return Decision(
        ACTION_HOLD,
        f"Current position optimal. APY diff {apy_diff * 100:.2f}% "
        f"below threshold {rebalance_threshold * 100:.1f}%",
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class YieldAgent:
    """Periodic allocation loop owning the single active position."""

    def __init__(
        self,
        opportunity_source: Any,
        signal_provider: Any,
        *,
        config: Optional[AgentConfig] = None,
        risk_manager: Optional[RiskManager] = None,
        executor: Optional[YieldExecutor] = None,
        capital_provider: Optional[Callable[[], Awaitable[float]]] = None,
        cost_provider: Optional[Callable[[], Awaitable[CostTracker]]] = None,
        decision_log: Optional[DecisionLog] = None,
        position_store: Optional[PositionStore] = None,
        risk_profiles: Optional[Mapping[str, Mapping[str, float]]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.config = config or AgentConfig()
        self.risk_profiles = dict(risk_profiles) if risk_profiles is not None else configured_risk_profiles()
        # Fail at construction, not mid-cycle.
        resolve_risk_weights(self.config.risk_tolerance, self.risk_profiles)

        self.source = opportunity_source
        self.signals = signal_provider
        self.risk = risk_manager or RiskManager()
        self.executor = executor or DryRunExecutor()
        self.capital_provider = capital_provider
        self.cost_provider = cost_provider
        self.decision_log = decision_log if decision_log is not None else DecisionLog(self.config.decision_log_path or None)
        self.positions = position_store if position_store is not None else PositionStore(max_positions=1)
        self._clock = clock
        self.log = get_logger("yield_agent")

        self.consecutive_losses = 0
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def current_position(self) -> Optional[Position]:
        return self.positions.active()

    def record_trade_result(self, success: bool) -> int:
        """Feed an externally observed outcome into the loss streak."""
        self.consecutive_losses = 0 if success else self.consecutive_losses + 1
        return self.consecutive_losses

    # =========================================================================
    # Collaborator calls
    # =========================================================================

    async def _scan(self) -> OpportunityScan:
        try:
            result = await self.source.fetch_opportunities()
        except DataUnavailable:
            raise
        except Exception as exc:
            raise DataUnavailable(f"opportunity source failed: {type(exc).__name__}: {exc}") from exc

        if isinstance(result, OpportunityScan):
            scan = result
        elif isinstance(result, Sequence):
            scan = OpportunityScan(opportunities=tuple(result))
        else:
            raise DataUnavailable(f"opportunity source returned {type(result).__name__}")
        bad = [o for o in scan.opportunities if not isinstance(o, YieldOpportunity)]
        if bad:
            raise DataUnavailable(f"opportunity source returned {len(bad)} malformed record(s)")
        return scan

    async def _read_signals(self) -> RegimeSignals:
        try:
            signals = await self.signals.fetch_signals()
        except DataUnavailable:
            raise
        except Exception as exc:
            raise DataUnavailable(f"risk signals failed: {type(exc).__name__}: {exc}") from exc
        if not isinstance(signals, RegimeSignals):
            raise DataUnavailable(f"risk signal provider returned {type(signals).__name__}")
        return signals

    async def _total_capital(self) -> float:
        if self.capital_provider is None:
            return self.config.total_capital_usd
        try:
            return float(await self.capital_provider())
        except Exception as exc:
            raise DataUnavailable(f"capital provider failed: {type(exc).__name__}: {exc}") from exc

    async def _economics(self) -> Optional[Dict[str, float]]:
        if self.cost_provider is None:
            return None
        try:
            costs = await self.cost_provider()
            return self.risk.net_yield(costs).to_dict()
        except Exception as exc:
            # Economics are informational; the decision proceeds without them.
            self.log.warning(f"Economics unavailable this cycle: {type(exc).__name__}: {exc}")
            return None

    async def _execute(self, allocation: Allocation, action: str) -> ExecutionResult:
        try:
            return await self.executor.execute(
                [allocation],
                action=action,
                max_slippage=self.config.max_slippage,
            )
        except ExecutionFailure as exc:
            return ExecutionResult(success=False, tx_id=exc.tx_id, error=str(exc))
        except Exception as exc:
            self.log.exception(f"Executor {type(self.executor).__name__} raised during {action}")
            return ExecutionResult(success=False, error=f"{type(exc).__name__}: {exc}")

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self) -> DecisionRecord:
        """Run one cycle and append exactly one decision record."""
        started = self._clock()
        last = self.decision_log.last()
        if last is not None and started < last.timestamp:
            started = last.timestamp
        seq = self.decision_log.next_seq
        ctx: Dict[str, Any] = {}

        self.log.info("=" * 60)
        self.log.info(f"Cycle #{seq} started: {started.isoformat()}")
        try:
            record = await self._run_cycle(seq, started, ctx)
        except Exception as exc:
            self.log.exception(f"Cycle #{seq} failed")
            record = DecisionRecord(
                seq=seq,
                timestamp=started,
                action=ACTION_HOLD,
                reason=f"Error during cycle: {type(exc).__name__}: {exc}",
                regime=ctx.get("regime"),
                policy=ctx.get("policy"),
                feeds=ctx.get("feeds", {}),
            )
        self.decision_log.append(record)
        self.log.info(f"Cycle #{seq} complete: {record.action}")
        return record

    async def _run_cycle(self, seq: int, started: datetime, ctx: Dict[str, Any]) -> DecisionRecord:
        scan = await self._scan()
        ctx["feeds"] = dict(scan.feeds)
        if scan.fallback_sources:
            self.log.warning(f"Using fallback data from: {', '.join(scan.fallback_sources)}")

        regime: MarketRegime = self.risk.detect_regime(await self._read_signals(), now=started)
        policy = self.risk.get_regime_strategy(regime)
        ctx["regime"] = regime.to_dict()
        ctx["policy"] = policy.to_dict()
        self.log.info(
            f"Regime: {regime.regime.upper()} "
            f"(strategy: {'Liquidity First' if policy.liquidity_first else 'Yield First'})"
        )

        halt = self.risk.halt_reasons(regime, self.consecutive_losses)
        if halt:
            tripped = CircuitBreakerTripped(halt)
            self.log.warning(f"CIRCUIT BREAKER TRIGGERED - {tripped}")
            return DecisionRecord(
                seq=seq,
                timestamp=started,
                action=ACTION_HOLD,
                reason=str(tripped),
                regime=ctx["regime"],
                policy=ctx["policy"],
                halt_reasons=tuple(halt),
                feeds=ctx["feeds"],
            )

        economics = await self._economics()
        capital = await self._total_capital()
        candidates = filter_min_yield(scan.opportunities, self.config.min_yield_threshold)
        allocations = allocate(
            candidates,
            capital,
            self.config.risk_tolerance,
            top_k=self.config.top_k,
            profiles=self.risk_profiles,
        )
        best = allocations[0]
        projected = projected_returns(allocations)
        self.log.info(
            f"Best: {best.opportunity.protocol} @ {best.opportunity.apy * 100:.2f}% APY, "
            f"allocation {best.amount:.2f} ({(best.amount / capital * 100) if capital else 0.0:.1f}%); "
            f"projected daily={projected['daily']:.2f} monthly={projected['monthly']:.2f} "
            f"yearly={projected['yearly']:.2f}"
        )

        current = self.current_position
        decision = decide(current, best, self.config.rebalance_threshold)
        self.log.info(f"DECISION: {decision.action} - {decision.reason}")

        if decision.action == ACTION_HOLD:
            return DecisionRecord(
                seq=seq,
                timestamp=started,
                action=ACTION_HOLD,
                reason=decision.reason,
                regime=ctx["regime"],
                policy=ctx["policy"],
                economics=economics,
                feeds=ctx["feeds"],
            )

        result = await self._execute(best, decision.action)
        if result.success:
            previous = self.positions.replace_all(Position.from_allocation(best, started))
            self.consecutive_losses = 0
            if previous is not None:
                self.log.info(f"Replaced position {previous.id} ({previous.protocol})")
            self.log.info(f"Execution ok (tx={result.tx_id}); tracking {best.opportunity.protocol}")
        else:
            self.consecutive_losses += 1
            self.log.warning(
                f"Execution failed ({result.error}); position unchanged, "
                f"consecutive losses={self.consecutive_losses}"
            )

        considered: List[Dict[str, Any]] = [
            s.to_dict()
            for s in score(candidates, self.config.risk_tolerance, self.risk_profiles)[:RECORDED_OPPORTUNITIES]
        ]
        return DecisionRecord(
            seq=seq,
            timestamp=started,
            action=decision.action,
            reason=decision.reason,
            opportunities=tuple(considered),
            allocations=tuple(a.to_dict() for a in allocations),
            regime=ctx["regime"],
            policy=ctx["policy"],
            economics=economics,
            feeds=ctx["feeds"],
            execution=result.to_dict(),
            projected_returns=projected,
        )

    # =========================================================================
    # Scheduling
    # =========================================================================

    def stop(self) -> None:
        """Request a stop; honoured at the next sleep boundary."""
        self.log.info("Stopping agent...")
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_forever(self, run_immediately: bool = True) -> int:
        """Cycle, sleep, repeat until stop(). Returns the number of cycles run."""
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()
        cfg = self.config
        self.log.info(
            f"Agent starting: interval={cfg.check_interval_hours}h "
            f"rebalance_threshold={cfg.rebalance_threshold * 100:.1f}% "
            f"risk_tolerance={cfg.risk_tolerance} top_k={cfg.top_k}"
        )

        cycles = 0
        if run_immediately and not self._stop_event.is_set():
            await self.run_cycle()
            cycles += 1

        while not self._stop_event.is_set():
            self.log.info(f"Sleeping for {cfg.check_interval_hours} hours...")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=cfg.check_interval_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            await self.run_cycle()
            cycles += 1

        self.log.info(f"Agent stopped after {cycles} cycle(s)")
        return cycles
