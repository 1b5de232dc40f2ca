#!/usr/bin/env python3
"""
MoluscoYield runner.

Builds the agent from agent.yaml (+ whitelisted env overrides), wires the
live Sanctum/Kamino/Jupiter feeds and the dry-run executor, then runs one
cycle (--once) or the periodic loop until SIGINT/SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict, Optional

from agent_config import AgentConfig, get_section, load_config
from decision_log import DecisionLog
from live_data_feed import LiveOpportunitySource, LiveSignalProvider, StaticSignalProvider
from logging_utils import get_logger, setup_logging
from risk_manager import RiskConfig, RiskManager, configured_regime_policies
from yield_agent import YieldAgent
from yield_executor import DryRunExecutor
from yield_scanner import configured_risk_profiles


def build_agent(config: Dict[str, Any], *, static_signals: bool = False) -> YieldAgent:
    """Assemble the agent and its collaborators from a loaded config dict."""
    agent_cfg = AgentConfig.from_config(config)
    feed_cfg = get_section("data_feed", config)
    signals = (
        StaticSignalProvider(
            volatility_index=float(feed_cfg.get("volatility_index", 18.0)),
            lst_spread=float(feed_cfg.get("lst_spread", 0.001)),
        )
        if static_signals
        else LiveSignalProvider(feed_cfg)
    )
    return YieldAgent(
        LiveOpportunitySource(feed_cfg),
        signals,
        config=agent_cfg,
        risk_manager=RiskManager(
            RiskConfig.from_config(config),
            configured_regime_policies(config),
        ),
        executor=DryRunExecutor(),
        decision_log=DecisionLog(agent_cfg.decision_log_path or None),
        risk_profiles=configured_risk_profiles(config),
    )


def install_signal_handlers(agent: YieldAgent) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, agent.stop)
        except NotImplementedError:
            pass


async def run(agent: YieldAgent, once: bool, log: logging.Logger) -> int:
    if once:
        record = await agent.run_cycle()
        log.info(f"Single cycle finished: {record.action} - {record.reason}")
        return 0
    install_signal_handlers(agent)
    await agent.run_forever()
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the MoluscoYield allocation agent")
    parser.add_argument("--config", default=None, help="Path to agent.yaml (default: MOLUSCO_CONFIG_PATH)")
    parser.add_argument("--once", action="store_true", help="Run one decision cycle and exit")
    parser.add_argument(
        "--static-signals",
        action="store_true",
        help="Skip the RPC throughput lookup and use configured risk signals",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", default=None, help="Also log to this file")
    args = parser.parse_args(argv)

    setup_logging(log_file=args.log_file, verbose=args.verbose)
    log = get_logger("runner")
    try:
        config = load_config(args.config)
        agent = build_agent(config, static_signals=args.static_signals)
    except (OSError, ValueError, KeyError) as exc:
        log.error(f"Invalid configuration: {exc}")
        return 2

    return asyncio.run(run(agent, args.once, log))


if __name__ == "__main__":
    raise SystemExit(main())
