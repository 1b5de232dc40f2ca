#!/usr/bin/env python3
"""
YAML-first configuration for the MoluscoYield agent.

Resolution order for every parameter:
- built-in defaults (DEFAULTS below)
- agent.yaml `config:` section
- whitelisted env overrides (config_env.ALLOWED_ENV_OVERRIDES)
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from config_env import apply_env_overrides
from env_utils import MOLUSCO_CONFIG_PATH


DEFAULTS: Dict[str, Dict[str, Any]] = {
    'agent': {
        'check_interval_hours': 6.0,
        'rebalance_threshold': 0.02,
        'risk_tolerance': 'moderate',
        'min_yield_threshold': 0.05,
        'max_slippage': 0.01,
        'top_k': 3,
        'total_capital_usd': 10000.0,
        'decision_log_path': '',
    },
    'risk': {
        'crisis_tps_floor': 500.0,
        'crisis_spread_ceiling': 0.05,
        'volatility_elevated': 30.0,
        'volatility_crisis': 40.0,
        'halt_tps_floor': 500.0,
        'halt_spread_ceiling': 0.05,
        'max_consecutive_losses': 3,
        'kelly_safety_multiplier': 0.5,
        'target_apy': 0.08,
    },
    'risk_profiles': {},
    'regime_policies': {},
    'data_feed': {
        'sanctum_url': 'https://sanctum-extra-api.ngrok.dev',
        'kamino_url': 'https://api.kamino.finance',
        'jupiter_price_url': 'https://price.jup.ag/v6',
        'solana_rpc_url': 'https://api.mainnet-beta.solana.com',
        'timeout_seconds': 10.0,
        'min_vault_apy': 0.05,
        'max_vaults': 5,
        'volatility_index': 18.0,
        'lst_spread': 0.001,
    },
}


_CFG: Optional[Dict[str, Any]] = None


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load agent.yaml (if present) and apply env overrides.

    Raises ValueError when the file exists but is not a YAML mapping.
    """
    cfg_path = Path(path or MOLUSCO_CONFIG_PATH)
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        loaded = yaml.safe_load(cfg_path.read_text()) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config {cfg_path} must be a mapping, got {type(loaded).__name__}")
        raw = loaded
    return apply_env_overrides(raw)


def _cached_config() -> Dict[str, Any]:
    global _CFG
    if _CFG is None:
        _CFG = load_config()
    return _CFG


def reset_config_cache() -> None:
    global _CFG
    _CFG = None


def get_section(section: str, cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return defaults for a section merged with the YAML/env values."""
    root = _cached_config() if cfg is None else cfg
    merged = deepcopy(DEFAULTS.get(section, {}))
    block = (root.get('config') or {}).get(section) if isinstance(root, dict) else None
    if isinstance(block, dict):
        merged.update(block)
    return merged


def get_param(section: str, key: str, cfg: Optional[Dict[str, Any]] = None) -> Any:
    values = get_section(section, cfg)
    if key not in values:
        raise KeyError(f"Unknown config param {section}.{key}")
    return values[key]


@dataclass
class AgentConfig:
    """Decision-loop settings (check interval, thresholds, allocation shape)."""

    check_interval_hours: float = get_param('agent', 'check_interval_hours')
    rebalance_threshold: float = get_param('agent', 'rebalance_threshold')
    risk_tolerance: Any = get_param('agent', 'risk_tolerance')  # profile name or {tier: weight}
    min_yield_threshold: float = get_param('agent', 'min_yield_threshold')
    max_slippage: float = get_param('agent', 'max_slippage')  # passed through to the executor
    top_k: int = get_param('agent', 'top_k')
    total_capital_usd: float = get_param('agent', 'total_capital_usd')
    decision_log_path: str = get_param('agent', 'decision_log_path')

    def __post_init__(self) -> None:
        self.check_interval_hours = float(self.check_interval_hours)
        self.rebalance_threshold = float(self.rebalance_threshold)
        self.min_yield_threshold = float(self.min_yield_threshold)
        self.max_slippage = float(self.max_slippage)
        self.top_k = int(self.top_k)
        self.total_capital_usd = float(self.total_capital_usd)
        self.decision_log_path = str(self.decision_log_path or '')

        if self.check_interval_hours <= 0:
            raise ValueError("check_interval_hours must be positive")
        if self.rebalance_threshold < 0:
            raise ValueError("rebalance_threshold must be >= 0")
        if self.min_yield_threshold < 0:
            raise ValueError("min_yield_threshold must be >= 0")
        if not 0 <= self.max_slippage < 1:
            raise ValueError("max_slippage must be in [0, 1)")
        if self.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if self.total_capital_usd < 0:
            raise ValueError("total_capital_usd must be >= 0")

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval_hours * 3600.0

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> 'AgentConfig':
        values = get_section('agent', cfg)
        return cls(**{k: values[k] for k in DEFAULTS['agent']})
