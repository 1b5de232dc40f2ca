"""Apply env overrides to agent.yaml config."""

from __future__ import annotations

from copy import deepcopy
import os
from typing import Any, Dict, Tuple

from env_utils import env_float, env_present, env_str
from logging_utils import get_logger


PathKey = Tuple[str, ...]

# Env overrides cover deployment plumbing (interval, capital, endpoints).
# Thresholds and risk tables are tuned in agent.yaml only.
ENV_OVERRIDES: Dict[str, Tuple[PathKey, str]] = {
    "MOLUSCO_CHECK_INTERVAL_HOURS": (("config", "agent", "check_interval_hours"), "float"),
    "MOLUSCO_RISK_TOLERANCE": (("config", "agent", "risk_tolerance"), "str"),
    "MOLUSCO_TOTAL_CAPITAL_USD": (("config", "agent", "total_capital_usd"), "float"),
    "MOLUSCO_DECISION_LOG_PATH": (("config", "agent", "decision_log_path"), "str"),
    "MOLUSCO_FEED_TIMEOUT_SECONDS": (("config", "data_feed", "timeout_seconds"), "float"),
    "SOLANA_RPC_URL": (("config", "data_feed", "solana_rpc_url"), "str"),
}
ALLOWED_ENV_OVERRIDES = frozenset(ENV_OVERRIDES)

# Read by env_utils / logging_utils, not config params.
_PLUMBING_ENV = frozenset({"MOLUSCO_ROOT", "MOLUSCO_CONFIG_PATH", "MOLUSCO_LOG_LEVEL"})

_WARNED_IGNORED_ENV_OVERRIDES = False


def _warn_ignored_env_overrides_once(names: set[str]) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    shown = sorted(names)
    more = f" (+{len(shown) - 10} more)" if len(shown) > 10 else ""
    get_logger("config_env").warning(
        f"Ignoring MOLUSCO env vars that are not overridable (set them in agent.yaml): "
        f"{', '.join(shown[:10])}{more}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if not isinstance(cur.get(key), dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of `config` with whitelisted env values applied.

    An unparsable numeric value leaves the YAML value in place.
    """
    cfg = deepcopy(config) if config else {}

    for env_name, (path, kind) in ENV_OVERRIDES.items():
        if not env_present(env_name):
            continue
        current = _get_path(cfg, path)
        if kind == "float":
            fallback = float(current) if current is not None else None
            value = env_float(env_name, fallback)
            if value is None:
                continue
        else:
            value = env_str(env_name, current)
        _set_path(cfg, path, value)

    ignored = {
        name
        for name in os.environ
        if name.startswith("MOLUSCO_")
        and name not in ALLOWED_ENV_OVERRIDES
        and name not in _PLUMBING_ENV
        and env_present(name)
    }
    _warn_ignored_env_overrides_once(ignored)

    return cfg
