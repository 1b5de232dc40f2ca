"""Environment access for MoluscoYield.

The `.env` file beside this module is loaded on import (existing process
env wins). A variable set to an empty or whitespace-only string counts as
unset everywhere.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


_HERE = Path(__file__).resolve().parent

load_dotenv(_HERE / ".env")


def env_present(name: str) -> bool:
    return bool(str(os.getenv(name) or "").strip())


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    if not env_present(name):
        return default
    return str(os.getenv(name)).strip()


def env_float(name: str, default: float) -> float:
    """Parse a float; an unparsable value keeps `default`."""
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_path(name: str, default: Path, base: Optional[Path] = None) -> Path:
    """Resolve a path variable; relative values are taken from `base`."""
    raw = env_str(name)
    path = Path(raw).expanduser() if raw else Path(default)
    if not path.is_absolute():
        path = ((base or _HERE) / path).resolve()
    return path


MOLUSCO_ROOT = str(env_path("MOLUSCO_ROOT", _HERE))
MOLUSCO_CONFIG_PATH = str(env_path("MOLUSCO_CONFIG_PATH", Path(MOLUSCO_ROOT) / "agent.yaml", Path(MOLUSCO_ROOT)))
