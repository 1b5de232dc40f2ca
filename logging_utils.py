#!/usr/bin/env python3
"""Logging for MoluscoYield.

Every module logs under the `molusco.` namespace. Handlers live on the
namespace logger only, so the runner's setup_logging() (verbosity, log
file) reaches all modules at once.
"""

from __future__ import annotations

import logging
from typing import Optional

from env_utils import env_str

ROOT_LOGGER = "molusco"

_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _formatter() -> logging.Formatter:
    return logging.Formatter(_FORMAT, datefmt=_DATEFMT)


def _env_level(default: int) -> int:
    """MOLUSCO_LOG_LEVEL as a name (DEBUG) or number (10)."""
    raw = (env_str("MOLUSCO_LOG_LEVEL") or "").upper()
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw) if raw else default
    return level if isinstance(level, int) else default


def _namespace() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        root.addHandler(handler)
        root.setLevel(_env_level(logging.INFO))
    return root


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Module logger `molusco.<name>`; inherits the namespace level unless given one."""
    _namespace()
    qualified = name if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + ".") else f"{ROOT_LOGGER}.{name}"
    logger = logging.getLogger(qualified)
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_logging(
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Reconfigure the namespace for a runner: console plus optional file."""
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level if level is not None else _env_level(logging.DEBUG if verbose else logging.INFO))

    console = logging.StreamHandler()
    console.setFormatter(_formatter())
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        root.addHandler(file_handler)

    return root
