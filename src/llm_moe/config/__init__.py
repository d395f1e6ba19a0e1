"""Run configuration loading."""
from __future__ import annotations

from .loader import RunConfig, load_run_config, parse_run_config

__all__ = ["RunConfig", "load_run_config", "parse_run_config"]
