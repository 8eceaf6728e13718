#!/usr/bin/env python3
# CUI // SP-CTI
"""Decision Plane configuration.

Process-wide defaults (change budget, cooldown, confidence margin,
consecutive cycles, rolling window) are loaded once from
args/refinery_config.yaml and handed to each engine as an immutable
RefineryConfig. Nothing in the Decision Plane mutates it.

Resolution order:
    1. Explicit config_path argument
    2. REFINERY_CONFIG environment variable
    3. <project_root>/args/refinery_config.yaml
    4. Built-in defaults (when no file exists)

Database path resolution mirrors it: explicit > REFINERY_DB_PATH >
<project_root>/data/refinery.db
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from refinery.resilience.errors import ConfigurationError

logger = logging.getLogger("refinery.config")

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_PATH = BASE_DIR / "args" / "refinery_config.yaml"
DB_PATH = BASE_DIR / "data" / "refinery.db"


@dataclass(frozen=True)
class RefineryConfig:
    """Immutable Decision Plane defaults."""

    autonomy_level: str = "pr_only"
    change_budget_per_window: int = 5
    window_hours: int = 24
    cooldown_hours: int = 72
    min_confidence_margin: float = 0.25
    min_consecutive_cycles: int = 2
    max_loc_per_pr: int = 500
    consensus_threshold: float = 0.3
    default_scorecard_weights: Mapping[str, float] = field(default_factory=lambda: {
        "security": 0.30,
        "reliability": 0.25,
        "devex": 0.20,
        "performance": 0.15,
    })
    db_path: Optional[str] = None

    def __post_init__(self):
        # Read-only view over a private copy
        object.__setattr__(self, "default_scorecard_weights",
                           MappingProxyType(dict(self.default_scorecard_weights)))

    def with_overrides(self, **overrides) -> "RefineryConfig":
        """Return a copy with the given fields replaced."""
        return dataclasses.replace(self, **overrides)

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}
        data["default_scorecard_weights"] = dict(self.default_scorecard_weights)
        return data


_INT_KEYS = (
    "change_budget_per_window", "window_hours", "cooldown_hours",
    "min_consecutive_cycles", "max_loc_per_pr",
)
_FLOAT_KEYS = ("min_confidence_margin", "consensus_threshold")
_AUTONOMY_LEVELS = ("advisory", "pr_only", "auto_merge", "auto_release")


def _read_yaml(path: Path) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config {path} must be a mapping")
    return raw


def _validate(values: Dict[str, Any]) -> Dict[str, Any]:
    for key in _INT_KEYS:
        if key in values:
            try:
                values[key] = int(values[key])
            except (TypeError, ValueError):
                raise ConfigurationError(f"'{key}' must be an integer", config_key=key)
            if values[key] < 0:
                raise ConfigurationError(f"'{key}' must be >= 0", config_key=key)
    for key in _FLOAT_KEYS:
        if key in values:
            try:
                values[key] = float(values[key])
            except (TypeError, ValueError):
                raise ConfigurationError(f"'{key}' must be a number", config_key=key)
    level = values.get("autonomy_level")
    if level is not None and level not in _AUTONOMY_LEVELS:
        raise ConfigurationError(
            f"Invalid autonomy_level '{level}'. Valid: {_AUTONOMY_LEVELS}",
            config_key="autonomy_level",
        )
    return values


def load_config(config_path: Optional[Union[str, Path]] = None) -> RefineryConfig:
    """Load the decision_plane section of the YAML config over the defaults."""
    candidates = [config_path, os.environ.get("REFINERY_CONFIG"), CONFIG_PATH]
    for candidate in candidates:
        if not candidate:
            continue
        path = Path(candidate)
        if not path.exists():
            if candidate is config_path:
                raise ConfigurationError(f"Config file not found: {path}")
            continue
        raw = _read_yaml(path)
        section = raw.get("decision_plane", {}) or {}
        known = {f.name for f in dataclasses.fields(RefineryConfig)}
        unknown = sorted(set(section) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys in %s: %s", path, unknown)
        values = _validate({k: v for k, v in section.items() if k in known})
        if "default_scorecard_weights" in values:
            merged = dict(RefineryConfig().default_scorecard_weights)
            merged.update(values["default_scorecard_weights"] or {})
            values["default_scorecard_weights"] = merged
        logger.debug("Loaded config from %s", path)
        return RefineryConfig(**values)

    logger.debug("No config file found; using built-in defaults")
    return RefineryConfig()


def get_db_path(explicit: Optional[Union[str, Path]] = None,
                config: Optional[RefineryConfig] = None) -> Path:
    """Resolve the Decision Plane database path."""
    if explicit:
        return Path(explicit)
    env_path = os.environ.get("REFINERY_DB_PATH")
    if env_path:
        return Path(env_path)
    if config is not None and config.db_path:
        return Path(config.db_path)
    return DB_PATH
