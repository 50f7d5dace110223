"""Settings loading with defaults and CLI override merging."""

from __future__ import annotations

import copy
from pathlib import Path

import yaml

DEFAULT_CONFIG_FILE = "portion-planner.yaml"

DEFAULTS = {
    "database": {
        "url": "sqlite:///portion_planner.db",
    },
    "generation": {
        "categories": ["breakfast", "lunch", "dinner"],
        "per_day": 1,
        "target_calories": 1800,
        "calorie_margin": 200,
        "top_k": 3,
        "fallback_sample_size": 20,
    },
    "scaling": {
        "tolerance": 50,
        "min_factor": 0.1,
    },
    "persons": {
        "max_per_plan": 5,
        "min_calories": 1000,
        "max_calories": 5000,
    },
    "ai": {
        "provider": "claude-cli",
        "model": None,
        "api_key": None,
        "max_tokens": 4096,
        "timeout_seconds": 120,
        "call_delay_seconds": 2.0,
        "max_retries": 3,
        "backoff_seconds": 2.0,
    },
}


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: Path | None = None) -> dict:
    """Load settings from a YAML file, falling back to defaults.

    With no explicit path, ``portion-planner.yaml`` in the working directory
    is used when present.
    """
    if config_path is None:
        config_path = Path.cwd() / DEFAULT_CONFIG_FILE

    if config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        return deep_merge(copy.deepcopy(DEFAULTS), user_config)

    return copy.deepcopy(DEFAULTS)


def apply_cli_overrides(config: dict, **overrides: object) -> dict:
    """Apply CLI argument overrides to config.

    Supports flat keys that map into nested config:
      database_url -> database.url
      provider -> ai.provider
      model -> ai.model
      tolerance -> scaling.tolerance
      margin -> generation.calorie_margin
    """
    if overrides.get("database_url") is not None:
        config["database"]["url"] = overrides["database_url"]
    if overrides.get("provider") is not None:
        config["ai"]["provider"] = str(overrides["provider"]).lower()
    if overrides.get("model") is not None:
        config["ai"]["model"] = overrides["model"]
    if overrides.get("tolerance") is not None:
        config["scaling"]["tolerance"] = overrides["tolerance"]
    if overrides.get("margin") is not None:
        config["generation"]["calorie_margin"] = overrides["margin"]

    return config
