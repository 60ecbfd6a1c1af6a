"""
Dialectic Core — Configuration Loader

Layered configuration:
  0. Built-in defaults (DEFAULTS below)
  1. Base YAML file (dialectic.yaml)
  2. Per-environment overlay (config/{DIALECTIC_ENV}.yaml)
  3. Environment variable overrides (DIALECTIC_ prefix)

Usage:
    from dialectic.config import load_config, get_config_value

    cfg = load_config(base_path="dialectic.yaml", env="prod")
    timeout = get_config_value("executor.model_timeout_seconds", cfg, 120)

Environment variables:
    DIALECTIC_ENV          — active profile (dev, staging, prod)
    DIALECTIC_CONFIG       — base file path (default: dialectic.yaml)
    DIALECTIC_CONFIG_DIR   — overlay directory (default: config/)
    DIALECTIC_*            — overrides; `__` separates levels:
                             DIALECTIC_EXECUTOR__MODEL_TIMEOUT_SECONDS=60
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("dialectic.config")

ENV_PREFIX = "DIALECTIC_"

# Meta settings and backend selectors read directly by their modules.
_EXCLUDED_ENV = {
    "DIALECTIC_ENV", "DIALECTIC_CONFIG", "DIALECTIC_CONFIG_DIR",
    "DIALECTIC_VERSION", "DIALECTIC_WORKER_MODE",
    "DIALECTIC_DB_BACKEND", "DIALECTIC_DB_DSN", "DIALECTIC_LLM_PROVIDER",
}

DEFAULTS: dict[str, Any] = {
    "db": {
        "backend": "sqlite",
        "path": "dialectic.db",
    },
    "storage": {
        "backend": "local",
        "root": "./storage",
        "bucket": "dialectic-contributions",
    },
    "executor": {
        "model_timeout_seconds": 120,
        "render_documents": True,
        "continue_until_complete": True,
        "max_continuations": 5,
    },
    "compression": {
        "strategy": "relevance_ranked",
        "output_reserve_tokens": 2048,
        "min_fragment_tokens": 64,
    },
    "prompts": {
        "default_context": "general",
    },
    "stages": {
        "auto_advance": False,
    },
    "projects": {
        "default_process_template_id": None,
    },
    "worker": {
        "poll_interval_seconds": 1.0,
        "max_workers": 4,
        "stuck_after_seconds": 900,
    },
    "api": {
        "collapse_forbidden": True,
    },
    "logging": {
        "level": "INFO",
    },
    "llm": {
        "provider": "",
        "aliases": {},
    },
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """
    Per-environment overlay: {config_dir}/{env}.yaml, then config/ next
    to the base file. Empty when no env is active or no file exists.
    """
    env = env or os.environ.get("DIALECTIC_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("DIALECTIC_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / "config" / f"{env}.yaml",
    ]
    for path in candidates:
        if path.exists():
            overlay = _load_yaml(path)
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    DIALECTIC_SECTION__KEY=value → {"section": {"key": value}}

    Values are parsed as YAML scalars, so numbers and booleans arrive
    typed. A variable without `__` sets a top-level key.
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _EXCLUDED_ENV:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value
        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var override section(s)", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration. Priority (highest wins): env vars, overlay file,
    base file, built-in defaults.
    """
    base_path = base_path or os.environ.get("DIALECTIC_CONFIG", "dialectic.yaml")
    config = copy.deepcopy(DEFAULTS)

    if os.path.exists(base_path):
        config = deep_merge(config, _load_yaml(Path(base_path)))
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("DIALECTIC_ENV", "default")
    config["_config_source"] = base_path
    return config


_cached: dict[str, Any] | None = None


def get_config() -> dict[str, Any]:
    """Process-wide config, loaded on first use."""
    global _cached
    if _cached is None:
        _cached = load_config()
    return _cached


def reset_config() -> None:
    global _cached
    _cached = None


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("compression.output_reserve_tokens", cfg, 2048)
    """
    if config is None:
        config = get_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current
