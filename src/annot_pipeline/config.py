"""Configuration management for annot-pipeline."""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from platformdirs import user_cache_dir, user_config_dir

from annot_pipeline.models import FEATURE_TYPES

APP_NAME = "annot-pipeline"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "default_config.yaml"


def load_config(config_path: Optional[str] = None) -> dict[str, Any]:
    """Load configuration from YAML file.

    Priority:
    1. Explicit config_path argument
    2. User config dir (~/.config/annot-pipeline/config.yaml)
    3. Default config bundled with the package

    Args:
        config_path: Optional path to a custom config file.

    Returns:
        Configuration dictionary.
    """
    # Start with defaults
    config = _load_yaml(DEFAULT_CONFIG_PATH)

    # Override with user config if exists
    user_config = Path(user_config_dir(APP_NAME)) / "config.yaml"
    if user_config.exists():
        user_overrides = _load_yaml(user_config)
        config = _deep_merge(config, user_overrides)

    # Override with explicit config if provided
    if config_path:
        explicit = _load_yaml(Path(config_path))
        config = _deep_merge(config, explicit)

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    # Set computed defaults
    config = _set_defaults(config)

    return config


def _load_yaml(path: Path) -> dict:
    """Load a YAML file."""
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries. Override wins on conflicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def apply_overrides(config: dict, overrides: dict) -> dict:
    """Merge command-line style overrides into a loaded configuration.

    Computed defaults are re-applied, so a threads override of 0 still
    means one worker per core.
    """
    return _set_defaults(_deep_merge(config, overrides))


def _apply_env_overrides(config: dict) -> dict:
    """Apply environment variable overrides.

    Supports:
        ANNOT_PIPELINE_DB         (reference database directory)
        ANNOT_PIPELINE_THREADS
        ANNOT_PIPELINE_LOG_LEVEL
    """
    env_db = os.environ.get("ANNOT_PIPELINE_DB")
    if env_db:
        config["database"] = env_db

    env_threads = os.environ.get("ANNOT_PIPELINE_THREADS")
    if env_threads:
        try:
            config.setdefault("pipeline", {})["threads"] = int(env_threads)
        except ValueError:
            raise ValueError(f"ANNOT_PIPELINE_THREADS must be an integer, got '{env_threads}'")

    env_level = os.environ.get("ANNOT_PIPELINE_LOG_LEVEL")
    if env_level:
        config.setdefault("logging", {})["level"] = env_level

    return config


def _set_defaults(config: dict) -> dict:
    """Set computed default values."""
    pipeline = config.setdefault("pipeline", {})
    if not pipeline.get("threads"):
        pipeline["threads"] = os.cpu_count() or 1
    pipeline.setdefault("io_multiplier", 4)
    pipeline.setdefault("timeouts", {})

    # Set persistent cache directory if not specified
    cache = config.get("cache", {})
    persistent = cache.setdefault("persistent", {})
    if not persistent.get("directory"):
        persistent["directory"] = str(Path(user_cache_dir(APP_NAME)) / "lookup_cache")
    config["cache"] = cache

    return config


def get_detector_config(config: dict, kind: str) -> dict:
    """Get the configuration block of one detector kind.

    Args:
        config: Full configuration dictionary.
        kind: Detector kind (e.g., 'trna').

    Returns:
        Detector configuration dictionary, with pipeline-wide settings
        (translation table, database directory) folded in.

    Raises:
        ValueError: If the kind is unknown.
    """
    if kind not in FEATURE_TYPES:
        available = ", ".join(FEATURE_TYPES)
        raise ValueError(f"Unknown detector kind '{kind}'. Available kinds: {available}")
    detector = dict(config.get("detectors", {}).get(kind, {}))
    detector.setdefault("enabled", True)
    detector.setdefault("fatal", False)
    detector.setdefault("translation_table", config.get("pipeline", {}).get("translation_table", 11))
    detector.setdefault("database", config.get("database", ""))
    return detector


def list_detectors(config: dict) -> list[dict]:
    """List all detector kinds with their enabled/fatal flags.

    Returns:
        List of dicts with 'kind', 'enabled', 'fatal' and 'binary' keys.
    """
    detectors = []
    for kind in FEATURE_TYPES:
        cfg = get_detector_config(config, kind)
        detectors.append({
            "kind": kind,
            "enabled": bool(cfg.get("enabled")),
            "fatal": bool(cfg.get("fatal")),
            "binary": cfg.get("binary", ""),
        })
    return detectors


def database_path(config: dict, filename: str) -> Optional[Path]:
    """Resolve a database file name against the configured database directory."""
    if not filename:
        return None
    path = Path(filename)
    if path.is_absolute() or not config.get("database"):
        return path
    return Path(config["database"]) / path


def priority_groups(config: dict) -> list[list[str]]:
    """Normalize aggregation.priority to a list of equal-precedence groups."""
    raw = config.get("aggregation", {}).get("priority") or []
    groups = []
    for entry in raw:
        if isinstance(entry, str):
            groups.append([entry])
        else:
            groups.append([str(kind) for kind in entry])
    return groups
