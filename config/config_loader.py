"""
config_loader.py
-----------------
Cached config loader. Reads config.yaml once and caches it.
All modules access configuration through this, never hardcoded values.

Components take an explicit config section in their constructors; the getters
below are only the defaults used when the caller does not inject one.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.
            Passing a path always re-reads the file and replaces the cache.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE and config_path is None:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_detection_config() -> Dict[str, Any]:
    """Returns the recurring_detection block."""
    return load_config()["recurring_detection"]


def get_thresholds() -> Dict[str, float]:
    """Returns the acceptance thresholds for email and bank candidates."""
    return load_config()["thresholds"]


def get_confidence_config() -> Dict[str, Any]:
    """Returns the confidence_scoring block."""
    return load_config()["confidence_scoring"]


def get_dedup_config() -> Dict[str, Any]:
    """Returns the deduplication block."""
    return load_config()["deduplication"]


def get_pipeline_config() -> Dict[str, Any]:
    """Returns the pipeline block (worker pool size, savings heuristic)."""
    return load_config()["pipeline"]


def get_category_rules() -> list[Dict[str, Any]]:
    """Returns the ordered category rule table."""
    return load_config()["category_rules"]


def get_merchant_logos() -> Dict[str, str]:
    """Returns the merchant substring → logo reference table."""
    return load_config()["merchant_logos"]


def get_frequency_days() -> Dict[str, int]:
    """
    Returns the nominal number of days per frequency bucket,
    e.g. {"weekly": 7, "monthly": 30, ...}.
    """
    bands = get_detection_config()["frequency_bands"]
    return {name: band["days"] for name, band in bands.items()}


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
