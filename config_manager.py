"""
Configuration management module for the budget ledger.

This module handles loading configuration values from
config.yaml, merging user settings over the built-in defaults.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from exceptions import ConfigError

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    'database': {
        'data_dir': 'data',
        'path': 'budget.db',
        'connection_string': None,
    },
    'storage': {
        'timeout_seconds': 5.0,
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'file': None,
    },
    'categories': {
        'seed_defaults': True,
        'defaults': [
            {'id': '1', 'name': 'Rent', 'type': 'essential'},
            {'id': '2', 'name': 'Groceries', 'type': 'essential'},
            {'id': '3', 'name': 'Savings', 'type': 'savings'},
        ],
    },
    'budget': {
        'savings_ratio': 0.10,
        'over_budget_tolerance': 50.0,
        'allocation_warning_ratio': 0.40,
    },
    'reconcile_on_startup': True,
}

CONFIG_FILE = 'config.yaml'


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``base`` updated recursively with ``overrides``."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        path: Config file location (defaults to config.yaml in the working directory)

    Returns:
        Configuration dictionary with defaults for missing values

    Raises:
        ConfigError: If the file cannot be read or is not a YAML mapping
    """
    config_path = Path(path or CONFIG_FILE)
    if not config_path.exists():
        logger.info(f"No configuration file at {config_path}; using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading configuration: {e}", exc_info=True)
        raise ConfigError(
            "Failed to load configuration",
            details={"path": str(config_path)},
            original_error=e
        ) from e

    if not isinstance(loaded, dict):
        raise ConfigError(
            "Configuration file must contain a mapping",
            details={"path": str(config_path), "type": type(loaded).__name__}
        )

    config = _deep_merge(DEFAULT_CONFIG, loaded)
    logger.info("Configuration loaded successfully")
    return config
