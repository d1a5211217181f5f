"""
STATCUBE Configuration Management

This module handles configuration for the cube engine.
Supports multiple environments and a JSON configuration file.
"""

import os
import json
import copy
import logging
from typing import Dict, Any, List

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "engine": {
        "memory_limit": "1GB",
        "threads": 4,
        "statement_timeout": 300
    },
    "cube": {
        "directory": "cubes",
        "lock_timeout": 0,
        "keep_previous": False
    },
    "storage": {
        "directory": "storage",
        "timeout": 60,
        "retries": 3,
        "backoff_min": 0.5,
        "backoff_max": 8
    },
    "reference_data": {
        "directory": "reference-data"
    },
    "preview": {
        "min_page_size": 5,
        "max_page_size": 500,
        "default_page_size": 100
    },
    "locales": ["en-GB", "cy-GB"],
    "logging": {
        "level": "INFO"
    }
}


class Config:
    """Configuration manager for the cube engine."""

    def __init__(self, config_file: str = "config.json"):
        """Initialize configuration."""
        self.config_file = config_file
        self.config = self._load_config()
        self.environment = os.getenv("STATCUBE_ENV", "development")

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file, layered over the defaults."""
        config = self._get_default_config()
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, 'r') as f:
                    self._merge(config, json.load(f))
        except (OSError, ValueError) as e:
            logger.error(f"Error loading config {self.config_file}: {e}")
        return config

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration."""
        return copy.deepcopy(DEFAULT_CONFIG)

    def _merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> None:
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                self._merge(base[key], value)
            else:
                base[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dotted key."""
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value by dotted key."""
        keys = key.split('.')
        config = self.config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    @property
    def locales(self) -> List[str]:
        return list(self.get("locales", DEFAULT_CONFIG["locales"]))

    def save(self) -> bool:
        """Save configuration to file."""
        try:
            with open(self.config_file, 'w') as f:
                json.dump(self.config, f, indent=2)
            return True
        except OSError as e:
            logger.error(f"Error saving config: {e}")
            return False
