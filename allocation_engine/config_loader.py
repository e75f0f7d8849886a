"""Configuration loader with environment variable expansion."""

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

ENV_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(:-([^}]*))?\}")

# Applied beneath the YAML file so partial configs stay usable
DEFAULT_CONFIG: Dict[str, Any] = {
    "logging": {"level": "INFO", "format": "console"},
    "allocation": {
        "default_limit": 1000,
        "strict_aggregate": False,
        "require_label_key": False,
    },
    "pricing": {
        "provider": "custom",
        "cache_ttl_seconds": 3600,
        "cache_max_size": 1024,
        "default_rates": {"cpu_per_core_hour": 0.031611, "memory_per_gb_hour": 0.004237},
        "configs": [],
        "clusters": [],
        "nodes": [],
    },
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class ConfigLoader:
    """Load config.yaml, expand ${VAR} references and apply defaults."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to config.yaml (defaults to ALLOCATION_CONFIG, then
                config/config.yaml next to the package)
        """
        if config_path is None:
            config_path = os.environ.get("ALLOCATION_CONFIG")
        if config_path is None:
            config_path = Path(__file__).parent.parent / "config" / "config.yaml"

        self.config_path = Path(config_path)
        self._config = None

    def load(self) -> Dict[str, Any]:
        """Load configuration from YAML file.

        Returns:
            Configuration dictionary

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If config file is invalid
            ValueError: If a required environment variable is not set
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            raw_config = yaml.safe_load(f) or {}

        self._config = deep_merge(DEFAULT_CONFIG, self._expand_env_vars(raw_config))
        return self._config

    def _expand_env_vars(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: self._expand_env_vars(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [self._expand_env_vars(item) for item in obj]
        if isinstance(obj, str):
            return self._expand_string(obj)
        return obj

    @staticmethod
    def _expand_string(value: str) -> str:
        """Expand ${VAR} (required) and ${VAR:-default} references.

        Raises:
            ValueError: If a required environment variable is not set
        """

        def replacer(match):
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(3)
            raise ValueError(f"Required environment variable '{var_name}' is not set (in: {value})")

        return ENV_PATTERN.sub(replacer, value)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Example:
            >>> ConfigLoader().get("pricing.cache_ttl_seconds", 3600)
        """
        value = self.config
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    @property
    def config(self) -> Dict[str, Any]:
        if self._config is None:
            self.load()
        return self._config


_default_loader = None


def get_config(config_path: Optional[str] = None, reload: bool = False) -> Dict[str, Any]:
    """Get configuration (singleton pattern).

    Args:
        config_path: Path to config.yaml (optional)
        reload: Force reload from file

    Returns:
        Configuration dictionary
    """
    global _default_loader

    if _default_loader is None or reload:
        _default_loader = ConfigLoader(config_path)
        return _default_loader.load()

    return _default_loader.config
