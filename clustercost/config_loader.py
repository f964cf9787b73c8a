"""Configuration loader with environment variable expansion."""

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .utils import TimeWindow

# Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(:-([^}]*))?\}")

DEFAULT_CONFIG: Dict[str, Any] = {
    "pipeline": {
        "automated_cluster_pattern": r"^job-\d+-run-\d+",
    },
    "input": {
        "source": "local",
        "base_path": "data/input",
        "tables": {
            "events": "cluster_events",
            "price_catalog": "instance_details",
            "cluster_spec": "cluster_spec",
            "cluster_snapshot": "cluster_snapshot",
            "job_runs": "job_runs",
            "spark_jobs": "spark_jobs",
            "spark_tasks": "spark_tasks",
        },
    },
    "output": {
        "write_to_db": False,
        "local_path": None,
    },
    "performance": {
        "parallel_partitions": False,
        "max_workers": None,
        "partitions_per_chunk": 500,
        "lookaround_rows": 1000,
    },
    "logging": {
        "level": "INFO",
        "format": "console",
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """Load and parse configuration with environment variable expansion."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to config.yaml (defaults to config/config.yaml at the repo root)
        """
        if config_path is None:
            base_dir = Path(__file__).parent.parent
            config_path = base_dir / "config" / "config.yaml"

        self.config_path = Path(config_path)
        self._config = None

    def load(self) -> Dict[str, Any]:
        """Load configuration from YAML file, expand env vars and apply defaults.

        Returns:
            Configuration dictionary

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If config file is invalid
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            raw_config = yaml.safe_load(f) or {}

        self._config = _deep_merge(DEFAULT_CONFIG, self._expand_env_vars(raw_config))
        return self._config

    def _expand_env_vars(self, obj: Any) -> Any:
        """Recursively expand environment variables in configuration.

        Supports:
        - ${VAR_NAME}: Required variable (raises if not set)
        - ${VAR_NAME:-default}: Variable with default value
        """
        if isinstance(obj, dict):
            return {k: self._expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._expand_env_vars(item) for item in obj]
        elif isinstance(obj, str):
            return self._expand_string(obj)
        else:
            return obj

    def _expand_string(self, value: str) -> str:
        """Expand environment variables in a string.

        Raises:
            ValueError: If required environment variable is not set
        """

        def replacer(match):
            var_name = match.group(1)
            has_default = match.group(2) is not None
            default_value = match.group(3) if has_default else None

            env_value = os.environ.get(var_name)

            if env_value is not None:
                return env_value
            elif has_default:
                return default_value
            else:
                raise ValueError(
                    f"Required environment variable '{var_name}' is not set. " f"Found in configuration value: {value}"
                )

        return ENV_VAR_PATTERN.sub(replacer, value)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Example:
            >>> loader = ConfigLoader()
            >>> loader.get('performance.lookaround_rows', 1000)
        """
        if self._config is None:
            self.load()

        value = self._config
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    @property
    def config(self) -> Dict[str, Any]:
        """Get full configuration dictionary."""
        if self._config is None:
            self.load()
        return self._config


def get_window(config: Dict[str, Any]) -> TimeWindow:
    """Build the processing window from ``pipeline.from_time`` / ``pipeline.until_time``.

    Raises:
        ValueError: If either bound is missing or until is not after from
    """
    pipeline_config = config.get("pipeline", {})
    from_time = pipeline_config.get("from_time")
    until_time = pipeline_config.get("until_time")
    if from_time is None or until_time is None:
        raise ValueError("pipeline.from_time and pipeline.until_time must both be configured")
    return TimeWindow.from_values(from_time, until_time)


# Singleton instance for convenience
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
