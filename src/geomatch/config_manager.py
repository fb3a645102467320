"""
Configuration manager for matching settings.

Loads configuration from YAML files, validates ranges at startup,
and provides environment variable substitution.
"""

import logging
import os
import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .core.errors import ConfigurationError
from .core.string_scorer import MAX_PREFIX_WEIGHT

logger = logging.getLogger(__name__)


@dataclass
class MatchConfig:
    """Validated matching configuration.

    Attributes:
        buffer_distance_m: Tolerance added to top-level boundaries during blocking
        string_threshold: Maximum accepted name distance
        max_spatial_distance_m: Admissibility gate for accepted matches
        prefix_weight: Winkler prefix boost strength
        region_name_threshold: Maximum name distance when resolving a region by name
        top_level: Level tag of the blocking units
        period: Period to match (latest available per target when None)
        worker_count: Degree of parallelism
        use_processes: Use a process pool instead of threads
    """
    name: str = "geomatch"
    buffer_distance_m: float = 500.0
    string_threshold: float = 0.15
    max_spatial_distance_m: float = 2000.0
    prefix_weight: float = 0.15
    region_name_threshold: float = 0.20
    top_level: str = "constituency"
    period: Optional[int] = None
    worker_count: int = 4
    use_processes: bool = False
    block_dir: Path = Path("outputs/blocks")
    results_db: Path = Path("outputs/match_results.db")
    output_dir: Path = Path("outputs")

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigurationError: If any setting is out of range
        """
        if self.buffer_distance_m < 0:
            raise ConfigurationError(
                f"buffer_distance_m must be >= 0, got {self.buffer_distance_m}"
            )
        if not 0.0 <= self.string_threshold <= 1.0:
            raise ConfigurationError(
                f"string_threshold must be between 0 and 1, got {self.string_threshold}"
            )
        if self.max_spatial_distance_m < 0:
            raise ConfigurationError(
                f"max_spatial_distance_m must be >= 0, got {self.max_spatial_distance_m}"
            )
        if not 0.0 <= self.prefix_weight <= MAX_PREFIX_WEIGHT:
            raise ConfigurationError(
                f"prefix_weight must be between 0 and {MAX_PREFIX_WEIGHT}, got {self.prefix_weight}"
            )
        if not 0.0 <= self.region_name_threshold <= 1.0:
            raise ConfigurationError(
                f"region_name_threshold must be between 0 and 1, got {self.region_name_threshold}"
            )
        if not self.top_level:
            raise ConfigurationError("top_level must name the level of the blocking units")
        if int(self.worker_count) < 1:
            raise ConfigurationError(f"worker_count must be >= 1, got {self.worker_count}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        for key in ("block_dir", "results_db", "output_dir"):
            data[key] = str(data[key])
        return data


class ConfigManager:
    """Manages matching configuration."""

    SECTIONS = ("matching", "execution", "storage")

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration YAML file (optional)
        """
        self.config_path = config_path
        self._config: Optional[Dict[str, Any]] = None

    def load(self, config_path: Optional[Path] = None) -> MatchConfig:
        """Load and validate configuration from YAML file.

        Args:
            config_path: Path to configuration file (overrides init path)

        Returns:
            MatchConfig with validated settings

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If configuration is invalid
        """
        path = config_path or self.config_path
        if path is None:
            raise ConfigurationError("No configuration path provided")

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}

        config = self._substitute_env_vars(config)
        self._config = config

        return self.from_dict(config)

    def from_dict(self, config: Dict[str, Any]) -> MatchConfig:
        """Create MatchConfig from a configuration dictionary.

        Accepts the sectioned layout (``matching``, ``execution``, ``storage``)
        as well as flat keys.
        """
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a mapping")

        flat: Dict[str, Any] = {}
        for key, value in config.items():
            if key in self.SECTIONS:
                if not isinstance(value, dict):
                    raise ConfigurationError(f"Section {key} must be a dictionary")
                flat.update(value)
            else:
                flat[key] = value

        known = {f.name: f for f in fields(MatchConfig)}
        unknown = sorted(set(flat) - set(known))
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

        kwargs: Dict[str, Any] = {}
        try:
            for key, value in flat.items():
                kwargs[key] = self._coerce(key, value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value: {e}") from e

        return MatchConfig(**kwargs)

    def _coerce(self, key: str, value: Any) -> Any:
        """Convert YAML/env values (often strings) to the field's type."""
        if key in ("block_dir", "results_db", "output_dir"):
            return Path(str(value)).expanduser()
        if key in ("name", "top_level"):
            return str(value)
        if key == "period":
            return None if value in (None, "", "null") else int(value)
        if key == "worker_count":
            return int(value)
        if key == "use_processes":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        return float(value)

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute environment variables in configuration.

        Supports syntax: ${VAR_NAME} or ${VAR_NAME:default_value}
        """
        if isinstance(config, dict):
            return {
                key: self._substitute_env_vars(value)
                for key, value in config.items()
            }
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_string(config)
        else:
            return config

    def _substitute_env_var_string(self, value: str) -> str:
        # Pattern: ${VAR_NAME} or ${VAR_NAME:default}
        pattern = r'\$\{([^}:]+)(?::([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default_value)

        return re.sub(pattern, replacer, value)

    def save_example_config(self, output_path: Path) -> None:
        """Save an example configuration file.

        Args:
            output_path: Path where to save example config
        """
        example_config = {
            "name": "geomatch",
            "output_dir": "outputs",
            "matching": {
                "buffer_distance_m": 500,
                "string_threshold": 0.15,
                "max_spatial_distance_m": 2000,
                "prefix_weight": 0.15,
                "region_name_threshold": 0.20,
                "top_level": "constituency",
                "period": None,
            },
            "execution": {
                "worker_count": "${GEOMATCH_WORKERS:4}",
                "use_processes": False,
            },
            "storage": {
                "block_dir": "outputs/blocks",
                "results_db": "outputs/match_results.db",
            },
        }

        with open(output_path, 'w') as f:
            yaml.dump(example_config, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved example configuration to {output_path}")
