# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Configuration loading and validation for the incremental cache."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".incremental_cache.yml"


class ConfigurationError(Exception):
    """Raised when configuration validation fails critically."""

    pass


class Config:
    """Configuration for the incremental cache.

    Loads configuration from .incremental_cache.yml with validation and defaults.
    """

    DEFAULTS = {
        "cache_dir": ".incremental_cache",
        "index_filename": "index.json",
        "layout_index_filename": "layout-index.json",
        "flush_interval": 10,
        "continue_on_error": False,
        "persist_layout_cache": False,
        "ignore_patterns": [],
        "watch_extensions": [
            ".md",
            ".markdown",
            ".css",
            ".scss",
            ".less",
            ".js",
            ".mjs",
            ".cjs",
            ".jsx",
            ".ts",
            ".tsx",
            ".html",
            ".htm",
            ".json",
            ".txt",
        ],
        "enable_metrics_logging": True,
    }

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, uses default location.
        """
        if config_path is None:
            config_path = Path.cwd() / CONFIG_FILENAME

        self.config_path = config_path
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _defaults(self) -> Dict[str, Any]:
        # Lists are copied so callers cannot mutate DEFAULTS through properties
        return {
            key: list(value) if isinstance(value, list) else value
            for key, value in self.DEFAULTS.items()
        }

    def _load_config(self) -> None:
        """Load and validate configuration from file."""
        if not self.config_path.exists():
            logger.info(f"Configuration file not found at {self.config_path}, using defaults")
            self._config = self._defaults()
            return

        try:
            with open(self.config_path, encoding="utf-8") as f:
                loaded_config = yaml.safe_load(f)

            if loaded_config is None:
                logger.warning("Configuration file is empty, using defaults")
                self._config = self._defaults()
                return

            if not isinstance(loaded_config, dict):
                logger.warning(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(loaded_config)}, using defaults"
                )
                self._config = self._defaults()
                return

            self._config = self._defaults()
            self._validate_and_merge(loaded_config)

        except yaml.YAMLError as e:
            logger.warning(
                f"Error parsing configuration file {self.config_path}: {e}, using defaults"
            )
            self._config = self._defaults()
        except OSError as e:
            logger.warning(
                f"Error reading configuration file {self.config_path}: {e}, using defaults"
            )
            self._config = self._defaults()

    def _validate_and_merge(self, loaded_config: Dict[str, Any]) -> None:
        """Validate loaded configuration and merge with defaults.

        Invalid parameters are logged as warnings and defaults are used.
        """
        for key, value in loaded_config.items():
            if key not in self.DEFAULTS:
                logger.warning(f"Unknown configuration parameter '{key}', ignoring")
                continue

            if not self._validate_parameter(key, value):
                logger.warning(
                    f"Invalid value for '{key}': {value}, using default {self.DEFAULTS[key]}"
                )
                continue

            self._config[key] = value

    def _validate_parameter(self, key: str, value: Any) -> bool:
        """Validate a configuration parameter.

        Returns:
            True if valid, False if invalid
        """
        expected_type = type(self.DEFAULTS[key])
        # bool is an int subclass; reject True/False for integer settings
        if expected_type is int and isinstance(value, bool):
            return False
        if not isinstance(value, expected_type):
            return False

        if key == "flush_interval":
            return value > 0
        elif key == "cache_dir":
            return bool(value.strip())
        elif key in ("index_filename", "layout_index_filename"):
            return bool(value) and not any(sep in value for sep in ("/", "\\", ":", "\0"))
        elif key in ("ignore_patterns", "watch_extensions"):
            return all(isinstance(item, str) for item in value)

        return True

    def validate_or_raise(self) -> None:
        """Re-check the active configuration and raise on any invalid value.

        Raises:
            ConfigurationError: If a value fails validation.
        """
        for key, value in self._config.items():
            if not self._validate_parameter(key, value):
                raise ConfigurationError(f"Invalid value for '{key}': {value}")

    def as_dict(self) -> Dict[str, Any]:
        """Active configuration values."""
        return dict(self._config)

    def cache_path(self, project_root: Path) -> Path:
        """Absolute cache directory for a project."""
        cache_dir = Path(self.cache_dir).expanduser()
        if cache_dir.is_absolute():
            return cache_dir
        return Path(project_root) / cache_dir

    @property
    def cache_dir(self) -> str:
        """Cache directory, relative to the project root unless absolute."""
        value = self._config["cache_dir"]
        assert isinstance(value, str)
        return value

    @property
    def index_filename(self) -> str:
        """Filename of the file-processing index inside cache_dir."""
        value = self._config["index_filename"]
        assert isinstance(value, str)
        return value

    @property
    def layout_index_filename(self) -> str:
        """Filename of the layout index inside cache_dir."""
        value = self._config["layout_index_filename"]
        assert isinstance(value, str)
        return value

    @property
    def flush_interval(self) -> int:
        """Save the index after this many recomputations."""
        value = self._config["flush_interval"]
        assert isinstance(value, int)
        return value

    @property
    def continue_on_error(self) -> bool:
        """Default for ProcessOptions.continue_on_error."""
        value = self._config["continue_on_error"]
        assert isinstance(value, bool)
        return value

    @property
    def persist_layout_cache(self) -> bool:
        """Whether the layout cache is written to disk."""
        value = self._config["persist_layout_cache"]
        assert isinstance(value, bool)
        return value

    @property
    def ignore_patterns(self) -> List[str]:
        """Additional file patterns to ignore beyond .gitignore."""
        value = self._config["ignore_patterns"]
        assert isinstance(value, list)
        return value

    @property
    def watch_extensions(self) -> List[str]:
        """File suffixes the watcher reports changes for."""
        value = self._config["watch_extensions"]
        assert isinstance(value, list)
        return value

    @property
    def enable_metrics_logging(self) -> bool:
        """Whether per-batch metrics are appended to batch_metrics/."""
        value = self._config["enable_metrics_logging"]
        assert isinstance(value, bool)
        return value
