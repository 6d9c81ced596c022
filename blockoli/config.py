"""
Configuration management for blockoli.

Provides default configuration and loading from .blockoli/config.toml.
"""

import copy
import logging
import tomllib
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

CONFIG_DIR = ".blockoli"
CONFIG_FILE = "config.toml"

DEFAULT_CONFIG = {
    "storage": {
        "backend": "sqlite",  # "memory", "sqlite", "lance"
        "sqlite_path": ".blockoli/blockoli.sqlite",
        "lance_path": ".blockoli/data.lance",
    },
    "embeddings": {
        "model": "all-MiniLM-L6-v2",
        "device": "",  # empty for auto-detect
        "normalize": True,
        "dimension": 384,
        "max_attempts": 3,
        "retry_wait": 0.5,
        "retry_max_wait": 4.0,
        "timeout_seconds": 30.0,
        "max_chars": 20000,
    },
    "indexer": {
        "max_workers": 4,
        "strict_parse": True,
        "max_file_size": 1048576,  # 1MB
        "exclude": [
            "node_modules",
            ".git",
            ".blockoli",
            "__pycache__",
            "dist",
            "build",
            ".venv",
            "venv",
            "*.min.js",
        ],
    },
    "search": {
        "default_limit": 5,
        "metric": "euclidean",  # "euclidean", "manhattan"
        "rebuild_lock_timeout": 0.5,
    },
    "logging": {
        "level": "INFO",
        "file": "",
        "json": False,
    },
}


class Config:
    """
    Configuration manager for blockoli.

    Loads configuration from .blockoli/config.toml if it exists,
    otherwise uses defaults.
    """

    def __init__(self, project_root: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            project_root: Root directory holding .blockoli/ (defaults to current directory)
        """
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self.config_path = self.project_root / CONFIG_DIR / CONFIG_FILE
        self._config = self._load_config()

    def _load_config(self) -> dict[str, Any]:
        """Load configuration from file or use defaults."""
        if not self.config_path.exists():
            logger.debug("No config file found, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)

        try:
            with open(self.config_path, "rb") as f:
                user_config = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to load config from {self.config_path}: {e}")
            logger.warning("Using default configuration")
            return copy.deepcopy(DEFAULT_CONFIG)

        logger.info(f"Loaded config from {self.config_path}")
        return self._merge_configs(DEFAULT_CONFIG, user_config)

    def _merge_configs(self, default: dict, user: dict) -> dict:
        """
        Recursively merge user config with defaults.

        User values take precedence, but missing keys use defaults.
        """
        merged = copy.deepcopy(default)
        for key, value in user.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self._merge_configs(merged[key], value)
            else:
                merged[key] = value
        return merged

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get a configuration value by nested keys.

        Examples:
            config.get("storage", "backend")
            config.get("search", "default_limit")
        """
        value = self._config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *keys: str, value: Any) -> None:
        """Set a configuration value by nested keys."""
        if not keys:
            return

        current = self._config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    def resolve_path(self, *keys: str) -> Path:
        """Resolve a configured path relative to the project root."""
        path = Path(self.get(*keys))
        if not path.is_absolute():
            path = self.project_root / path
        return path

    @property
    def storage(self) -> dict[str, Any]:
        return self._config.get("storage", {})

    @property
    def embeddings(self) -> dict[str, Any]:
        return self._config.get("embeddings", {})

    @property
    def indexer(self) -> dict[str, Any]:
        return self._config.get("indexer", {})

    @property
    def search(self) -> dict[str, Any]:
        return self._config.get("search", {})

    @property
    def logging(self) -> dict[str, Any]:
        return self._config.get("logging", {})

    def __repr__(self) -> str:
        return f"Config(project_root={self.project_root})"
