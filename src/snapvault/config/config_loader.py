"""
Configuration loader for snapvault.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.exceptions import ConfigError


logger = logging.getLogger(__name__)


DEFAULT_EXPORT_AUTHOR = "SnapVault Export"
DEFAULT_BACKUP_KEY_ENV_VAR = "SNAPVAULT_BACKUP_KEY"


class SnapVaultConfig:
    """
    Configuration for the snapshot engine.

    Loads a YAML configuration file (or built-in defaults) and applies
    environment variable overrides on top.
    """

    def __init__(self, config_path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (optional)
            overrides: Values merged over the loaded config (optional)
        """
        self.config_path = Path(config_path) if config_path else None
        self.config = self._default_config()
        if self.config_path:
            _deep_merge(self.config, self._load_config())
        if overrides:
            _deep_merge(self.config, overrides)
        self._apply_env_overrides()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise ConfigError(f"Config file not found: {self.config_path}")

        logger.info(f"Loading config from: {self.config_path}")

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config file {self.config_path}: {e}")

        if config is not None and not isinstance(config, dict):
            raise ConfigError(f"Config file {self.config_path} must contain a mapping")

        return config or {}

    def _default_config(self) -> Dict[str, Any]:
        """Return default configuration."""
        return {
            "working_directory": "",
            "export": {
                "author": DEFAULT_EXPORT_AUTHOR,
            },
            "migration": {
                "backup": {
                    "encrypt": False,
                    "key_env_var": DEFAULT_BACKUP_KEY_ENV_VAR,
                },
            },
            "logging": {
                "level": "INFO",
                "structured": False,
            },
        }

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to loaded config."""
        working_dir = os.environ.get("SNAPVAULT_WORKING_DIR")
        if working_dir:
            self.config["working_directory"] = working_dir

        log_level = os.environ.get("SNAPVAULT_LOG_LEVEL")
        if log_level:
            self.config.setdefault("logging", {})["level"] = log_level.upper()

    @property
    def working_directory(self) -> Optional[Path]:
        value = self.config.get("working_directory")
        return Path(value) if value else None

    @working_directory.setter
    def working_directory(self, value: Optional[Path]) -> None:
        self.config["working_directory"] = str(value) if value else ""

    @property
    def export_author(self) -> str:
        return self.get("export.author", DEFAULT_EXPORT_AUTHOR)

    @property
    def backup_encrypt(self) -> bool:
        return bool(self.get("migration.backup.encrypt", False))

    @property
    def backup_key_env_var(self) -> str:
        return self.get("migration.backup.key_env_var", DEFAULT_BACKUP_KEY_ENV_VAR)

    @property
    def log_level(self) -> int:
        name = str(self.get("logging.level", "INFO")).upper()
        level = logging.getLevelName(name)
        return level if isinstance(level, int) else logging.INFO

    @property
    def structured_logs(self) -> bool:
        return bool(self.get("logging.structured", False))

    def is_valid(self) -> bool:
        """Working directory is set and exists."""
        working_dir = self.working_directory
        return working_dir is not None and working_dir.is_dir()

    def require_working_directory(self) -> Path:
        """Return the working directory or raise ConfigError."""
        if not self.is_valid():
            raise ConfigError(
                f"Working directory is not set or does not exist: {self.working_directory}"
            )
        return self.working_directory

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


def _deep_merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base
