"""
VeilChat - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    BACKEND_DB_FILENAME,
    CONFIG_FILENAME,
    DECRYPTION_PLACEHOLDER,
    DEFAULT_DATA_DIR,
    ENV_PREFIX,
    FEATURE_REALTIME_SYNC,
    KEY_STORE_FILENAME,
    MAX_TEXT_MESSAGE_SIZE,
)
from .errors import ConfigError, ErrorCode

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "storage": {
        "data_dir": DEFAULT_DATA_DIR,
        "key_store_filename": KEY_STORE_FILENAME,
        "backend_db_filename": BACKEND_DB_FILENAME,
    },
    "messages": {
        "max_message_size": MAX_TEXT_MESSAGE_SIZE,
        "decryption_placeholder": DECRYPTION_PLACEHOLDER,
    },
    "sync": {
        "realtime_enabled": FEATURE_REALTIME_SYNC,
    },
    "logging": {
        "level": "INFO",
        "file_logging": False,
        "console_logging": True,
    },
}


class Config:
    """Configuration manager for VeilChat.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides. Provides a simple
    interface for accessing and updating configuration values.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If configuration loading or parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        config = self._apply_env_overrides(config)
        self._validate(config)

        return config

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary

        Returns:
            Merged configuration dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: VEILCHAT_SECTION_KEY
        For example: VEILCHAT_LOGGING_LEVEL=DEBUG

        Args:
            config: Base configuration dictionary

        Returns:
            Configuration with environment overrides applied
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)

                if env_value is not None:
                    original_type = type(settings[key])
                    try:
                        if original_type == bool:
                            result[section][key] = env_value.lower() in ("true", "1", "yes")
                        elif original_type == int:
                            result[section][key] = int(env_value)
                        elif original_type == float:
                            result[section][key] = float(env_value)
                        else:
                            result[section][key] = env_value
                    except ValueError:
                        # Keep original value if conversion fails
                        pass

        return result

    def _validate(self, config: Dict[str, Any]) -> None:
        """Reject values the core cannot run with.

        Raises:
            ConfigError: If a value is out of range
        """
        max_size = config.get("messages", {}).get("max_message_size")
        if not isinstance(max_size, int) or max_size <= 0:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "messages.max_message_size must be a positive integer",
                {"value": max_size},
            )

        placeholder = config.get("messages", {}).get("decryption_placeholder")
        if not isinstance(placeholder, str) or not placeholder:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "messages.decryption_placeholder must be a non-empty string",
                {"value": placeholder},
            )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            value: Value to set
        """
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    @property
    def data_dir(self) -> Path:
        """Expanded data directory for the key cache, logs and local database."""
        return Path(self.get("storage", "data_dir", DEFAULT_DATA_DIR)).expanduser()

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(self.config_path, "w", encoding="utf-8") as f:
                self._write_toml(f, self.data)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format.

        Args:
            file: File object to write to
            data: Configuration data to write
        """
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    if isinstance(value, bool):
                        file.write(f"{key} = {str(value).lower()}\n")
                    elif isinstance(value, (int, float)):
                        file.write(f"{key} = {value}\n")
                    elif isinstance(value, str):
                        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                        file.write(f'{key} = "{escaped}"\n')
                file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file.

        Args:
            path: Path where to create the example config

        Raises:
            ConfigError: If file creation fails
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            with open(path, "w", encoding="utf-8") as f:
                f.write("# VeilChat Configuration File\n")
                f.write("# Generated example configuration\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e
