"""Configuration management for cidcheck.

Configuration is loaded hierarchically: defaults → TOML config file →
environment (``CIDCHECK_*``) → command-line overrides.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from cidcheck.models import Config
from cidcheck.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "cidcheck.toml"

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    # Probe
    "CIDCHECK_BATCH_SIZE": "probe.batch_size",
    "CIDCHECK_CONCURRENCY": "probe.concurrency",
    "CIDCHECK_BATCH_TIMEOUT": "probe.batch_timeout",
    "CIDCHECK_SEND_TIMEOUT": "probe.send_timeout",
    "CIDCHECK_CONNECT_TIMEOUT": "probe.connect_timeout",
    "CIDCHECK_STREAM_QUEUE_SIZE": "probe.stream_queue_size",
    "CIDCHECK_SESSION_BACKEND": "probe.session_backend",
    "CIDCHECK_ABORT_ON_MISMATCH": "probe.abort_on_mismatch",
    # Output
    "CIDCHECK_OUTPUT_DIR": "output.output_dir",
    "CIDCHECK_FILE_PREFIX": "output.file_prefix",
    "CIDCHECK_DEBUG_LOG": "output.debug_log",
    # Export
    "CIDCHECK_EXPORT_ENABLED": "export.enabled",
    "CIDCHECK_EXPORT_SELECTION": "export.selection",
    "CIDCHECK_EXPORT_CONCURRENCY": "export.concurrency",
    "CIDCHECK_EXPORT_COMMAND": "export.command",
    "CIDCHECK_EXPORT_OUTPUT_DIR": "export.output_dir",
    "CIDCHECK_EXPORT_TIMEOUT": "export.timeout",
    # Observability
    "CIDCHECK_LOG_LEVEL": "observability.log_level",
    "CIDCHECK_LOG_FILE": "observability.log_file",
    "CIDCHECK_STRUCTURED_LOGGING": "observability.structured_logging",
    "CIDCHECK_LOG_CORRELATION_ID": "observability.log_correlation_id",
}


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for cidcheck.toml

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Config file not found: {path}"
                raise ConfigurationError(msg)
            return path

        # Search in current directory, then home directory
        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "cidcheck" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e
            logger.debug("Loaded configuration from %s", self.config_file)

        env_config = self._get_env_config()
        config_data = self._merge_config(config_data, env_config)

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}

        for env_var, config_path in ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            parsed: Any = self._parse_env_value(env_value)
            if config_path == "export.command" and isinstance(parsed, str):
                parsed = parsed.split()
            self._set_nested_value(env_config, config_path, parsed)

        return env_config

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        lowered = value.lower()
        if lowered in ("true", "yes", "on"):
            return True
        if lowered in ("false", "no", "off"):
            return False
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            pass
        return value

    @staticmethod
    def _set_nested_value(config: dict[str, Any], path: str, value: Any) -> None:
        """Set a nested value using a dotted path."""
        keys = path.split(".")
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Recursively merge configuration dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def apply_overrides(self, overrides: dict[str, Any]) -> Config:
        """Apply dotted-path overrides (e.g. from CLI flags) and revalidate.

        ``None`` values are ignored so unset flags keep the loaded value.
        """
        data = self.config.model_dump()
        for path, value in overrides.items():
            if value is None:
                continue
            self._set_nested_value(data, path, value)
        try:
            self.config = Config.model_validate(data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e
        return self.config
