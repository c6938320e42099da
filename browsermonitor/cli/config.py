"""Configuration system for browsermonitor with proper precedence handling.

Sources, highest precedence first:
CLI flags > environment variables > config file > auto-discovered file > defaults
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from ..capture.config import (
    BODY_LIMIT_BYTES,
    BODY_TIMEOUT_S,
    DEFAULT_FAILURE_CONSOLE_IGNORE,
    DEFAULT_HMR_PATTERNS,
    DEFAULT_IGNORE_PATTERNS,
    DOM_MAX_BYTES,
    CaptureSettings,
    OutputPaths,
)
from ..connection.manager import ConnectionSettings

DEFAULT_HTTP_PORT = 60001


class CaptureConfig(BaseModel):
    """What gets recorded and how much of it."""
    ignore_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    hmr_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_HMR_PATTERNS))
    failure_console_ignore: List[str] = Field(default_factory=lambda: list(DEFAULT_FAILURE_CONSOLE_IGNORE))
    body_limit_bytes: int = Field(default=BODY_LIMIT_BYTES, ge=1, description="Response body ceiling")
    body_timeout_s: float = Field(default=BODY_TIMEOUT_S, gt=0, description="Response body wait")
    dom_max_bytes: int = Field(default=DOM_MAX_BYTES, ge=1, description="DOM dump ceiling")


class ConnectionConfig(BaseModel):
    """Retry and discovery settings for reaching the browser."""
    max_attempts: int = Field(default=5, ge=1, description="Handshake attempts before diagnosing")
    retry_delay_s: float = Field(default=1.5, ge=0)
    handshake_timeout_s: float = Field(default=3.0, gt=0)
    discovery_polls: int = Field(default=30, ge=1)
    discovery_interval_s: float = Field(default=2.0, ge=0)
    join_host: Optional[str] = Field(default=None, description="Host of an explicit join endpoint")


class MonitorConfiguration(BaseModel):
    """Complete configuration with all sections."""

    default_url: Optional[str] = Field(default=None, description="URL opened in launch mode")
    headless: bool = Field(default=False, description="Launch the browser without a window")
    realtime: bool = Field(default=False, description="Mirror captured lines to disk as they arrive")
    navigation_timeout_ms: int = Field(default=60_000, ge=0)
    hard_timeout_ms: int = Field(default=0, ge=0, description="End the session after this long; 0 disables")
    output_dir: Path = Field(default_factory=Path.cwd)
    http_host: str = Field(default="127.0.0.1")
    http_port: int = Field(default=DEFAULT_HTTP_PORT, ge=0, le=65535)
    chrome_path: Optional[str] = Field(default=None, description="Chrome executable")

    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)

    # Metadata
    config_file_path: Optional[Path] = Field(default=None, description="Source config file")
    loaded_from: List[str] = Field(default_factory=list, description="Configuration sources")

    @field_validator('default_url')
    @classmethod
    def normalize_url(cls, v):
        if v and "://" not in v and not v.startswith("about:"):
            return f"http://{v}"
        return v

    def capture_settings(self) -> CaptureSettings:
        return CaptureSettings(**self.capture.model_dump())

    def connection_settings(self) -> ConnectionSettings:
        return ConnectionSettings(
            retry_delay_s=self.connection.retry_delay_s,
            handshake_timeout_s=self.connection.handshake_timeout_s,
            discovery_polls=self.connection.discovery_polls,
            discovery_interval_s=self.connection.discovery_interval_s,
        )

    def output_paths(self) -> OutputPaths:
        return OutputPaths(self.output_dir)


class ConfigurationLoader:
    """Loads and merges configuration from multiple sources with proper precedence."""

    ENV_PREFIX = "BROWSERMONITOR_"

    # Searched in order
    DEFAULT_CONFIG_FILES = [
        "browsermonitor.yaml",
        ".browsermonitor.yaml",
        "browsermonitor.json",
    ]

    BOOLEAN_KEYS = ("headless", "realtime")
    INTEGER_KEYS = (
        "navigation_timeout_ms", "hard_timeout_ms", "http_port",
        ".body_limit_bytes", ".dom_max_bytes", ".max_attempts", ".discovery_polls",
    )
    FLOAT_KEYS = (".body_timeout_s", ".retry_delay_s", ".handshake_timeout_s", ".discovery_interval_s")
    LIST_KEYS = (".ignore_patterns", ".hmr_patterns", ".failure_console_ignore")

    def __init__(self):
        self.loaded_sources: List[str] = []

    def load_configuration(
        self,
        config_file: Optional[Path] = None,
        cli_overrides: Optional[Dict[str, Any]] = None,
        search_paths: Optional[List[Path]] = None
    ) -> MonitorConfiguration:
        """Load configuration with proper precedence.

        Args:
            config_file: Explicitly specified config file
            cli_overrides: CLI flag overrides; ``None`` values are ignored
            search_paths: Paths to search for config files

        Returns:
            Merged configuration

        Raises:
            FileNotFoundError: If ``config_file`` does not exist
            ValueError: If a config file cannot be parsed
        """
        self.loaded_sources = ["defaults"]
        config_data: Dict[str, Any] = {}

        if not config_file:
            discovered = self._discover_config_file(search_paths or [Path.cwd()])
            if discovered:
                source = discovered.pop("_source_file")
                config_data = self._merge_config(config_data, discovered)
                self.loaded_sources.append(f"auto-discovered: {source}")

        if config_file:
            if not config_file.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_file}")
            config_data = self._merge_config(config_data, self._load_config_file(config_file))
            self.loaded_sources.append(f"config file: {config_file}")

        env_config = self._load_environment_variables()
        if env_config:
            config_data = self._merge_config(config_data, env_config)
            self.loaded_sources.append("environment variables")

        overrides = self._drop_none(cli_overrides or {})
        if overrides:
            config_data = self._merge_config(config_data, overrides)
            self.loaded_sources.append("CLI flags")

        config_data["loaded_from"] = self.loaded_sources
        if config_file:
            config_data["config_file_path"] = config_file

        return MonitorConfiguration(**config_data)

    def _discover_config_file(self, search_paths: List[Path]) -> Optional[Dict[str, Any]]:
        for search_path in search_paths:
            for config_filename in self.DEFAULT_CONFIG_FILES:
                config_path = search_path / config_filename
                if config_path.exists() and config_path.is_file():
                    config_data = self._load_config_file(config_path)
                    config_data["_source_file"] = str(config_path)
                    return config_data
        return None

    def _load_config_file(self, config_path: Path) -> Dict[str, Any]:
        try:
            content = config_path.read_text(encoding='utf-8')

            if config_path.suffix.lower() in ['.yaml', '.yml']:
                data = yaml.safe_load(content) or {}
            elif config_path.suffix.lower() == '.json':
                data = json.loads(content)
            else:
                raise ValueError(f"Unsupported config file format: {config_path.suffix}")

        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file {config_path}: {e}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {config_path}: {e}")
        except OSError as e:
            raise ValueError(f"Error loading config file {config_path}: {e}")

        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        return data

    def _load_environment_variables(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {}

        env_mapping = {
            f"{self.ENV_PREFIX}DEFAULT_URL": "default_url",
            f"{self.ENV_PREFIX}HEADLESS": "headless",
            f"{self.ENV_PREFIX}REALTIME": "realtime",
            f"{self.ENV_PREFIX}NAVIGATION_TIMEOUT_MS": "navigation_timeout_ms",
            f"{self.ENV_PREFIX}HARD_TIMEOUT_MS": "hard_timeout_ms",
            f"{self.ENV_PREFIX}OUTPUT_DIR": "output_dir",
            f"{self.ENV_PREFIX}HTTP_HOST": "http_host",
            f"{self.ENV_PREFIX}HTTP_PORT": "http_port",
            f"{self.ENV_PREFIX}CHROME_PATH": "chrome_path",
            f"{self.ENV_PREFIX}IGNORE_PATTERNS": "capture.ignore_patterns",
            f"{self.ENV_PREFIX}HMR_PATTERNS": "capture.hmr_patterns",
            f"{self.ENV_PREFIX}FAILURE_CONSOLE_IGNORE": "capture.failure_console_ignore",
            f"{self.ENV_PREFIX}BODY_LIMIT_BYTES": "capture.body_limit_bytes",
            f"{self.ENV_PREFIX}BODY_TIMEOUT_S": "capture.body_timeout_s",
            f"{self.ENV_PREFIX}DOM_MAX_BYTES": "capture.dom_max_bytes",
            f"{self.ENV_PREFIX}MAX_ATTEMPTS": "connection.max_attempts",
            f"{self.ENV_PREFIX}RETRY_DELAY_S": "connection.retry_delay_s",
            f"{self.ENV_PREFIX}HANDSHAKE_TIMEOUT_S": "connection.handshake_timeout_s",
            f"{self.ENV_PREFIX}DISCOVERY_POLLS": "connection.discovery_polls",
            f"{self.ENV_PREFIX}DISCOVERY_INTERVAL_S": "connection.discovery_interval_s",
            f"{self.ENV_PREFIX}JOIN_HOST": "connection.join_host",
        }

        for env_var, config_path in env_mapping.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                converted_value = self._convert_env_value(env_value, config_path)
                self._set_nested_value(config, config_path, converted_value)

        return config

    def _convert_env_value(self, value: str, config_path: str) -> Any:
        """Convert environment variable string to appropriate type."""
        if config_path in self.BOOLEAN_KEYS:
            return value.lower() in ('true', '1', 'yes', 'on')

        if config_path.endswith(self.INTEGER_KEYS):
            return int(value)
        if config_path.endswith(self.FLOAT_KEYS):
            return float(value)

        # Comma separated
        if config_path.endswith(self.LIST_KEYS):
            return [item.strip() for item in value.split(",") if item.strip()]

        if config_path == "output_dir":
            return Path(value)

        return value

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration dictionaries, with override taking precedence."""
        if not override:
            return base

        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _drop_none(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for key, value in overrides.items():
            if isinstance(value, dict):
                value = self._drop_none(value)
                if not value:
                    continue
            elif value is None:
                continue
            result[key] = value
        return result


def load_configuration(
    config_file: Optional[Path] = None,
    cli_overrides: Optional[Dict[str, Any]] = None,
    search_paths: Optional[List[Path]] = None
) -> MonitorConfiguration:
    """Convenience function to load configuration.

    Args:
        config_file: Path to configuration file
        cli_overrides: CLI flag overrides
        search_paths: Paths to search for config files

    Returns:
        Loaded and merged configuration
    """
    loader = ConfigurationLoader()
    return loader.load_configuration(config_file, cli_overrides, search_paths)


def print_configuration(config: MonitorConfiguration, format: str = "yaml") -> str:
    """Render configuration for display.

    Args:
        config: Configuration to print
        format: Output format (yaml, json)

    Returns:
        Formatted configuration string
    """
    config_dict = config.model_dump(
        mode="json",
        exclude={'loaded_from', 'config_file_path'},
        exclude_none=False
    )

    if format.lower() == "json":
        return json.dumps(config_dict, indent=2, default=str)
    return yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=True)
