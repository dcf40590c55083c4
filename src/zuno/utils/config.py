"""
Configuration loader for Zuno.

This module provides configuration management with:
- Multiple configuration sources (dicts, JSON, YAML, TOML files, env vars)
- Schema validation through pydantic
- Type coercion of environment values
- Priority-ordered merging
"""

import json
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import toml
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .logging import get_logger, setup_logging


logger = get_logger("zuno.config")

ENV_PREFIX = "ZUNO_"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class ServerConfig(BaseModel):
    """Authoritative server configuration."""
    log_capacity: int = 1000
    max_body_bytes: int = 512 * 1024  # 512KB
    heartbeat_interval: float = 15.0
    route_prefix: str = "/zuno"

    @field_validator('log_capacity', 'max_body_bytes')
    @classmethod
    def validate_positive(cls, v):
        """Capacities must hold at least one item."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator('heartbeat_interval')
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator('route_prefix')
    @classmethod
    def normalize_prefix(cls, v):
        """Ensure a single leading slash and no trailing slash."""
        v = "/" + v.strip("/")
        return "" if v == "/" else v


class ClientConfig(BaseModel):
    """Client (browser tab / process) configuration."""
    sse_url: Optional[str] = None
    sync_url: Optional[str] = None
    snapshot_url: Optional[str] = None
    channel_name: Optional[str] = None
    optimistic: bool = True
    client_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    request_timeout: float = 30.0
    bootstrap_timeout: Optional[float] = None
    conflict_strategy: str = "server_wins"

    @field_validator('reconnect_initial_delay', 'reconnect_max_delay', 'request_timeout')
    @classmethod
    def validate_delay(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator('bootstrap_timeout')
    @classmethod
    def validate_bootstrap(cls, v):
        if v is not None and v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator('conflict_strategy')
    @classmethod
    def validate_strategy(cls, v):
        """Validate conflict strategy name."""
        valid = ("server_wins", "client_wins", "merge")
        if v.lower() not in valid:
            raise ValueError(f"Invalid conflict strategy: {v}")
        return v.lower()

    @model_validator(mode='after')
    def check_backoff_bounds(self):
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_initial_delay")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "console"
    directory: Optional[Path] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v not in ("json", "console"):
            raise ValueError(f"Invalid log format: {v}")
        return v

    def apply(self, app_name: str = "zuno") -> Dict[str, Any]:
        """Configure logging with these settings."""
        return setup_logging(
            app_name=app_name,
            log_level=self.level,
            log_dir=self.directory,
            enable_json=self.format == "json",
        )


class ZunoConfig(BaseModel):
    """Main Zuno configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(validate_assignment=True)


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[ZunoConfig] = None

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type or self._detect_source_type(path)
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> ZunoConfig:
        """
        Load configuration from all sources.

        Sources are merged lowest priority first, then environment variables
        are applied on top.

        Returns:
            Merged configuration
        """
        merged_data: Dict[str, Any] = {}

        for source in sorted(self._sources, key=lambda s: s.priority):
            merged_data = self._deep_merge(merged_data, self._load_source(source))

        merged_data = self._deep_merge(merged_data, self._load_env_vars())

        try:
            self._config = ZunoConfig(**merged_data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"{loc}: {error['msg']}")
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}"
            ) from e

        logger.info("configuration_loaded", sources=len(self._sources))
        return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        try:
            if source.source_type == "json":
                return json.loads(content)
            elif source.source_type == "yaml":
                return yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                return toml.loads(content)
        except (json.JSONDecodeError, yaml.YAMLError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Failed to parse {source.path}: {e}") from e

        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _load_env_vars(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        The first segment after the prefix names the section, the rest is the
        field name, e.g. ZUNO_CLIENT_SYNC_URL -> client.sync_url. Values are
        left as strings for the models to coerce per field type.
        """
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self.env_prefix):
                continue
            name = key[len(self.env_prefix):].lower()
            section, _, field_name = name.partition("_")
            if not field_name:
                continue
            result.setdefault(section, {})[field_name] = value

        return result

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> ZunoConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> ZunoConfig:
    """
    Load configuration from the given files plus environment variables.

    Args:
        config_paths: Configuration files, later files win
        extra_config: Extra configuration merged above all files

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader()

    for i, path in enumerate(config_paths or []):
        loader.add_source(path, priority=10 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'ZunoConfig',
    'ServerConfig',
    'ClientConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
]
