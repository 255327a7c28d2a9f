# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Configuration management for the ingestion server.

Values are resolved in order: defaults, YAML file, environment variables.
CLI options are applied on top by the caller.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".sensorsink" / "config.yaml"

WIRE_FORMATS = ("csv", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when the configuration file cannot be read or is invalid."""
    pass


@dataclass
class IngestConfig:
    """Server configuration container."""

    # Listener settings
    host: str = "0.0.0.0"
    port: int = 9000
    backlog: int = 128
    accept_poll_interval: float = 0.5  # seconds
    drain_timeout: float = 10.0  # seconds

    # Store settings
    db_path: str = "received_data.db"
    db_timeout: float = 30.0  # seconds
    max_consecutive_failures: int = 5

    # Connection settings
    idle_timeout: float = 300.0  # seconds
    poll_interval: float = 1.0  # seconds
    max_line_bytes: int = 64 * 1024
    wire_format: str = "csv"  # csv, json

    # Logging settings
    log_level: str = "INFO"
    debug: bool = False

    # Config file path
    config_path: Optional[Path] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None, use_env: bool = True) -> "IngestConfig":
        """
        Build a configuration from the YAML file and environment.

        Args:
            config_path: Explicit config file; must exist if given
            use_env: Apply SENSORSINK_* environment overrides

        Raises:
            ConfigError: If the file is missing (when explicit) or malformed
        """
        config = cls(config_path=Path(config_path) if config_path else None)
        if config.config_path is not None:
            if not config.config_path.exists():
                raise ConfigError(f"Config file not found: {config.config_path}")
            config.load_from_file()
        elif DEFAULT_CONFIG_PATH.exists():
            config.config_path = DEFAULT_CONFIG_PATH
            config.load_from_file()

        if use_env:
            config.load_from_env()
        return config

    def load_from_file(self) -> None:
        """Load configuration from YAML file."""
        try:
            with open(self.config_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not load config file {self.config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.config_path} must contain a mapping")

        # Server settings
        server = data.get("server") or {}
        self.host = server.get("host", self.host)
        self.port = server.get("port", self.port)
        self.backlog = server.get("backlog", self.backlog)
        self.accept_poll_interval = server.get("accept_poll_interval", self.accept_poll_interval)
        self.drain_timeout = server.get("drain_timeout", self.drain_timeout)

        # Store settings
        store = data.get("store") or {}
        self.db_path = str(store.get("path", self.db_path))
        self.db_timeout = store.get("timeout", self.db_timeout)
        self.max_consecutive_failures = store.get("max_consecutive_failures", self.max_consecutive_failures)

        # Connection settings
        connection = data.get("connection") or {}
        self.idle_timeout = connection.get("idle_timeout", self.idle_timeout)
        self.poll_interval = connection.get("poll_interval", self.poll_interval)
        self.max_line_bytes = connection.get("max_line_bytes", self.max_line_bytes)
        self.wire_format = connection.get("wire_format", self.wire_format)

        # Logging settings
        logging_section = data.get("logging") or {}
        self.log_level = str(logging_section.get("level", self.log_level)).upper()

        logger.debug(f"Loaded configuration from {self.config_path}")

    def load_from_env(self) -> None:
        """Load configuration from environment variables."""
        if env_host := os.environ.get("SENSORSINK_HOST"):
            self.host = env_host

        if env_port := os.environ.get("SENSORSINK_PORT"):
            self.port = _parse_env("SENSORSINK_PORT", env_port, int)

        if env_db := os.environ.get("SENSORSINK_DB"):
            self.db_path = env_db

        if env_idle := os.environ.get("SENSORSINK_IDLE_TIMEOUT"):
            self.idle_timeout = _parse_env("SENSORSINK_IDLE_TIMEOUT", env_idle, float)

        if env_drain := os.environ.get("SENSORSINK_DRAIN_TIMEOUT"):
            self.drain_timeout = _parse_env("SENSORSINK_DRAIN_TIMEOUT", env_drain, float)

        if env_format := os.environ.get("SENSORSINK_FORMAT"):
            self.wire_format = env_format.lower()

        if env_level := os.environ.get("SENSORSINK_LOG_LEVEL"):
            self.log_level = env_level.upper()

        if os.environ.get("SENSORSINK_DEBUG"):
            self.debug = True
            self.log_level = "DEBUG"

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by name."""
        value = getattr(self, key, None)
        return default if value is None else value

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            f.name: getattr(self, f.name) for f in fields(self)
            if f.name != "config_path"
        }

    def validate(self) -> List[str]:
        """
        Validate configuration values.

        Returns:
            List of problems, empty when the configuration is usable
        """
        errors = []

        if not isinstance(self.port, int) or not 0 <= self.port <= 65535:
            errors.append("port must be an integer between 0 and 65535")

        if not isinstance(self.backlog, int) or self.backlog <= 0:
            errors.append("backlog must be a positive integer")

        for name in ("idle_timeout", "poll_interval", "accept_poll_interval", "db_timeout"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"{name} must be positive")

        if not isinstance(self.drain_timeout, (int, float)) or self.drain_timeout < 0:
            errors.append("drain_timeout must be non-negative")

        if not isinstance(self.max_consecutive_failures, int) or self.max_consecutive_failures <= 0:
            errors.append("max_consecutive_failures must be a positive integer")

        if not isinstance(self.max_line_bytes, int) or self.max_line_bytes <= 0:
            errors.append("max_line_bytes must be a positive integer")

        if self.wire_format not in WIRE_FORMATS:
            errors.append(f"wire_format must be one of: {', '.join(WIRE_FORMATS)}")

        if self.log_level not in LOG_LEVELS:
            errors.append(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

        if not self.db_path:
            errors.append("db_path must not be empty")

        return errors


def _parse_env(name: str, value: str, cast):
    try:
        return cast(value)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
