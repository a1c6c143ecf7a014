"""
Configuration Management for oteltape
=====================================

Split into small components:
- ConfigLoader: loads YAML/JSON files and OTELTAPE_* environment variables
- ConfigValidator: validates values, returns warnings and errors
- ConfigConverter: turns a merged dict into a TapeConfig
"""

from __future__ import annotations

import json
import logging
import os
from copy import deepcopy
from dataclasses import asdict, dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigLoadError, ConfigurationError
from .types import PayloadFormat, RetentionPolicy

# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass
class StorageConfig:
    """Object store backend"""

    backend: str = "memory"  # memory, filesystem
    root_dir: str = ".oteltape/objects"
    fsync: bool = True


@dataclass
class CaptureDefaults:
    """Defaults applied when a capture config leaves them unset"""

    compression_enabled: bool = True
    payload_format: str = PayloadFormat.JSON.value
    compression_level: int = 6


@dataclass
class ReplayDefaults:
    """Replay pacer and ingestion sink settings"""

    ingest_endpoint: str = "http://localhost:4318"
    batch_timeout_seconds: float = 10.0
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5
    max_gap_seconds: float | None = None
    persist_replays: bool = False


@dataclass
class RetentionConfig:
    """Retention windows in days per signal type; 0 disables deletion"""

    enabled: bool = False
    interval_seconds: float = 3600.0
    traces_days: float = 7.0
    metrics_days: float = 30.0
    logs_days: float = 7.0

    def to_policy(self) -> RetentionPolicy:
        def window(days: float) -> timedelta | None:
            return timedelta(days=days) if days > 0 else None

        return RetentionPolicy(
            traces=window(self.traces_days),
            metrics=window(self.metrics_days),
            logs=window(self.logs_days),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json_format: bool = False
    log_dir: str | None = None


@dataclass
class TapeConfig:
    """Main oteltape configuration"""

    environment: str = "development"
    storage: StorageConfig = field(default_factory=StorageConfig)
    capture: CaptureDefaults = field(default_factory=CaptureDefaults)
    replay: ReplayDefaults = field(default_factory=ReplayDefaults)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# ConfigLoader - Handles file I/O and environment variables
# =============================================================================


class ConfigLoader:
    """
    Loads configuration from files (YAML/JSON) and environment variables.
    """

    ENV_MAPPINGS = {
        "ENVIRONMENT": ("environment",),
        "STORAGE_BACKEND": ("storage", "backend"),
        "STORAGE_ROOT": ("storage", "root_dir"),
        "COMPRESSION_ENABLED": ("capture", "compression_enabled"),
        "PAYLOAD_FORMAT": ("capture", "payload_format"),
        "INGEST_ENDPOINT": ("replay", "ingest_endpoint"),
        "BATCH_TIMEOUT_SECONDS": ("replay", "batch_timeout_seconds"),
        "MAX_RETRIES": ("replay", "max_retries"),
        "MAX_GAP_SECONDS": ("replay", "max_gap_seconds"),
        "RETENTION_ENABLED": ("retention", "enabled"),
        "RETENTION_INTERVAL_SECONDS": ("retention", "interval_seconds"),
        "RETENTION_TRACES_DAYS": ("retention", "traces_days"),
        "RETENTION_METRICS_DAYS": ("retention", "metrics_days"),
        "RETENTION_LOGS_DAYS": ("retention", "logs_days"),
        "LOG_LEVEL": ("logging", "level"),
        "LOG_FORMAT": ("logging", "json_format"),
        "LOG_DIR": ("logging", "log_dir"),
    }

    def __init__(self, env_prefix: str = "OTELTAPE_"):
        self.env_prefix = env_prefix
        self._logger = logging.getLogger("oteltape.config.loader")

    def load_from_file(self, path: str) -> dict[str, Any]:
        """Load configuration from a YAML or JSON file"""
        file_path = Path(path)

        if not file_path.exists():
            raise ConfigLoadError(config_path=path, reason="File does not exist")

        suffix = file_path.suffix.lower()
        if suffix not in (".yaml", ".yml", ".json"):
            raise ConfigLoadError(config_path=path, reason=f"Unsupported file format: {suffix}")

        try:
            content = file_path.read_text(encoding="utf-8")
            if suffix == ".json":
                loaded = json.loads(content)
            else:
                loaded = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigLoadError(config_path=path, reason=f"YAML error: {e}", cause=e) from e
        except json.JSONDecodeError as e:
            raise ConfigLoadError(config_path=path, reason=f"JSON error: {e}", cause=e) from e
        except OSError as e:
            raise ConfigLoadError(config_path=path, reason=str(e), cause=e) from e

        if not isinstance(loaded, dict):
            raise ConfigLoadError(config_path=path, reason="Top-level value must be a mapping")
        return loaded

    def load_from_env(self) -> dict[str, Any]:
        """Load configuration from environment variables"""
        config: dict[str, Any] = {}

        for suffix, config_path in self.ENV_MAPPINGS.items():
            value = os.environ.get(f"{self.env_prefix}{suffix}")
            if value is None:
                continue
            if suffix == "LOG_FORMAT":
                value = str(value.lower() == "json")
            self._set_nested(config, config_path, value)

        return config

    def _set_nested(self, config: dict[str, Any], path: tuple, value: Any) -> None:
        """Set a value in a nested dictionary path"""
        current = config
        for key in path[:-1]:
            current = current.setdefault(key, {})
        current[path[-1]] = value

    def deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries"""
        result = deepcopy(base)

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self.deep_merge(result[key], value)
            else:
                result[key] = deepcopy(value)

        return result


# =============================================================================
# ConfigConverter - dict -> TapeConfig
# =============================================================================


def _coerce(value: Any, default: Any) -> Any:
    """Coerce environment strings to the type of the field default."""
    if not isinstance(value, str):
        return value
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float) or default is None:
        if default is None and value.strip().lower() in ("", "none", "null"):
            return None
        try:
            return float(value)
        except ValueError:
            return value
    return value


class ConfigConverter:
    """Converts a configuration dictionary into a TapeConfig"""

    SECTIONS = {
        "storage": StorageConfig,
        "capture": CaptureDefaults,
        "replay": ReplayDefaults,
        "retention": RetentionConfig,
        "logging": LoggingConfig,
    }

    @classmethod
    def dict_to_config(cls, config_dict: dict[str, Any]) -> TapeConfig:
        config = TapeConfig()
        if "environment" in config_dict:
            config.environment = str(config_dict["environment"])

        for section_name, section_cls in cls.SECTIONS.items():
            section_dict = config_dict.get(section_name) or {}
            if not isinstance(section_dict, dict):
                raise ConfigurationError(
                    message=f"Configuration section '{section_name}' must be a mapping",
                    details={"section": section_name},
                )
            defaults = section_cls()
            known = {f.name for f in fields(section_cls)}
            unknown = set(section_dict) - known
            if unknown:
                logging.getLogger("oteltape.config").warning(
                    f"Ignoring unknown keys in '{section_name}': {sorted(unknown)}"
                )
            try:
                kwargs = {
                    key: _coerce(value, getattr(defaults, key))
                    for key, value in section_dict.items()
                    if key in known
                }
            except ValueError as e:
                raise ConfigurationError(
                    message=f"Invalid value in configuration section '{section_name}'",
                    details={"section": section_name, "error": str(e)},
                    cause=e,
                ) from e
            setattr(config, section_name, section_cls(**{**asdict(defaults), **kwargs}))

        return config


# =============================================================================
# ConfigValidator - Validates configuration values
# =============================================================================


class ConfigValidator:
    """Validates configuration values."""

    VALID_ENVIRONMENTS = {"development", "staging", "production", "test"}
    VALID_BACKENDS = {"memory", "filesystem"}
    VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

    def validate(self, config: TapeConfig) -> tuple[list[str], list[str]]:
        """Return (warnings, errors)"""
        warnings: list[str] = []
        errors: list[str] = []

        if config.environment not in self.VALID_ENVIRONMENTS:
            warnings.append(f"Unknown environment: {config.environment}")

        if config.storage.backend not in self.VALID_BACKENDS:
            errors.append(
                f"Invalid storage backend: {config.storage.backend}. "
                f"Must be one of: {sorted(self.VALID_BACKENDS)}"
            )
        if config.storage.backend == "memory" and config.environment == "production":
            warnings.append("In-memory object store loses all captures on restart")

        if config.capture.payload_format not in {f.value for f in PayloadFormat}:
            errors.append(f"Invalid payload format: {config.capture.payload_format}")
        if not 0 <= config.capture.compression_level <= 9:
            errors.append("compression_level must be between 0 and 9")

        if config.replay.batch_timeout_seconds <= 0:
            errors.append("batch_timeout_seconds must be positive")
        if config.replay.max_retries < 0:
            errors.append("max_retries must not be negative")
        if config.replay.retry_backoff_seconds < 0:
            errors.append("retry_backoff_seconds must not be negative")
        if config.replay.max_gap_seconds is not None and config.replay.max_gap_seconds < 0:
            errors.append("max_gap_seconds must not be negative")

        if config.retention.interval_seconds <= 0:
            errors.append("retention interval_seconds must be positive")
        for name in ("traces_days", "metrics_days", "logs_days"):
            if getattr(config.retention, name) < 0:
                errors.append(f"retention {name} must not be negative")

        if config.logging.level.upper() not in self.VALID_LOG_LEVELS:
            errors.append(f"Invalid log level: {config.logging.level}")

        return warnings, errors


# =============================================================================
# Public helpers
# =============================================================================


def get_default_config() -> TapeConfig:
    """Get default configuration"""
    return TapeConfig()


def load_config(config_path: str | None = None, env_prefix: str = "OTELTAPE_") -> TapeConfig:
    """
    Load configuration from file and environment, environment winning.

    Args:
        config_path: Path to a YAML or JSON file (optional)
        env_prefix: Environment variable prefix

    Returns:
        Validated configuration

    Raises:
        ConfigLoadError: the file cannot be read or parsed
        ConfigurationError: validation failed
    """
    loader = ConfigLoader(env_prefix=env_prefix)
    config_dict: dict[str, Any] = {}

    if config_path:
        config_dict = loader.deep_merge(config_dict, loader.load_from_file(config_path))
    config_dict = loader.deep_merge(config_dict, loader.load_from_env())

    config = ConfigConverter.dict_to_config(config_dict)

    warnings, errors = ConfigValidator().validate(config)
    for warning in warnings:
        logging.getLogger("oteltape.config").warning(warning)
    if errors:
        raise ConfigurationError(
            message="Configuration validation failed",
            details={"errors": errors},
            suggestions=["Fix the configuration errors listed above"],
        )

    return config
