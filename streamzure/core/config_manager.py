"""
Configuration management for StreamZure.

Handles loading, validation, and access to transfer configuration, and turns
it into the request options the blob clients consume.
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..blob.models import MAX_APPEND_BLOCK_SIZE, MAX_BLOCK_SIZE, MIN_STREAM_WRITE_SIZE, LocationMode
from ..blob.options import BlobRequestOptions
from ..blob.retry import ExponentialRetry, LinearRetry, NoRetry, RetryDefaults, RetryPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "STREAMZURE_"


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RetryPolicyType(str, Enum):
    """Supported retry policies."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "json"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'streamzure.blob.attempt': 'DEBUG'}"
    )

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v


class RetryConfigModel(BaseModel):
    """Retry configuration."""
    policy: RetryPolicyType = RetryPolicyType.EXPONENTIAL
    max_attempts: int = Field(default=RetryDefaults.MAX_ATTEMPTS, ge=0)
    backoff_seconds: float = Field(default=RetryDefaults.BACKOFF, ge=0.0)
    max_backoff_seconds: float = Field(default=RetryDefaults.MAX_BACKOFF, ge=0.0)

    def build_policy(self) -> RetryPolicy:
        """Create the configured retry policy."""
        if self.policy == RetryPolicyType.NONE:
            return NoRetry()
        if self.policy == RetryPolicyType.LINEAR:
            return LinearRetry(max_attempts=self.max_attempts, backoff=self.backoff_seconds)
        return ExponentialRetry(
            max_attempts=self.max_attempts,
            backoff=self.backoff_seconds,
            max_backoff=self.max_backoff_seconds,
        )


class TransferConfig(BaseModel):
    """Transfer behaviour."""
    stream_write_size_in_bytes: int = Field(
        default=MAX_APPEND_BLOCK_SIZE,
        ge=MIN_STREAM_WRITE_SIZE,
        le=MAX_BLOCK_SIZE,
        description="Write-stream unit size; append and page streams cap it at 4 MiB"
    )
    use_transactional_md5: bool = False
    store_blob_content_md5: bool = False
    disable_content_md5_validation: bool = False
    absorb_conditional_errors_on_retry: bool = False
    location_mode: LocationMode = LocationMode.PRIMARY_ONLY
    maximum_execution_time: Optional[float] = Field(default=None, gt=0.0)


class StreamZureConfig(BaseModel):
    """Main StreamZure configuration schema."""

    version: str = Field(default="0.1.0", description="Configuration version")

    transfer: TransferConfig = Field(default_factory=TransferConfig)

    retry: RetryConfigModel = Field(default_factory=RetryConfigModel)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version format."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must be in format x.y.z")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version components must be numeric")
        return v

    def to_request_options(self) -> BlobRequestOptions:
        """Build the default request options for blob clients."""
        transfer = self.transfer
        return BlobRequestOptions(
            retry_policy=self.retry.build_policy(),
            location_mode=LocationMode(transfer.location_mode),
            use_transactional_md5=transfer.use_transactional_md5,
            store_blob_content_md5=transfer.store_blob_content_md5,
            disable_content_md5_validation=transfer.disable_content_md5_validation,
            absorb_conditional_errors_on_retry=transfer.absorb_conditional_errors_on_retry,
            stream_write_size_in_bytes=transfer.stream_write_size_in_bytes,
            maximum_execution_time=transfer.maximum_execution_time,
        )

    model_config = ConfigDict(use_enum_values=True)


def _env_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


class ConfigManager:
    """
    Manages StreamZure configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. Explicit overrides (CLI arguments or code)
    2. Environment variables (STREAMZURE_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    def __init__(self):
        self._config: Optional[StreamZureConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None
    ) -> StreamZureConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            overrides: Dictionary of explicit overrides

        Returns:
            Validated StreamZureConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        logger.info("Loading StreamZure configuration")

        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = self._load_from_file(config_file)
            self._config_file = Path(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.info(f"Applied {len(env_config)} environment variable overrides")

        if overrides:
            config_dict = self._merge_configs(config_dict, overrides)
            logger.info(f"Applied {len(overrides)} explicit overrides")

        try:
            self._config = StreamZureConfig(**config_dict)
            logger.info("Configuration validated successfully")
            self._log_configuration()
            return self._config
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        # Transfer configuration
        if write_size := os.getenv(f"{ENV_PREFIX}STREAM_WRITE_SIZE"):
            config.setdefault("transfer", {})["stream_write_size_in_bytes"] = int(write_size)
        if md5 := os.getenv(f"{ENV_PREFIX}USE_TRANSACTIONAL_MD5"):
            config.setdefault("transfer", {})["use_transactional_md5"] = _env_bool(md5)
        if store_md5 := os.getenv(f"{ENV_PREFIX}STORE_BLOB_CONTENT_MD5"):
            config.setdefault("transfer", {})["store_blob_content_md5"] = _env_bool(store_md5)
        if absorb := os.getenv(f"{ENV_PREFIX}ABSORB_CONDITIONAL_ERRORS"):
            config.setdefault("transfer", {})["absorb_conditional_errors_on_retry"] = _env_bool(absorb)
        if location_mode := os.getenv(f"{ENV_PREFIX}LOCATION_MODE"):
            config.setdefault("transfer", {})["location_mode"] = location_mode.lower()

        # Retry configuration
        if policy := os.getenv(f"{ENV_PREFIX}RETRY_POLICY"):
            config.setdefault("retry", {})["policy"] = policy.lower()
        if max_attempts := os.getenv(f"{ENV_PREFIX}RETRY_MAX_ATTEMPTS"):
            config.setdefault("retry", {})["max_attempts"] = int(max_attempts)
        if backoff := os.getenv(f"{ENV_PREFIX}RETRY_BACKOFF"):
            config.setdefault("retry", {})["backoff_seconds"] = float(backoff)

        # Logging configuration
        if log_level := os.getenv(f"{ENV_PREFIX}LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_format := os.getenv(f"{ENV_PREFIX}LOG_FORMAT"):
            config.setdefault("logging", {})["format"] = log_format.lower()
        if log_file := os.getenv(f"{ENV_PREFIX}LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _log_configuration(self) -> None:
        if not self._config:
            return
        logger.debug(f"Active configuration: {json.dumps(self._config.model_dump(), indent=2)}")

    def get_config(self) -> StreamZureConfig:
        """
        Get the loaded configuration.

        Returns:
            StreamZureConfig instance

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> StreamZureConfig:
        """
        Reload configuration from the same sources.

        Returns:
            Reloaded StreamZureConfig instance
        """
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
