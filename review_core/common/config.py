"""
Centralized Configuration for the Review Core

This module provides typed configuration for every service in the package.
Values come from defaults, an optional YAML or JSON file and environment
variables (highest priority), with validation of ranges and enumerations.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from review_core.common.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

FAILURE_POLICIES = ("decrement", "reset", "hold")


class _Section(BaseSettings):
    """Base for configuration sections; environment beats file values."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, dotenv_settings, init_settings, file_secret_settings


class CacheSettings(_Section):
    """Tiered cache configuration"""
    model_config = SettingsConfigDict(env_prefix="REVIEW_CACHE_")

    backend: str = "memory"
    memory_max_size: int = 10000
    cleanup_interval: int = 60
    key_prefix: str = "review:"
    l1_ttl: int = 300          # 5 minutes
    l2_ttl: int = 1800         # 30 minutes
    l3_ttl: int = 7200         # 2 hours
    l4_ttl: int = 86400        # 1 day
    tag_index_grace: int = 3600
    profile_ttl: int = 3600

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v.lower() not in ('memory', 'redis'):
            raise ValueError(f"Invalid cache backend: {v}. Must be 'memory' or 'redis'")
        return v.lower()

    @field_validator('l1_ttl', 'l2_ttl', 'l3_ttl', 'l4_ttl', 'profile_ttl')
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"TTL must be positive, got {v}")
        return v


class RedisSettings(_Section):
    """Redis configuration"""
    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    use_ssl: bool = False
    connection_timeout: int = 10


class DatabaseSettings(_Section):
    """Durable store configuration"""
    model_config = SettingsConfigDict(env_prefix="REVIEW_DB_")

    backend: str = "memory"
    url: str = "sqlite+aiosqlite:///./review_core.db"
    echo: bool = False
    pool_size: int = 5

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v.lower() not in ('memory', 'sql'):
            raise ValueError(f"Invalid store backend: {v}. Must be 'memory' or 'sql'")
        return v.lower()


class SchedulingSettings(_Section):
    """Forgetting-curve scheduling configuration"""
    model_config = SettingsConfigDict(env_prefix="REVIEW_SCHEDULING_")

    failure_policy: str = "decrement"
    overdue_grace_seconds: int = 0
    success_score_ratio: float = 0.7
    default_retention: float = 0.9
    default_level: int = 1

    @field_validator('failure_policy')
    @classmethod
    def validate_failure_policy(cls, v: str) -> str:
        if v.lower() not in FAILURE_POLICIES:
            raise ValueError(f"Invalid failure policy: {v}. Must be one of {FAILURE_POLICIES}")
        return v.lower()

    @field_validator('default_level')
    @classmethod
    def validate_level(cls, v: int) -> int:
        if not 1 <= v <= 8:
            raise ValueError(f"Level must be between 1 and 8, got {v}")
        return v

    @field_validator('success_score_ratio', 'default_retention')
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError(f"Ratio must be between 0 and 1, got {v}")
        return v


class FeedbackSettings(_Section):
    """Feedback aggregation configuration"""
    model_config = SettingsConfigDict(env_prefix="REVIEW_FEEDBACK_")

    window_ttl: int = 300      # 5 minutes
    negative_threshold: float = 0.6
    easy_threshold: float = 0.7
    high_urgency_threshold: float = 0.8

    @field_validator('negative_threshold', 'easy_threshold', 'high_urgency_threshold')
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError(f"Threshold must be between 0 and 1, got {v}")
        return v


class QueueSettings(_Section):
    """Adjustment queue configuration"""
    model_config = SettingsConfigDict(env_prefix="REVIEW_QUEUE_")

    lease_seconds: int = 60
    max_attempts: int = 3
    entry_ttl: int = 1800
    drain_batch: int = 50
    scan_window: int = 100

    @field_validator('max_attempts', 'lease_seconds', 'scan_window')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v


class PredictionSettings(_Section):
    """Difficulty prediction configuration"""
    model_config = SettingsConfigDict(env_prefix="REVIEW_PREDICTION_")

    ttl: int = 600
    default_baseline: float = 5.0
    target_success_low: float = 0.6
    target_success_high: float = 0.8
    global_scale: float = 5.0
    personal_weight: float = 0.5
    neutral_difficulty: float = 5.0
    min_samples: int = 3
    batch_concurrency: int = 10
    recent_user_days: int = 7
    adjustment_step: float = 1.0
    adaptation_rate: float = 0.1


class SessionSettings(_Section):
    """Session and token registry configuration"""
    model_config = SettingsConfigDict(env_prefix="REVIEW_SESSION_")

    session_ttl: int = 86400               # 24 hours
    default_blacklist_ttl: int = 604800    # 7 days
    secret_key: str = "CHANGE_ME_IN_PRODUCTION"
    algorithm: str = "HS256"
    access_token_minutes: int = 60
    refresh_token_days: int = 7


class TaskSettings(_Section):
    """Background task configuration"""
    model_config = SettingsConfigDict(env_prefix="REVIEW_TASKS_")

    broker_url: str = "redis://localhost:6379/1"
    result_backend: str = "redis://localhost:6379/2"
    sweep_interval: int = 300
    queue_interval: int = 30


class LoggingSettings(_Section):
    """Logging configuration"""
    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = "INFO"
    use_json: bool = False
    file: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


SECTIONS: Dict[str, Type[_Section]] = {
    "cache": CacheSettings,
    "redis": RedisSettings,
    "database": DatabaseSettings,
    "scheduling": SchedulingSettings,
    "feedback": FeedbackSettings,
    "queue": QueueSettings,
    "prediction": PredictionSettings,
    "sessions": SessionSettings,
    "tasks": TaskSettings,
    "logging": LoggingSettings,
}


class AppConfig(BaseModel):
    """Main application configuration"""
    app_name: str = "review-core"
    version: str = "0.1.0"
    cache: CacheSettings = Field(default_factory=CacheSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)
    feedback: FeedbackSettings = Field(default_factory=FeedbackSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    prediction: PredictionSettings = Field(default_factory=PredictionSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    tasks: TaskSettings = Field(default_factory=TaskSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class ConfigLoader:
    """
    Configuration loader for the application.

    Loads configuration from:
    1. Default values
    2. Config file (YAML or JSON)
    3. Environment variables (highest priority)
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the config loader.

        Args:
            config_path: Path to config file (YAML or JSON)
        """
        self.config_path = config_path or os.environ.get("REVIEW_CONFIG_PATH")

    def load(self) -> AppConfig:
        """
        Load configuration from all sources.

        Returns:
            A new AppConfig instance

        Raises:
            ConfigurationError: If a value fails validation
        """
        file_config: Dict[str, Any] = {}
        if self.config_path:
            file_config = self._load_from_file(self.config_path)

        try:
            sections = {
                name: section_cls(**(file_config.get(name) or {}))
                for name, section_cls in SECTIONS.items()
            }
            top_level = {k: v for k, v in file_config.items() if k not in SECTIONS}
            return AppConfig(**top_level, **sections)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    def _load_from_file(self, path: str) -> Dict[str, Any]:
        """
        Load configuration from a file.

        Args:
            path: Path to config file

        Returns:
            Loaded configuration dictionary (empty when unreadable)
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        try:
            with open(path, 'r') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    return yaml.safe_load(f) or {}
                if path.suffix.lower() == '.json':
                    return json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            return {}

        logger.warning(f"Unsupported config file format: {path.suffix}")
        return {}


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load a fresh configuration from defaults, file and environment."""
    return ConfigLoader(config_path).load()


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the process configuration, loading it on first use.

    Only entrypoints (the worker tasks) should call this; services receive
    their settings explicitly.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config
