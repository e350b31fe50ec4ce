"""Application configuration helpers."""

from __future__ import annotations

from .env import optional_env_int, require_env_vars
from .errors import ConfigurationError, MissingConfigurationError
from .extraction import ExtractionConfig, get_extraction_config
from .http_resilience import RateLimit, ResilienceConfig, RetryPolicy
from .logging import configure_logging
from .pipeline import (
    QUEUE_GROUP,
    BatchSizePolicy,
    ConfidenceThresholds,
    PipelineSettings,
    QueueRetryPolicy,
    get_pipeline_settings,
)
from .storage import DatabaseConfig, StorageConfig, get_database_config, get_storage_config

__all__ = [
    "QUEUE_GROUP",
    "BatchSizePolicy",
    "ConfidenceThresholds",
    "ConfigurationError",
    "DatabaseConfig",
    "ExtractionConfig",
    "MissingConfigurationError",
    "PipelineSettings",
    "QueueRetryPolicy",
    "RateLimit",
    "ResilienceConfig",
    "RetryPolicy",
    "StorageConfig",
    "configure_logging",
    "get_database_config",
    "get_extraction_config",
    "get_pipeline_settings",
    "get_storage_config",
    "optional_env_int",
    "require_env_vars",
]
