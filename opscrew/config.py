from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_APPROVAL_TIMEOUT_MS,
    DEFAULT_COMPLETION_TIMEOUT_MS,
    DEFAULT_EXPORT_LIMIT,
    DEFAULT_MODEL,
    DEFAULT_RATE_LIMIT_MAX_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_MS,
    DEFAULT_RETENTION_DAYS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis connections."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Event transport configuration settings."""

    backend: Literal["none", "inmemory", "redis"] = "none"
    topic_prefix: str = "opscrew"
    redis: RedisConfig = RedisConfig()


class CompletionConfig(BaseModel):
    """Language-model completion defaults."""

    model: str = DEFAULT_MODEL
    provider: str = "openai"
    timeout_ms: int = DEFAULT_COMPLETION_TIMEOUT_MS


class RateLimitConfig(BaseModel):
    backend: Literal["inmemory", "redis"] = "inmemory"
    default_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS
    default_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS


class ApprovalSettings(BaseModel):
    default_timeout_ms: int = DEFAULT_APPROVAL_TIMEOUT_MS


class AuditConfig(BaseModel):
    retention_days: int = DEFAULT_RETENTION_DAYS
    export_limit: int = DEFAULT_EXPORT_LIMIT


class OpsCrewConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    completion: CompletionConfig = CompletionConfig()
    rate_limiting: RateLimitConfig = RateLimitConfig()
    approval: ApprovalSettings = ApprovalSettings()
    audit: AuditConfig = AuditConfig()
    database_url: Optional[str] = None
    log_level: Literal["debug", "info", "warning", "error"] = "info"


def load_config(path: Optional[str] = None) -> OpsCrewConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to OPSCREW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("OPSCREW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = OpsCrewConfig(**data)
    else:
        config = OpsCrewConfig()

    env_db_url = os.getenv("OPSCREW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("OPSCREW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    env_model = os.getenv("OPSCREW_MODEL")
    if env_model:
        config.completion.model = env_model
    return config
