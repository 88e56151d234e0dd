from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from .error_profiles import ErrorProfile, parse_error_profile

logger = logging.getLogger(__name__)

SUPPORTED_EXECUTORS = ("hello", "currency")
SUPPORTED_TASK_STORES = ("memory", "sqlite")
SUPPORTED_BUSY_POLICIES = ("reject", "queue")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class PushNotificationSettings:
    """Push notification specific settings."""

    enabled: bool
    webhook_timeout: float
    retry_attempts: int
    retry_delay: float
    max_retry_delay: float

    # Security
    hmac_secret: Optional[str]


@dataclass(frozen=True)
class Settings:
    """Simple settings container sourced from environment variables."""

    auth_token: Optional[str]

    # Server binding and advertised identity
    host: str
    port: int
    public_url: str
    agent_name: str
    agent_description: str

    # Agent executor selected once at startup
    executor: str

    # Task persistence
    task_store: str
    database_path: Path

    # Per-task concurrency: "reject" answers TaskBusy, "queue" waits up to busy_timeout
    busy_policy: str
    busy_timeout: float

    # Streaming
    streaming_enabled: bool
    stream_queue_size: int

    # Error handling profile
    error_profile: ErrorProfile

    # Logging
    log_level: str
    log_file: Optional[str]

    # Push notification settings
    push_notifications: PushNotificationSettings


def _get_push_notification_settings() -> PushNotificationSettings:
    """Get push notification specific settings from environment variables."""
    return PushNotificationSettings(
        enabled=_env_flag("PUSH_NOTIFICATIONS_ENABLED", "true"),
        webhook_timeout=float(os.getenv("PUSH_NOTIFICATION_WEBHOOK_TIMEOUT", "30")),
        retry_attempts=int(os.getenv("PUSH_NOTIFICATION_RETRY_ATTEMPTS", "3")),
        retry_delay=float(os.getenv("PUSH_NOTIFICATION_RETRY_DELAY", "1.0")),
        max_retry_delay=float(os.getenv("PUSH_NOTIFICATION_MAX_RETRY_DELAY", "60.0")),
        hmac_secret=os.getenv("PUSH_NOTIFICATION_HMAC_SECRET"),
    )


def validate_settings(settings: Settings) -> None:
    """Validate settings and raise ValueError for invalid configurations."""
    errors = []

    if settings.executor not in SUPPORTED_EXECUTORS:
        errors.append(
            f"A2A_EXECUTOR must be one of {', '.join(SUPPORTED_EXECUTORS)} (got '{settings.executor}')"
        )

    if settings.task_store not in SUPPORTED_TASK_STORES:
        errors.append(
            f"A2A_TASK_STORE must be one of {', '.join(SUPPORTED_TASK_STORES)} (got '{settings.task_store}')"
        )

    if settings.busy_policy not in SUPPORTED_BUSY_POLICIES:
        errors.append(
            f"A2A_BUSY_POLICY must be one of {', '.join(SUPPORTED_BUSY_POLICIES)} (got '{settings.busy_policy}')"
        )

    if settings.busy_timeout <= 0:
        errors.append("A2A_BUSY_TIMEOUT must be positive")

    if settings.stream_queue_size <= 0:
        errors.append("A2A_STREAM_QUEUE_SIZE must be positive")

    if not 0 < settings.port < 65536:
        errors.append("A2A_PORT must be between 1 and 65535")

    push_settings = settings.push_notifications

    if push_settings.enabled:
        if push_settings.webhook_timeout <= 0:
            errors.append("PUSH_NOTIFICATION_WEBHOOK_TIMEOUT must be positive")

        if push_settings.retry_attempts < 0:
            errors.append("PUSH_NOTIFICATION_RETRY_ATTEMPTS must be non-negative")

        if push_settings.retry_delay <= 0:
            errors.append("PUSH_NOTIFICATION_RETRY_DELAY must be positive")

        if push_settings.max_retry_delay < push_settings.retry_delay:
            errors.append(
                "PUSH_NOTIFICATION_MAX_RETRY_DELAY must not be smaller than PUSH_NOTIFICATION_RETRY_DELAY"
            )

        # Warning: if HMAC secret is not set, webhook bodies are not signed
        if not push_settings.hmac_secret:
            logger.debug(
                "PUSH_NOTIFICATION_HMAC_SECRET not set - webhook payloads will not be signed"
            )

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(
            f"  - {error}" for error in errors
        )
        raise ValueError(error_msg)


@lru_cache()
def get_settings() -> Settings:
    """Return cached and validated settings."""
    host = os.getenv("A2A_HOST", "localhost")
    port = int(os.getenv("A2A_PORT", "8001"))
    public_url = os.getenv("A2A_PUBLIC_URL") or f"http://{host}:{port}/a2a/rpc"

    settings = Settings(
        auth_token=os.getenv("A2A_AUTH_TOKEN") or None,
        host=host,
        port=port,
        public_url=public_url,
        agent_name=os.getenv("A2A_AGENT_NAME", "a2a-runtime-agent"),
        agent_description=os.getenv(
            "A2A_AGENT_DESCRIPTION", "A2A task runtime agent"
        ),
        executor=os.getenv("A2A_EXECUTOR", "hello").lower(),
        task_store=os.getenv("A2A_TASK_STORE", "memory").lower(),
        database_path=Path(os.getenv("A2A_DATABASE_PATH", "a2a_runtime.db")),
        busy_policy=os.getenv("A2A_BUSY_POLICY", "reject").lower(),
        busy_timeout=float(os.getenv("A2A_BUSY_TIMEOUT", "30")),
        streaming_enabled=_env_flag("A2A_STREAMING_ENABLED", "true"),
        stream_queue_size=int(os.getenv("A2A_STREAM_QUEUE_SIZE", "16")),
        error_profile=parse_error_profile(os.getenv("A2A_ERROR_PROFILE")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_file=os.getenv("LOG_FILE") or None,
        push_notifications=_get_push_notification_settings(),
    )

    validate_settings(settings)

    return settings


def create_example_env_file() -> str:
    """Generate an example .env file covering every supported setting."""
    return """# A2A runtime configuration
A2A_AUTH_TOKEN=your-auth-token-here
A2A_HOST=localhost
A2A_PORT=8001
A2A_PUBLIC_URL=http://localhost:8001/a2a/rpc
A2A_AGENT_NAME=a2a-runtime-agent
A2A_AGENT_DESCRIPTION="A2A task runtime agent"

# Agent executor: hello | currency
A2A_EXECUTOR=hello

# Task persistence: memory | sqlite
A2A_TASK_STORE=memory
A2A_DATABASE_PATH=a2a_runtime.db

# Concurrent calls on the same task id: reject | queue
A2A_BUSY_POLICY=reject
A2A_BUSY_TIMEOUT=30

# Streaming
A2A_STREAMING_ENABLED=true
A2A_STREAM_QUEUE_SIZE=16

# Error payloads: basic | extended-json
A2A_ERROR_PROFILE=basic

# Logging
LOG_LEVEL=INFO
LOG_FILE=

# Push Notification Configuration
PUSH_NOTIFICATIONS_ENABLED=true
PUSH_NOTIFICATION_WEBHOOK_TIMEOUT=30
PUSH_NOTIFICATION_RETRY_ATTEMPTS=3
PUSH_NOTIFICATION_RETRY_DELAY=1.0
PUSH_NOTIFICATION_MAX_RETRY_DELAY=60.0
PUSH_NOTIFICATION_HMAC_SECRET=your-hmac-secret-for-webhook-signing
"""
