"""Configuration module for notevault."""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notevault.models.schema import (
    CircuitBreakerConfig,
    ResolutionStrategy,
    RetryConfig,
)

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the data directory
_USER_ENV = Path.home() / ".notevault" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class StorageBackendKind(str, Enum):
    """Storage medium, chosen once at startup."""

    MEMORY = "memory"  # Volatile, for tests and scratch sessions
    SQL = "sql"  # Structured store with optimistic concurrency
    FILES = "files"  # Markdown/YAML files, last-write-wins


class NotevaultConfig(BaseModel):
    """Configuration for the storage and sync core."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_BASE_DIR", "."))
    )
    # Storage configuration
    storage_backend: StorageBackendKind = Field(
        default_factory=lambda: StorageBackendKind(
            os.getenv("NOTEVAULT_STORAGE_BACKEND", "sql").lower()
        )
    )
    data_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_DATA_DIR", "data/notes"))
    )
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEVAULT_DATABASE_PATH", "data/db/notevault.db")
        )
    )
    # Number of backup copies the file store keeps per file
    file_backup_count: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_FILE_BACKUP_COUNT", "3"))
    )
    # Retry configuration
    retry_max_attempts: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_RETRY_MAX_ATTEMPTS", "3"))
    )
    retry_base_delay_ms: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTEVAULT_RETRY_BASE_DELAY_MS", "100")
        )
    )
    retry_max_delay_ms: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTEVAULT_RETRY_MAX_DELAY_MS", "5000")
        )
    )
    retry_exponential_backoff: bool = Field(
        default_factory=lambda: _env_bool("NOTEVAULT_RETRY_EXPONENTIAL", "true")
    )
    retry_jitter: bool = Field(
        default_factory=lambda: _env_bool("NOTEVAULT_RETRY_JITTER", "true")
    )
    # Per-attempt timeout for a single storage call
    operation_timeout_ms: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTEVAULT_OPERATION_TIMEOUT_MS", "10000")
        )
    )
    # Circuit breaker configuration
    circuit_breaker_enabled: bool = Field(
        default_factory=lambda: _env_bool("NOTEVAULT_CIRCUIT_BREAKER_ENABLED", "true")
    )
    circuit_failure_threshold: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTEVAULT_CIRCUIT_FAILURE_THRESHOLD", "5")
        )
    )
    circuit_reset_timeout_ms: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTEVAULT_CIRCUIT_RESET_TIMEOUT_MS", "30000")
        )
    )
    # Read cache
    cache_max_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_CACHE_MAX_SIZE", "100"))
    )
    cache_ttl_seconds: float = Field(
        default_factory=lambda: float(os.getenv("NOTEVAULT_CACHE_TTL_SECONDS", "300"))
    )
    # Sync configuration
    default_sync_strategy: ResolutionStrategy = Field(
        default_factory=lambda: ResolutionStrategy(
            os.getenv("NOTEVAULT_SYNC_STRATEGY", "merge").lower()
        )
    )
    # Log directory (None means ~/.notevault/logs)
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEVAULT_LOG_DIR"))
            if os.getenv("NOTEVAULT_LOG_DIR")
            else None
        )
    )

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def _validate_resilience_config(self) -> "NotevaultConfig":
        """Validate retry and circuit breaker settings."""
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.retry_base_delay_ms < 0 or self.retry_max_delay_ms < 0:
            raise ValueError("retry delays must be non-negative")
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError("retry_max_delay_ms must be >= retry_base_delay_ms")
        if self.operation_timeout_ms <= 0:
            raise ValueError("operation_timeout_ms must be > 0")
        if self.circuit_failure_threshold < 1:
            raise ValueError("circuit_failure_threshold must be >= 1")
        if self.cache_max_size < 0:
            raise ValueError("cache_max_size must be >= 0")
        if self.file_backup_count < 0:
            raise ValueError("file_backup_count must be >= 0")

        if self.operation_timeout_ms < self.retry_base_delay_ms:
            logger.warning(
                "operation_timeout_ms (%.0f) is shorter than retry_base_delay_ms "
                "(%.0f); attempts may time out before the first backoff elapses.",
                self.operation_timeout_ms,
                self.retry_base_delay_ms,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            exponential_backoff=self.retry_exponential_backoff,
            jitter=self.retry_jitter,
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            enabled=self.circuit_breaker_enabled,
            failure_threshold=self.circuit_failure_threshold,
            reset_timeout_ms=self.circuit_reset_timeout_ms,
        )


# Default config instance, read by the CLI composition root
config = NotevaultConfig()
