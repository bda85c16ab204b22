"""Data models for notevault."""

import datetime
import os
import re
import threading
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import BaseModel, Field, field_validator, model_validator

# Regex pattern for valid entity IDs (alphanumeric, underscores, hyphens)
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


def validate_safe_path_component(value: str, field_name: str = "value") -> str:
    """Validate that a value is safe to use as a filesystem path component.

    The file store names files after entity IDs, so IDs must not contain
    path separators, parent directory references or unusual characters.

    Args:
        value: The string to validate
        field_name: Name of the field for error messages

    Returns:
        The validated value (unchanged)

    Raises:
        ValueError: If the value contains unsafe characters
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")

    if ".." in value:
        raise ValueError(f"{field_name} cannot contain '..' (path traversal)")

    if "/" in value or "\\" in value:
        raise ValueError(f"{field_name} cannot contain path separators")

    if not SAFE_ID_PATTERN.match(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric characters, underscores and hyphens are allowed."
        )

    return value


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    Naive datetimes come back from SQLite and from hand-edited frontmatter;
    both are assumed to be UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based ID with guaranteed uniqueness.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc" where ssssss is the
        microsecond component and cccccc a counter that disambiguates IDs
        generated within the same microsecond.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        date_time = now.strftime("%Y%m%dT%H%M%S")
        return f"{date_time}{now.microsecond:06d}{_counter:06d}"


def _normalize_tags(tags: List[str]) -> List[str]:
    """Strip whitespace and drop empty/duplicate tags, keeping first-seen order."""
    seen: Set[str] = set()
    result: List[str] = []
    for tag in tags:
        name = str(tag).strip()
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


class ItemType(str, Enum):
    """Kind of entity a sync conflict refers to."""

    NOTE = "note"
    NOTEBOOK = "notebook"


class Note(BaseModel):
    """A note."""

    id: str = Field(default="", description="Unique ID; empty means assign on save")
    title: str = Field(default="Untitled", description="Title of the note")
    content: str = Field(default="", description="Markdown content of the note")
    tags: List[str] = Field(default_factory=list, description="Tags (order kept)")
    notebook_id: Optional[str] = Field(
        default=None, description="Notebook the note belongs to"
    )
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )
    is_pinned: bool = Field(default=False)
    is_trashed: bool = Field(default=False)
    revision: Optional[str] = Field(
        default=None, description="Backend revision token for optimistic concurrency"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Allow the empty placeholder, otherwise require a filesystem-safe ID."""
        if v == "":
            return v
        return validate_safe_path_component(v, "Note ID")

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return _normalize_tags(v)

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)

    def tag_set(self) -> Set[str]:
        """Tags as a set, for order-insensitive comparison."""
        return set(self.tags)


class Notebook(BaseModel):
    """A notebook; notebooks form a tree through ``parent_id``."""

    id: str = Field(default="", description="Unique ID; empty means assign on save")
    name: str = Field(..., description="Display name, unique among siblings")
    description: str = Field(default="")
    color: str = Field(default="default")
    parent_id: Optional[str] = Field(default=None, description="Parent notebook ID")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)
    is_trashed: bool = Field(default=False)
    revision: Optional[str] = Field(default=None)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if v == "":
            return v
        return validate_safe_path_component(v, "Notebook ID")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is not empty."""
        if not v.strip():
            raise ValueError("Notebook name cannot be empty")
        return v

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)


Item = Union[Note, Notebook]


def item_type_of(item: Item) -> ItemType:
    return ItemType.NOTE if isinstance(item, Note) else ItemType.NOTEBOOK


class ResolutionStrategy(str, Enum):
    """How a sync conflict is resolved."""

    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"
    CREATE_BOTH = "create_both"


# Strategies whose resolution must name the surviving item
STRATEGIES_REQUIRING_ITEM = frozenset(
    {ResolutionStrategy.USE_LOCAL, ResolutionStrategy.USE_REMOTE, ResolutionStrategy.MERGE}
)


class ConflictResolution(BaseModel):
    """The outcome applied to a sync conflict."""

    strategy: ResolutionStrategy
    resolved_item: Optional[Item] = None
    applied_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def _require_item(self) -> "ConflictResolution":
        if self.strategy in STRATEGIES_REQUIRING_ITEM and self.resolved_item is None:
            raise ValueError(
                f"resolved_item is required for strategy '{self.strategy.value}'"
            )
        return self


class SyncConflict(BaseModel):
    """A divergence between the local and remote version of one entity."""

    id: str
    type: ItemType
    item_id: str
    local_version: Item
    remote_version: Item
    detected_at: datetime.datetime = Field(default_factory=utc_now)
    resolved: bool = False
    resolution: Optional[ConflictResolution] = None

    model_config = {"extra": "forbid"}


class SyncStatus(str, Enum):
    """Sync engine state machine states."""

    IDLE = "idle"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    ERROR = "error"
    SUCCESS = "success"


class SyncState(BaseModel):
    """Snapshot of the sync engine state delivered to subscribers."""

    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[datetime.datetime] = None
    conflicts: List[SyncConflict] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    progress: int = 0
    total_items: int = 0
    synced_items: int = 0

    def unresolved_conflicts(self) -> List[SyncConflict]:
        return [c for c in self.conflicts if not c.resolved]


class RetryConfig(BaseModel):
    """Retry-with-backoff settings."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: float = Field(default=100, ge=0)
    max_delay_ms: float = Field(default=5000, ge=0)
    exponential_backoff: bool = True
    jitter: bool = True

    model_config = {"frozen": True}


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker settings."""

    enabled: bool = True
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout_ms: float = Field(default=30000, ge=0)

    model_config = {"frozen": True}


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreakerState(BaseModel):
    """Monitoring snapshot of a circuit breaker."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None  # clock reading, not wall time
