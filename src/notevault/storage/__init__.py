"""Storage backends for notevault."""

from notevault.storage.base import (
    BackendAdapter,
    Conflict,
    Failure,
    KeyValueAdapter,
    NotFound,
    Ok,
    StorageBackend,
)
from notevault.storage.file_adapter import create_file_backend
from notevault.storage.memory_adapter import MemoryAdapter, create_memory_backend
from notevault.storage.sql_adapter import SqlAdapter, create_sql_backend

__all__ = [
    "BackendAdapter",
    "Conflict",
    "Failure",
    "KeyValueAdapter",
    "MemoryAdapter",
    "NotFound",
    "Ok",
    "SqlAdapter",
    "StorageBackend",
    "create_file_backend",
    "create_memory_backend",
    "create_sql_backend",
]
