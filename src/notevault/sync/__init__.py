"""Replica synchronization: conflict detection, resolution and merge."""

from notevault.sync.engine import SyncEngine, SyncResult
from notevault.sync.merge import has_conflict, merge_arrays, merge_items

__all__ = ["SyncEngine", "SyncResult", "has_conflict", "merge_arrays", "merge_items"]
