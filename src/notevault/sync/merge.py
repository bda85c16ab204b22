"""Conflict detection and merge rules for replicated notes and notebooks.

Only semantic fields decide a conflict: content, title and the tag set
for notes; name, color and description for notebooks. Two versions that
differ in ``updated_at`` alone are the same document.
"""
import datetime
from typing import Dict, List, Optional, Sequence, TypeVar

from notevault.exceptions import SyncError, SyncErrorCode
from notevault.models.schema import Item, Note, Notebook, utc_now

CONTENT_SEPARATOR = "\n\n---\n\n"
RESOLVED_MARKER = "conflict_resolved"
RESOLVED_AT_KEY = "conflict_resolved_at"

I = TypeVar("I", Note, Notebook)


def _semantic_differs(local: Item, remote: Item) -> bool:
    if isinstance(local, Note) and isinstance(remote, Note):
        return (
            local.content != remote.content
            or local.title != remote.title
            or local.tag_set() != remote.tag_set()
        )
    if isinstance(local, Notebook) and isinstance(remote, Notebook):
        return (
            local.name != remote.name
            or local.color != remote.color
            or local.description != remote.description
        )
    return False


def has_conflict(local: Item, remote: Item) -> bool:
    """True if both timestamps and semantic fields differ."""
    if local.updated_at == remote.updated_at:
        return False
    return _semantic_differs(local, remote)


def merge_content(local: str, remote: str) -> str:
    """Combine two contents without dropping either.

    Equal contents are kept; a blank side yields the other side; otherwise
    local and remote are joined by a visible separator.
    """
    if local == remote:
        return local
    if not local.strip():
        return remote
    if not remote.strip():
        return local
    return f"{local}{CONTENT_SEPARATOR}{remote}"


def merge_tags(local: Sequence[str], remote: Sequence[str]) -> List[str]:
    """Deduplicated, sorted union."""
    return sorted(set(local) | set(remote))


def _merged_metadata(
    local: Item, remote: Item, resolved_at: datetime.datetime
) -> Dict:
    metadata = {**local.metadata, **remote.metadata}
    metadata[RESOLVED_MARKER] = True
    metadata[RESOLVED_AT_KEY] = resolved_at.isoformat()
    return metadata


def merge_notes(
    local: Note, remote: Note, resolved_at: Optional[datetime.datetime] = None
) -> Note:
    """Merge two versions of a note.

    The local version is the base; scalars come from the side with the
    strictly later ``updated_at``.
    """
    later = remote if remote.updated_at > local.updated_at else local
    return local.model_copy(
        deep=True,
        update={
            "content": merge_content(local.content, remote.content),
            "title": later.title,
            "tags": merge_tags(local.tags, remote.tags),
            "updated_at": later.updated_at,
            "is_pinned": local.is_pinned or remote.is_pinned,
            "is_trashed": local.is_trashed or remote.is_trashed,
            "metadata": _merged_metadata(local, remote, resolved_at or utc_now()),
        },
    )


def merge_notebooks(
    local: Notebook, remote: Notebook, resolved_at: Optional[datetime.datetime] = None
) -> Notebook:
    """Merge two versions of a notebook; the local ``parent_id`` is kept."""
    later = remote if remote.updated_at > local.updated_at else local
    return local.model_copy(
        deep=True,
        update={
            "name": later.name,
            "color": later.color,
            "description": later.description,
            "updated_at": later.updated_at,
            "is_trashed": local.is_trashed or remote.is_trashed,
            "metadata": _merged_metadata(local, remote, resolved_at or utc_now()),
        },
    )


def merge_items(
    local: Item, remote: Item, resolved_at: Optional[datetime.datetime] = None
) -> Item:
    if isinstance(local, Note) and isinstance(remote, Note):
        return merge_notes(local, remote, resolved_at)
    if isinstance(local, Notebook) and isinstance(remote, Notebook):
        return merge_notebooks(local, remote, resolved_at)
    raise SyncError(
        "Cannot merge items of different types",
        SyncErrorCode.TYPE_MISMATCH,
        {
            "local_type": type(local).__name__,
            "remote_type": type(remote).__name__,
        },
    )


def merge_arrays(local: Sequence[I], remote: Sequence[I]) -> List[I]:
    """Id-keyed union of two collections.

    A remote entry replaces the local one only when its ``updated_at`` is
    strictly later. Local order is kept; remote-only entries follow.
    """
    merged: Dict[str, I] = {item.id: item for item in local}
    for item in remote:
        existing = merged.get(item.id)
        if existing is None or item.updated_at > existing.updated_at:
            merged[item.id] = item
    return list(merged.values())
