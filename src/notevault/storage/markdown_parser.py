"""Markdown parsing and serialization for notes.

Handles conversion between Note domain objects and markdown files
with YAML frontmatter. Kept separate from the file adapter so the
format is independently testable.
"""
import datetime
import logging
from typing import Any, Dict, List, Optional

import frontmatter

from notevault.models.schema import Note, ensure_timezone_aware, utc_now

logger = logging.getLogger(__name__)

# Frontmatter keys owned by the parser; every other key is note metadata
RESERVED_KEYS = frozenset(
    {"id", "title", "tags", "notebook", "created", "updated", "pinned", "trashed", "revision"}
)


def _parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Accept ISO strings and the datetimes YAML produces for unquoted values."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    if isinstance(value, datetime.date):
        return ensure_timezone_aware(
            datetime.datetime(value.year, value.month, value.day)
        )
    return ensure_timezone_aware(datetime.datetime.fromisoformat(str(value)))


def _parse_tags(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [t.strip() for t in raw.split(",") if t.strip()]
    if isinstance(raw, list):
        return [str(t).strip() for t in raw if str(t).strip()]
    return []


class MarkdownParser:
    """Parses and serializes notes as markdown with frontmatter.

    The body is the note content. Surrounding whitespace of the body is
    not preserved by the frontmatter format.
    """

    def parse_note(self, content: str) -> Note:
        """Parse a note from markdown content with YAML frontmatter.

        Args:
            content: Raw markdown string with ``---`` frontmatter delimiters.

        Returns:
            A fully populated Note domain object.

        Raises:
            ValueError: If the id is missing from the frontmatter.
        """
        post = frontmatter.loads(content)
        metadata = post.metadata

        note_id = metadata.get("id")
        if not note_id:
            raise ValueError("Note ID missing from frontmatter")
        note_id = str(note_id)

        title = metadata.get("title")
        if not title:
            for line in post.content.strip().split("\n"):
                if line.startswith("# "):
                    title = line[2:].strip()
                    break
        if not title:
            logger.warning(f"Note {note_id} has no title, using 'Untitled'")
            title = "Untitled"

        created_at = _parse_timestamp(metadata.get("created")) or utc_now()
        updated_at = _parse_timestamp(metadata.get("updated")) or created_at

        notebook_id = metadata.get("notebook")
        revision = metadata.get("revision")

        return Note(
            id=note_id,
            title=str(title),
            content=post.content.strip(),
            tags=_parse_tags(metadata.get("tags", [])),
            notebook_id=str(notebook_id) if notebook_id else None,
            created_at=created_at,
            updated_at=updated_at,
            is_pinned=bool(metadata.get("pinned", False)),
            is_trashed=bool(metadata.get("trashed", False)),
            revision=str(revision) if revision else None,
            metadata={k: v for k, v in metadata.items() if k not in RESERVED_KEYS},
        )

    def render_to_markdown(self, note: Note) -> str:
        """Convert a Note domain object to markdown with frontmatter."""
        metadata: Dict[str, Any] = {
            k: v for k, v in note.metadata.items() if k not in RESERVED_KEYS
        }
        metadata.update(
            {
                "id": note.id,
                "title": note.title,
                "tags": list(note.tags),
                "created": note.created_at.isoformat(),
                "updated": note.updated_at.isoformat(),
            }
        )
        if note.notebook_id:
            metadata["notebook"] = note.notebook_id
        if note.is_pinned:
            metadata["pinned"] = True
        if note.is_trashed:
            metadata["trashed"] = True
        if note.revision:
            metadata["revision"] = note.revision

        post = frontmatter.Post(note.content, **metadata)
        return frontmatter.dumps(post)
