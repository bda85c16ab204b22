"""Desktop-style file store.

Layout under the data directory::

    notes/<id>.md        one markdown file per note, YAML frontmatter
    notebooks.yaml       every notebook in one YAML list
    settings.yaml        settings as {category: {key: value}}
    backups/             rotated copies taken before overwrite or delete

Writes are last-write-wins: revision tokens are assigned but never checked.
Every write goes to a temporary file first and is renamed into place.
"""
import logging
import os
import re
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from notevault.exceptions import ErrorCode, RepositoryError
from notevault.models.schema import Note, Notebook, validate_safe_path_component
from notevault.resilience.cancellation import current_token, run_in_worker
from notevault.storage.base import (
    AdapterResult,
    BackendAdapter,
    KeyValueAdapter,
    NotFound,
    Ok,
    StorageBackend,
    next_revision,
)
from notevault.storage.markdown_parser import MarkdownParser

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_COUNT = 3

_BACKUP_STAMP = r"\d{8}T\d{12}"


class FileStore:
    """Directory handling shared by the file adapters.

    Args:
        data_dir: Root directory of the store.
        backup_count: Backups kept per file; 0 disables backups.
    """

    def __init__(
        self, data_dir: Union[str, Path], backup_count: int = DEFAULT_BACKUP_COUNT
    ) -> None:
        self.data_dir = Path(data_dir)
        self.notes_dir = self.data_dir / "notes"
        self.backup_dir = self.data_dir / "backups"
        self.notebooks_file = self.data_dir / "notebooks.yaml"
        self.settings_file = self.data_dir / "settings.yaml"
        self.backup_count = backup_count
        self.file_lock = threading.RLock()

    def ensure_dirs(self) -> None:
        self.notes_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def note_path(self, note_id: str) -> Path:
        validate_safe_path_component(note_id, "Note ID")
        return self.notes_dir / f"{note_id}.md"

    def atomic_write(self, path: Path, text: str) -> None:
        """Write ``text`` to a temp file and rename it over ``path``."""
        temp_path = path.with_name(f".{path.name}.tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(path)
        finally:
            if temp_path.exists():
                temp_path.unlink()

    def backup(self, path: Path) -> Optional[Path]:
        """Copy an existing file into the backup directory and rotate."""
        if self.backup_count <= 0 or not path.exists():
            return None
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        backup_path = self.backup_dir / f"{path.stem}-{timestamp}{path.suffix}"
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, backup_path)
        logger.debug(f"Created backup: {backup_path}")
        self._rotate_backups(path)
        return backup_path

    def backups_of(self, path: Path) -> List[Path]:
        """Backups of ``path``, newest first."""
        pattern = re.compile(
            rf"^{re.escape(path.stem)}-{_BACKUP_STAMP}{re.escape(path.suffix)}$"
        )
        return sorted(
            (p for p in self.backup_dir.glob(f"{path.stem}-*") if pattern.match(p.name)),
            key=lambda p: p.name,
            reverse=True,
        )

    def _rotate_backups(self, path: Path) -> int:
        """Keep the newest ``backup_count`` backups of ``path``.

        Returns:
            Number of backups removed.
        """
        removed = 0
        for old in self.backups_of(path)[self.backup_count:]:
            try:
                old.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to remove old backup {old}: {e}")
        return removed

    def read_yaml(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return default if data is None else data

    def write_yaml(self, path: Path, data: Any) -> None:
        self.backup(path)
        self.atomic_write(
            path, yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        )


class FileNoteAdapter(BackendAdapter[Note]):
    """Notes as markdown files with frontmatter."""

    def __init__(self, store: FileStore) -> None:
        super().__init__(Note)
        self.store = store
        self.parser = MarkdownParser()

    async def initialize(self) -> None:
        await run_in_worker(self.store.ensure_dirs)

    def _read(self, path: Path) -> Note:
        with open(path, "r", encoding="utf-8") as f:
            return self.parser.parse_note(f.read())

    async def get_all(self) -> List[Note]:
        def _load() -> List[Note]:
            notes: List[Note] = []
            for path in sorted(self.store.notes_dir.glob("*.md")):
                try:
                    notes.append(self._read(path))
                except (OSError, ValueError, yaml.YAMLError) as e:
                    logger.warning(f"Skipping unreadable note file {path.name}: {e}")
            return notes

        return await run_in_worker(_load)

    async def fetch(self, id: str) -> AdapterResult[Note]:
        def _fetch() -> AdapterResult[Note]:
            path = self.store.note_path(id)
            if not path.exists():
                return NotFound(id)
            return Ok(self._read(path))

        return await run_in_worker(_fetch)

    async def put(self, entity: Note) -> AdapterResult[Note]:
        token = current_token()
        stored = entity.model_copy(
            update={"revision": next_revision(entity.revision, entity)}
        )
        markdown = self.parser.render_to_markdown(stored)

        def _put() -> AdapterResult[Note]:
            path = self.store.note_path(stored.id)
            with self.store.file_lock:
                token.raise_if_cancelled("put")
                self.store.backup(path)
                self.store.atomic_write(path, markdown)
            return Ok(stored)

        return await run_in_worker(_put)

    async def remove(self, id: str) -> AdapterResult[None]:
        token = current_token()

        def _remove() -> AdapterResult[None]:
            path = self.store.note_path(id)
            with self.store.file_lock:
                if not path.exists():
                    return NotFound(id)
                token.raise_if_cancelled("remove")
                self.store.backup(path)
                path.unlink()
            return Ok(None)

        return await run_in_worker(_remove)


class FileNotebookAdapter(BackendAdapter[Notebook]):
    """All notebooks in one YAML file, rewritten on every change."""

    def __init__(self, store: FileStore) -> None:
        super().__init__(Notebook)
        self.store = store

    async def initialize(self) -> None:
        await run_in_worker(self.store.ensure_dirs)

    def _load(self) -> Dict[str, Notebook]:
        raw = self.store.read_yaml(self.store.notebooks_file, [])
        if not isinstance(raw, list):
            raise RepositoryError(
                "notebooks.yaml does not contain a list",
                code=ErrorCode.STORAGE_CORRUPT,
                operation="load_notebooks",
                context={"path": self.store.notebooks_file.name},
            )
        notebooks = [Notebook.model_validate(entry) for entry in raw]
        return {nb.id: nb for nb in notebooks}

    def _dump(self, notebooks: Dict[str, Notebook]) -> None:
        data = [nb.model_dump(mode="json") for nb in notebooks.values()]
        self.store.write_yaml(self.store.notebooks_file, data)

    async def get_all(self) -> List[Notebook]:
        def _all() -> List[Notebook]:
            with self.store.file_lock:
                return list(self._load().values())

        return await run_in_worker(_all)

    async def fetch(self, id: str) -> AdapterResult[Notebook]:
        def _fetch() -> AdapterResult[Notebook]:
            with self.store.file_lock:
                notebook = self._load().get(id)
            return Ok(notebook) if notebook is not None else NotFound(id)

        return await run_in_worker(_fetch)

    async def put(self, entity: Notebook) -> AdapterResult[Notebook]:
        token = current_token()
        stored = entity.model_copy(
            update={"revision": next_revision(entity.revision, entity)}
        )

        def _put() -> AdapterResult[Notebook]:
            with self.store.file_lock:
                notebooks = self._load()
                notebooks[stored.id] = stored
                token.raise_if_cancelled("put")
                self._dump(notebooks)
            return Ok(stored)

        return await run_in_worker(_put)

    async def remove(self, id: str) -> AdapterResult[None]:
        token = current_token()

        def _remove() -> AdapterResult[None]:
            with self.store.file_lock:
                notebooks = self._load()
                if id not in notebooks:
                    return NotFound(id)
                del notebooks[id]
                token.raise_if_cancelled("remove")
                self._dump(notebooks)
            return Ok(None)

        return await run_in_worker(_remove)


class FileKeyValueAdapter(KeyValueAdapter):
    """Settings in one YAML mapping of categories to key/value maps.

    An unreadable settings file is backed up and replaced by an empty
    mapping rather than blocking startup.
    """

    def __init__(self, store: FileStore) -> None:
        self.store = store

    async def initialize(self) -> None:
        await run_in_worker(self.store.ensure_dirs)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        try:
            data = self.store.read_yaml(self.store.settings_file, {})
        except yaml.YAMLError as e:
            backup_path = self.store.backup(self.store.settings_file)
            logger.warning(
                f"Settings file is corrupted ({e}); backed up to {backup_path}, "
                "starting with empty settings"
            )
            return {}
        return data if isinstance(data, dict) else {}

    async def get(self, category: str, key: str) -> Optional[Any]:
        def _get() -> Optional[Any]:
            with self.store.file_lock:
                return self._load().get(category, {}).get(key)

        return await run_in_worker(_get)

    async def set(self, category: str, key: str, value: Any) -> None:
        token = current_token()

        def _set() -> None:
            with self.store.file_lock:
                data = self._load()
                data.setdefault(category, {})[key] = value
                token.raise_if_cancelled("set_setting")
                self.store.write_yaml(self.store.settings_file, data)

        await run_in_worker(_set)

    async def remove(self, category: str, key: str) -> bool:
        def _remove() -> bool:
            with self.store.file_lock:
                data = self._load()
                values = data.get(category, {})
                if key not in values:
                    return False
                del values[key]
                self.store.write_yaml(self.store.settings_file, data)
                return True

        return await run_in_worker(_remove)

    async def keys(self, category: str) -> List[str]:
        def _keys() -> List[str]:
            with self.store.file_lock:
                return sorted(self._load().get(category, {}))

        return await run_in_worker(_keys)


def create_file_backend(
    data_dir: Union[str, Path], backup_count: int = DEFAULT_BACKUP_COUNT
) -> StorageBackend:
    """Bundle the file adapters over one data directory."""
    store = FileStore(data_dir, backup_count=backup_count)
    return StorageBackend(
        name="files",
        notes=FileNoteAdapter(store),
        notebooks=FileNotebookAdapter(store),
        settings=FileKeyValueAdapter(store),
    )
