"""Document repository: notes, notebooks and settings behind resilience.

Every storage call goes through ``ResilienceExecutor``; failures reach the
caller as the normalized ``RepositoryError``. Reads of single entities are
served from a bounded LRU cache that every write invalidates.
"""
import json
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import anyio
from pydantic import ValidationError

from notevault.exceptions import RepositoryError
from notevault.models.schema import (
    CircuitBreakerState,
    Note,
    Notebook,
    generate_id,
    utc_now,
)
from notevault.repository.cache import LRUCache
from notevault.repository.notebook_tree import (
    NotebookNode,
    build_notebook_tree,
    has_sibling_named,
    repair_notebook_tree,
    would_create_cycle,
)
from notevault.resilience.executor import ResilienceExecutor
from notevault.storage.base import Failure, NotFound, StorageBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXPORT_VERSION = "1.0"


@dataclass
class ImportSummary:
    """Counts of entities written by ``import_all``."""

    notes: int = 0
    notebooks: int = 0
    failed: int = 0


class DocumentRepository:
    """Async persistence API for notes, notebooks and settings.

    Args:
        backend: Adapters of one storage medium.
        executor: Resilience executor. Repositories that should share a
            circuit breaker must share the executor.
        cache_size: Entries kept per entity cache; 0 disables caching.
        cache_ttl_seconds: Cache entry lifetime.
    """

    def __init__(
        self,
        backend: StorageBackend,
        executor: Optional[ResilienceExecutor] = None,
        cache_size: int = 100,
        cache_ttl_seconds: Optional[float] = 300.0,
    ) -> None:
        self.backend = backend
        self.executor = executor or ResilienceExecutor()
        self._note_cache: LRUCache[Note] = LRUCache(cache_size, cache_ttl_seconds)
        self._notebook_cache: LRUCache[Notebook] = LRUCache(
            cache_size, cache_ttl_seconds
        )
        self._initialized = False
        self._init_lock = anyio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the backend. Safe to call more than once."""
        async with self._init_lock:
            if self._initialized:
                return
            await self.executor.run(self.backend.initialize, "initialize")
            self._initialized = True
            logger.info(f"Document repository initialized ({self.backend.name} backend)")

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def close(self) -> None:
        if not self._initialized:
            return
        await self.backend.close()
        self._note_cache.clear()
        self._notebook_cache.clear()
        self._initialized = False
        logger.debug("Document repository closed")

    async def _run(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        await self._ensure_initialized()
        return await self.executor.run(operation, name)

    @staticmethod
    def _stamp(entity: T, touch: bool) -> T:
        """Assign id and timestamps before a write."""
        if not entity.id:
            now = utc_now()
            return entity.model_copy(
                update={"id": generate_id(), "created_at": now, "updated_at": now}
            )
        if touch:
            return entity.model_copy(
                update={"updated_at": max(utc_now(), entity.updated_at)}
            )
        return entity

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def get_notes(self, include_trashed: bool = True) -> List[Note]:
        notes = await self._run(self.backend.notes.get_all, "get_notes")
        logger.debug(f"Retrieved {len(notes)} notes")
        if include_trashed:
            return notes
        return [note for note in notes if not note.is_trashed]

    async def get_note(self, id: str) -> Optional[Note]:
        """Get a note by ID, or None if it does not exist."""
        cached = self._note_cache.get(id)
        if cached is not None:
            return cached.model_copy(deep=True)
        note = await self._run(partial(self.backend.notes.get_by_id, id), "get_note")
        if note is not None:
            self._note_cache.set(id, note.model_copy(deep=True))
        return note

    async def save_note(self, note: Note, touch: bool = True) -> Note:
        """Insert or update a note.

        A note with an empty id gets a new id and fresh timestamps. With
        ``touch`` an existing note's ``updated_at`` moves to now (never
        backwards); sync passes ``touch=False`` to keep merged timestamps.
        """
        if not isinstance(note, Note):
            raise RepositoryError.validation_failed(
                "save_note", f"expected Note, got {type(note).__name__}"
            )
        prepared = self._stamp(note, touch)
        self._note_cache.invalidate(prepared.id)
        saved = await self._run(partial(self.backend.notes.save, prepared), "save_note")
        self._note_cache.set(saved.id, saved.model_copy(deep=True))
        logger.debug(f"Note saved: {saved.id} (rev {saved.revision})")
        return saved

    async def save_notes(self, notes: List[Note], touch: bool = True) -> List[Note]:
        """Save notes one by one; a failed note is logged and skipped."""
        saved: List[Note] = []
        for note in notes:
            try:
                saved.append(await self.save_note(note, touch=touch))
            except RepositoryError as e:
                logger.warning(f"Failed to save note in batch: {note.id or '<new>'}: {e}")
        logger.debug(f"Batch saved {len(saved)}/{len(notes)} notes")
        return saved

    async def delete_note(self, id: str) -> bool:
        """Hard-delete a note. Deleting a missing note is not an error.

        Returns:
            True if a note was removed.
        """
        self._note_cache.invalidate(id)

        async def _delete() -> bool:
            result = await self.backend.notes.remove(id)
            if isinstance(result, NotFound):
                return False
            if isinstance(result, Failure):
                raise result.error
            return True

        removed = await self._run(_delete, "delete_note")
        if not removed:
            logger.warning(f"Attempted to delete non-existent note: {id}")
        return removed

    async def _set_trashed(self, id: str, trashed: bool, operation: str) -> Note:
        note = await self.get_note(id)
        if note is None:
            raise RepositoryError.not_found(operation, id, "Note")
        note.is_trashed = trashed
        return await self.save_note(note)

    async def trash_note(self, id: str) -> Note:
        """Soft delete: mark the note trashed."""
        return await self._set_trashed(id, True, "trash_note")

    async def restore_note(self, id: str) -> Note:
        return await self._set_trashed(id, False, "restore_note")

    async def search_notes(self, query: str) -> List[Note]:
        """Notes whose title, content or tags contain every query term."""
        notes = await self._run(partial(self.backend.notes.search, query), "search_notes")
        logger.debug(f"Search found {len(notes)} notes for query: {query!r}")
        return notes

    # ------------------------------------------------------------------
    # Notebooks
    # ------------------------------------------------------------------

    async def get_notebooks(self) -> List[Notebook]:
        """All notebooks, with a broken hierarchy repaired in the result."""
        notebooks = await self._run(self.backend.notebooks.get_all, "get_notebooks")
        repaired, cleared = repair_notebook_tree(notebooks)
        if cleared:
            logger.warning(f"Repaired notebook hierarchy, new roots: {cleared}")
        return repaired

    async def get_notebook_tree(self) -> List[NotebookNode]:
        return build_notebook_tree(await self.get_notebooks())

    async def get_notebook(self, id: str) -> Optional[Notebook]:
        cached = self._notebook_cache.get(id)
        if cached is not None:
            return cached.model_copy(deep=True)
        notebook = await self._run(
            partial(self.backend.notebooks.get_by_id, id), "get_notebook"
        )
        if notebook is not None:
            self._notebook_cache.set(id, notebook.model_copy(deep=True))
        return notebook

    async def save_notebook(
        self, notebook: Notebook, touch: bool = True, validate: bool = True
    ) -> Notebook:
        """Insert or update a notebook.

        With ``validate`` off the hierarchy and name checks are skipped;
        sync uses this to store merged notebooks as they are.

        Raises:
            RepositoryError: VALIDATION_ERROR if the parent would create a
                cycle or a sibling already has the same name
                (case-insensitive).
        """
        if not isinstance(notebook, Notebook):
            raise RepositoryError.validation_failed(
                "save_notebook", f"expected Notebook, got {type(notebook).__name__}"
            )
        prepared = self._stamp(notebook, touch)
        if not validate:
            return await self._store_notebook(prepared)
        existing = await self._run(self.backend.notebooks.get_all, "get_notebooks")
        by_id = {nb.id: nb for nb in existing}

        if would_create_cycle(prepared.id, prepared.parent_id, by_id):
            raise RepositoryError.validation_failed(
                "save_notebook",
                f"parent {prepared.parent_id} would create a circular hierarchy",
                prepared.id,
            )
        if has_sibling_named(
            prepared.name, prepared.parent_id, existing, exclude_id=prepared.id
        ):
            raise RepositoryError.validation_failed(
                "save_notebook",
                f"a notebook named '{prepared.name}' already exists here",
                prepared.name,
            )
        return await self._store_notebook(prepared)

    async def _store_notebook(self, notebook: Notebook) -> Notebook:
        self._notebook_cache.invalidate(notebook.id)
        saved = await self._run(
            partial(self.backend.notebooks.save, notebook), "save_notebook"
        )
        self._notebook_cache.set(saved.id, saved.model_copy(deep=True))
        logger.debug(f"Notebook saved: {saved.id} (rev {saved.revision})")
        return saved

    async def delete_notebook(self, id: str) -> bool:
        """Hard-delete a notebook; its children move up to its parent.

        Deleting a missing notebook is not an error.
        """
        notebook = await self.get_notebook(id)
        if notebook is None:
            logger.warning(f"Attempted to delete non-existent notebook: {id}")
            return False

        for child in await self.get_notebooks():
            if child.parent_id == id:
                child.parent_id = notebook.parent_id
                await self._store_notebook(child)

        self._notebook_cache.invalidate(id)

        async def _delete() -> bool:
            result = await self.backend.notebooks.remove(id)
            if isinstance(result, Failure):
                raise result.error
            return not isinstance(result, NotFound)

        return await self._run(_delete, "delete_notebook")

    async def repair_notebooks(self) -> List[str]:
        """Persist hierarchy repairs. Returns the ids that became roots."""
        notebooks = await self._run(self.backend.notebooks.get_all, "get_notebooks")
        repaired, cleared = repair_notebook_tree(notebooks)
        for notebook in repaired:
            if notebook.id in cleared:
                await self._store_notebook(notebook)
        return cleared

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def export_all(self) -> str:
        """Serialize every note and notebook as a JSON document."""
        notes = await self.get_notes()
        notebooks = await self.get_notebooks()
        export_data = {
            "version": EXPORT_VERSION,
            "export_date": utc_now().isoformat(),
            "notes": [note.model_dump(mode="json", exclude={"revision"}) for note in notes],
            "notebooks": [
                nb.model_dump(mode="json", exclude={"revision"}) for nb in notebooks
            ],
        }
        logger.info(f"Exported {len(notes)} notes and {len(notebooks)} notebooks")
        return json.dumps(export_data, indent=2)

    async def import_all(self, data: str) -> ImportSummary:
        """Write the notes and notebooks of an ``export_all`` document.

        Entities keep their ids and timestamps and overwrite stored entities
        with the same id. Notebooks are imported before notes.

        Raises:
            RepositoryError: VALIDATION_ERROR if the document is malformed.
        """
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise RepositoryError.validation_failed("import_all", f"invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise RepositoryError.validation_failed("import_all", "expected a JSON object")

        try:
            notebooks = [Notebook.model_validate(raw) for raw in payload.get("notebooks") or []]
            notes = [Note.model_validate(raw) for raw in payload.get("notes") or []]
        except (ValidationError, TypeError) as e:
            raise RepositoryError.validation_failed("import_all", str(e)) from e

        summary = ImportSummary()
        repaired, _ = repair_notebook_tree(
            nb.model_copy(update={"revision": None}) for nb in notebooks
        )
        for notebook in repaired:
            try:
                await self._store_notebook(notebook)
                summary.notebooks += 1
            except RepositoryError as e:
                summary.failed += 1
                logger.warning(f"Failed to import notebook {notebook.id}: {e}")

        for note in notes:
            try:
                await self.save_note(note.model_copy(update={"revision": None}), touch=False)
                summary.notes += 1
            except RepositoryError as e:
                summary.failed += 1
                logger.warning(f"Failed to import note {note.id}: {e}")

        logger.info(
            f"Imported {summary.notes} notes and {summary.notebooks} notebooks "
            f"({summary.failed} failed)"
        )
        return summary

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, category: str, key: str, default: Any = None) -> Any:
        value = await self._run(
            partial(self.backend.settings.get, category, key), "get_setting"
        )
        return default if value is None else value

    async def set_setting(self, category: str, key: str, value: Any) -> None:
        try:
            json.dumps(value)
        except TypeError as e:
            raise RepositoryError.validation_failed(
                "set_setting", f"value for {category}.{key} is not JSON-serializable"
            ) from e
        await self._run(
            partial(self.backend.settings.set, category, key, value), "set_setting"
        )

    async def remove_setting(self, category: str, key: str) -> bool:
        return await self._run(
            partial(self.backend.settings.remove, category, key), "remove_setting"
        )

    async def list_settings(self, category: str) -> Dict[str, Any]:
        keys = await self._run(partial(self.backend.settings.keys, category), "list_settings")
        return {key: await self.get_setting(category, key) for key in keys}

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def get_circuit_breaker_state(self) -> Optional[CircuitBreakerState]:
        return self.executor.get_circuit_breaker_state()

    def get_cache_stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            "notes": self._note_cache.get_stats(),
            "notebooks": self._notebook_cache.get_stats(),
        }
