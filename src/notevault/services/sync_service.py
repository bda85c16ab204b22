"""One sync pass between the local repository and a remote replica.

The remote side is any object with ``fetch_notes()`` and
``fetch_notebooks()``; transport is the replica's business.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, TypeVar, Union, runtime_checkable

import anyio
from pydantic import ValidationError

from notevault.exceptions import RepositoryError
from notevault.models.schema import Note, Notebook, ResolutionStrategy
from notevault.observability import timed_operation
from notevault.repository.document_repository import DocumentRepository
from notevault.sync.engine import SyncEngine, SyncResult

logger = logging.getLogger(__name__)

I = TypeVar("I", Note, Notebook)


@runtime_checkable
class RemoteReplica(Protocol):
    """Already-fetched remote copy of the collections."""

    async def fetch_notes(self) -> List[Note]:
        ...

    async def fetch_notebooks(self) -> List[Notebook]:
        ...


class ExportFileReplica:
    """Remote replica read from a file written by ``export_all``."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._payload: Optional[Dict] = None

    async def _load(self) -> Dict:
        if self._payload is None:
            text = await anyio.Path(self.path).read_text(encoding="utf-8")
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as e:
                raise RepositoryError.validation_failed(
                    "fetch_remote", f"{self.path.name} is not valid JSON: {e}"
                ) from e
            if not isinstance(payload, dict):
                raise RepositoryError.validation_failed(
                    "fetch_remote", f"{self.path.name} is not an export document"
                )
            self._payload = payload
        return self._payload

    async def fetch_notes(self) -> List[Note]:
        payload = await self._load()
        try:
            return [Note.model_validate(raw) for raw in payload.get("notes") or []]
        except ValidationError as e:
            raise RepositoryError.validation_failed("fetch_remote", str(e)) from e

    async def fetch_notebooks(self) -> List[Notebook]:
        payload = await self._load()
        try:
            return [Notebook.model_validate(raw) for raw in payload.get("notebooks") or []]
        except ValidationError as e:
            raise RepositoryError.validation_failed("fetch_remote", str(e)) from e


@dataclass
class SyncReport:
    """Outcome of ``SyncService.sync_once``."""

    result: SyncResult
    saved_notes: List[str] = field(default_factory=list)
    saved_notebooks: List[str] = field(default_factory=list)

    @property
    def conflicts_resolved(self) -> int:
        return sum(1 for c in self.result.conflicts if c.resolved)


def _changed(local: Optional[I], merged: I) -> bool:
    if local is None:
        return True
    exclude = {"revision"}
    return local.model_dump(exclude=exclude) != merged.model_dump(exclude=exclude)


def _with_local_revision(local: Optional[I], merged: I) -> I:
    """Writes must carry the local store's revision, not the remote one."""
    return merged.model_copy(update={"revision": local.revision if local else None})


class SyncService:
    """Run sync passes for one repository against one remote replica."""

    def __init__(
        self,
        repository: DocumentRepository,
        engine: SyncEngine,
        remote: RemoteReplica,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.remote = remote

    async def sync_once(
        self, strategy: Optional[Union[ResolutionStrategy, str]] = None
    ) -> SyncReport:
        """Fetch both sides, sync them and persist what changed locally.

        Merged entities keep their merged ``updated_at``. With the
        ``create_both`` strategy the remote version of a conflicting entity
        is not stored under a new id; callers that want the duplicate must
        create it themselves from the returned conflicts.

        Raises:
            SyncError: From the engine (sync already running, or conflicts
                that could not be resolved).
            RepositoryError: When reading or writing the local store fails.
        """
        with timed_operation("sync_once") as op:
            local_notes = await self.repository.get_notes()
            local_notebooks = await self.repository.get_notebooks()
            remote_notes = await self.remote.fetch_notes()
            remote_notebooks = await self.remote.fetch_notebooks()
            logger.info(
                f"Syncing {len(local_notes)}/{len(local_notebooks)} local against "
                f"{len(remote_notes)}/{len(remote_notebooks)} remote notes/notebooks"
            )

            result = await self.engine.start_sync(
                local_notes, local_notebooks, remote_notes, remote_notebooks, strategy
            )
            report = SyncReport(result=result)

            saved_notebooks = await self._persist(
                local_notebooks, result.notebooks, self._save_notebook
            )
            saved_notes = await self._persist(local_notes, result.notes, self._save_note)
            report.saved_notebooks = saved_notebooks
            report.saved_notes = saved_notes

            op["conflicts"] = len(result.conflicts)
            op["saved"] = len(saved_notes) + len(saved_notebooks)
            return report

    async def _save_note(self, note: Note) -> Note:
        return await self.repository.save_note(note, touch=False)

    async def _save_notebook(self, notebook: Notebook) -> Notebook:
        return await self.repository.save_notebook(notebook, touch=False, validate=False)

    @staticmethod
    async def _persist(local_items: Sequence[I], merged_items: Sequence[I], save) -> List[str]:
        local_by_id = {item.id: item for item in local_items}
        saved: List[str] = []
        for merged in merged_items:
            local = local_by_id.get(merged.id)
            if not _changed(local, merged):
                continue
            stored = await save(_with_local_revision(local, merged))
            saved.append(stored.id)
        return saved
