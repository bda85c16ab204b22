"""Backend adapter contract shared by every storage medium.

Adapters expose low-level primitives that return a generic result type
instead of raising on expected outcomes::

    Ok(value) | Conflict(current) | NotFound(id) | Failure(error)

so the layers above never depend on backend-specific status codes. The
high-level contract (``get_by_id``, ``save``, ``delete``) is implemented
once here on top of those primitives.
"""
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, List, Optional, Type, TypeVar, Union

from notevault.exceptions import RepositoryError
from notevault.models.schema import Item, Note, Notebook

logger = logging.getLogger(__name__)

T = TypeVar("T", Note, Notebook)
V = TypeVar("V")


@dataclass(frozen=True)
class Ok(Generic[V]):
    value: V


@dataclass(frozen=True)
class Conflict(Generic[V]):
    """The stored revision differs from the one the caller supplied."""

    current: Optional[V]


@dataclass(frozen=True)
class NotFound:
    id: str


@dataclass(frozen=True)
class Failure:
    error: BaseException


AdapterResult = Union[Ok[V], Conflict[V], NotFound, Failure]


def revision_number(revision: Optional[str]) -> int:
    """Sequence number of a ``"<n>-<hash>"`` revision token (0 if absent)."""
    if not revision:
        return 0
    head, _, _ = revision.partition("-")
    try:
        return int(head)
    except ValueError:
        return 0


def next_revision(previous: Optional[str], entity: Item) -> str:
    """Revision token for the next stored version of ``entity``."""
    payload = json.dumps(
        entity.model_dump(mode="json", exclude={"revision"}), sort_keys=True
    )
    digest = hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]
    return f"{revision_number(previous) + 1}-{digest}"


def searchable_text(entity: Item) -> str:
    """Lower-cased text an entity is matched against by ``search``."""
    if isinstance(entity, Note):
        return f"{entity.title} {entity.content} {' '.join(entity.tags)}".lower()
    return f"{entity.name} {entity.description}".lower()


def matches_query(entity: Item, query: str) -> bool:
    """True if every whitespace-separated term of ``query`` occurs in the entity."""
    terms = [term for term in query.lower().split() if term]
    if not terms:
        return False
    text = searchable_text(entity)
    return all(term in text for term in terms)


class BackendAdapter(ABC, Generic[T]):
    """One entity collection stored on one medium.

    Subclasses implement the primitives (``fetch``, ``put``, ``remove``,
    ``get_all``). Adapters that enforce optimistic concurrency set
    ``supports_revisions`` and return ``Conflict`` from ``put`` when the
    supplied revision is stale; the others perform last-write-wins.
    """

    supports_revisions: bool = False

    def __init__(self, entity_cls: Type[T]) -> None:
        self.entity_cls = entity_cls
        self.entity_label = entity_cls.__name__

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the medium. Raises if storage is unavailable."""

    async def close(self) -> None:
        """Release resources held by the adapter."""

    @abstractmethod
    async def get_all(self) -> List[T]:
        """Return every stored entity."""

    @abstractmethod
    async def fetch(self, id: str) -> "AdapterResult[T]":
        """Return ``Ok(entity)``, ``NotFound`` or ``Failure``."""

    @abstractmethod
    async def put(self, entity: T) -> "AdapterResult[T]":
        """Insert or replace ``entity``.

        Returns ``Ok(stored)`` with the new revision, ``Conflict(current)``
        on a stale revision, or ``Failure``.
        """

    @abstractmethod
    async def remove(self, id: str) -> "AdapterResult[None]":
        """Return ``Ok(None)``, ``NotFound`` or ``Failure``."""

    async def search(self, query: str) -> List[T]:
        """Entities whose text contains every term of ``query``."""
        return [entity for entity in await self.get_all() if matches_query(entity, query)]

    # ------------------------------------------------------------------
    # High-level contract
    # ------------------------------------------------------------------

    async def get_by_id(self, id: str) -> Optional[T]:
        result = await self.fetch(id)
        if isinstance(result, Ok):
            return result.value
        if isinstance(result, NotFound):
            return None
        return self._raise_unexpected(result, "get_by_id")

    async def delete(self, id: str) -> None:
        result = await self.remove(id)
        if isinstance(result, Ok):
            return
        if isinstance(result, NotFound):
            raise RepositoryError.not_found("delete", id, self.entity_label)
        self._raise_unexpected(result, "delete")

    async def save(self, entity: T) -> T:
        """Save with one refresh-and-retry on a revision conflict.

        The refresh covers a transient race with another writer on the same
        replica. If the retry conflicts again the caller gets a
        CONFLICT_ERROR carrying both its intended version and the latest
        stored version; cross-replica conflicts belong to the sync engine.
        """
        result = await self.put(entity)
        if isinstance(result, Ok):
            return result.value
        if not isinstance(result, Conflict):
            return self._raise_unexpected(result, "save")

        logger.debug(
            f"{self.entity_label} {entity.id}: revision conflict, "
            "retrying against latest stored version"
        )
        latest = await self.get_by_id(entity.id)
        retry_entity = self._reapply(entity, latest)
        second = await self.put(retry_entity)
        if isinstance(second, Ok):
            return second.value
        if isinstance(second, Conflict):
            newest = second.current if second.current is not None else latest
            raise RepositoryError.conflict(
                "save",
                entity.id,
                intended=entity.model_dump(mode="json"),
                latest=newest.model_dump(mode="json") if newest is not None else None,
                entity_type=self.entity_label,
            )
        return self._raise_unexpected(second, "save")

    @staticmethod
    def _reapply(entity: T, latest: Optional[T]) -> T:
        """Carry the caller's fields onto the latest stored revision."""
        if latest is None:
            return entity.model_copy(update={"revision": None})
        return entity.model_copy(
            update={
                "revision": latest.revision,
                "created_at": min(entity.created_at, latest.created_at),
            }
        )

    def _raise_unexpected(self, result: Any, operation: str) -> Any:
        if isinstance(result, Failure):
            raise result.error
        raise RepositoryError(
            f"Unexpected {type(result).__name__} result from {self.entity_label} adapter",
            operation=operation,
        )


class KeyValueAdapter(ABC):
    """Settings store keyed by a ``(category, key)`` pair."""

    @abstractmethod
    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        ...

    @abstractmethod
    async def get(self, category: str, key: str) -> Optional[Any]:
        """Return the stored JSON-compatible value or None."""

    @abstractmethod
    async def set(self, category: str, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def remove(self, category: str, key: str) -> bool:
        """Remove a value. Returns True if it existed."""

    @abstractmethod
    async def keys(self, category: str) -> List[str]:
        ...


@dataclass
class StorageBackend:
    """The note, notebook and settings adapters of one medium."""

    name: str
    notes: BackendAdapter[Note]
    notebooks: BackendAdapter[Notebook]
    settings: KeyValueAdapter

    async def initialize(self) -> None:
        await self.notes.initialize()
        await self.notebooks.initialize()
        await self.settings.initialize()

    async def close(self) -> None:
        await self.notes.close()
        await self.notebooks.close()
        await self.settings.close()
