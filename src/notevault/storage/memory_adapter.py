"""In-memory storage adapters.

Used for tests and for scratch sessions that need no persistence. The
note adapter can optionally enforce optimistic concurrency and an item
quota so the behaviour of a real store can be reproduced without I/O.
"""
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple, Type

from notevault.exceptions import RepositoryError
from notevault.models.schema import Note, Notebook
from notevault.resilience.cancellation import current_token
from notevault.storage.base import (
    AdapterResult,
    BackendAdapter,
    Conflict,
    Failure,
    KeyValueAdapter,
    NotFound,
    Ok,
    StorageBackend,
    T,
    next_revision,
)

logger = logging.getLogger(__name__)


class MemoryAdapter(BackendAdapter[T]):
    """Dict-backed adapter.

    Args:
        entity_cls: ``Note`` or ``Notebook``.
        enforce_revisions: Reject puts whose revision does not match the
            stored one, like a store with optimistic concurrency.
        max_items: Quota; inserting beyond it fails with STORAGE_FULL.
    """

    def __init__(
        self,
        entity_cls: Type[T],
        enforce_revisions: bool = False,
        max_items: Optional[int] = None,
    ) -> None:
        super().__init__(entity_cls)
        self.supports_revisions = enforce_revisions
        self.max_items = max_items
        self._items: Dict[str, T] = {}

    async def initialize(self) -> None:
        logger.debug(f"Memory {self.entity_label} adapter ready")

    async def get_all(self) -> List[T]:
        return [item.model_copy(deep=True) for item in self._items.values()]

    async def fetch(self, id: str) -> AdapterResult[T]:
        item = self._items.get(id)
        if item is None:
            return NotFound(id)
        return Ok(item.model_copy(deep=True))

    async def put(self, entity: T) -> AdapterResult[T]:
        current = self._items.get(entity.id)

        if self.supports_revisions:
            if current is None and entity.revision is not None:
                return Conflict(None)
            if current is not None and entity.revision != current.revision:
                return Conflict(current.model_copy(deep=True))

        if (
            current is None
            and self.max_items is not None
            and len(self._items) >= self.max_items
        ):
            return Failure(
                RepositoryError.storage_full("put", len(self._items), self.max_items)
            )

        current_token().raise_if_cancelled("put")
        previous = current.revision if current is not None else None
        stored = entity.model_copy(
            deep=True, update={"revision": next_revision(previous, entity)}
        )
        self._items[stored.id] = stored
        return Ok(stored.model_copy(deep=True))

    async def remove(self, id: str) -> AdapterResult[None]:
        if id not in self._items:
            return NotFound(id)
        current_token().raise_if_cancelled("remove")
        del self._items[id]
        return Ok(None)


class MemoryKeyValueAdapter(KeyValueAdapter):
    """Settings held in a dict keyed by ``(category, key)``."""

    def __init__(self) -> None:
        self._values: Dict[Tuple[str, str], Any] = {}

    async def initialize(self) -> None:
        pass

    async def get(self, category: str, key: str) -> Optional[Any]:
        return copy.deepcopy(self._values.get((category, key)))

    async def set(self, category: str, key: str, value: Any) -> None:
        current_token().raise_if_cancelled("set_setting")
        self._values[(category, key)] = copy.deepcopy(value)

    async def remove(self, category: str, key: str) -> bool:
        if (category, key) not in self._values:
            return False
        del self._values[(category, key)]
        return True

    async def keys(self, category: str) -> List[str]:
        return sorted(k for c, k in self._values if c == category)


def create_memory_backend(
    enforce_revisions: bool = False, max_items: Optional[int] = None
) -> StorageBackend:
    """Bundle in-memory note, notebook and settings adapters."""
    return StorageBackend(
        name="memory",
        notes=MemoryAdapter(Note, enforce_revisions=enforce_revisions, max_items=max_items),
        notebooks=MemoryAdapter(Notebook, enforce_revisions=enforce_revisions),
        settings=MemoryKeyValueAdapter(),
    )
