"""Structured store on SQLAlchemy.

One table per collection. Every stored row carries a ``"<n>-<hash>"``
revision token and writes are conditional on the caller's token, so the
store always enforces optimistic concurrency. Blocking SQL runs in a
worker thread.
"""
import datetime
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

import anyio
from sqlalchemy import delete, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from notevault.exceptions import ErrorCode, RepositoryError
from notevault.models.db_models import (DBNote, DBNotebook, DBSetting,
                                        get_session_factory, init_db)
from notevault.models.schema import Note, Notebook, ensure_timezone_aware
from notevault.resilience.cancellation import current_token, run_in_worker
from notevault.resilience.classifier import normalize_error
from notevault.storage.base import (
    AdapterResult,
    BackendAdapter,
    Conflict,
    KeyValueAdapter,
    NotFound,
    Ok,
    StorageBackend,
    T,
    matches_query,
    next_revision,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")


def _to_db_time(value: datetime.datetime) -> datetime.datetime:
    """Naive UTC for storage."""
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def _note_values(note: Note) -> Dict[str, Any]:
    return {
        "title": note.title,
        "content": note.content,
        "tags": json.dumps(note.tags),
        "notebook_id": note.notebook_id,
        "created_at": _to_db_time(note.created_at),
        "updated_at": _to_db_time(note.updated_at),
        "is_pinned": note.is_pinned,
        "is_trashed": note.is_trashed,
        "revision": note.revision,
        "metadata_json": json.dumps(note.metadata, default=str),
    }


def _row_to_note(row: DBNote) -> Note:
    return Note(
        id=row.id,
        title=row.title,
        content=row.content,
        tags=json.loads(row.tags or "[]"),
        notebook_id=row.notebook_id,
        created_at=ensure_timezone_aware(row.created_at),
        updated_at=ensure_timezone_aware(row.updated_at),
        is_pinned=bool(row.is_pinned),
        is_trashed=bool(row.is_trashed),
        revision=row.revision,
        metadata=json.loads(row.metadata_json or "{}"),
    )


def _notebook_values(notebook: Notebook) -> Dict[str, Any]:
    return {
        "name": notebook.name,
        "description": notebook.description,
        "color": notebook.color,
        "parent_id": notebook.parent_id,
        "created_at": _to_db_time(notebook.created_at),
        "updated_at": _to_db_time(notebook.updated_at),
        "is_trashed": notebook.is_trashed,
        "revision": notebook.revision,
        "metadata_json": json.dumps(notebook.metadata, default=str),
    }


def _row_to_notebook(row: DBNotebook) -> Notebook:
    return Notebook(
        id=row.id,
        name=row.name,
        description=row.description,
        color=row.color,
        parent_id=row.parent_id,
        created_at=ensure_timezone_aware(row.created_at),
        updated_at=ensure_timezone_aware(row.updated_at),
        is_trashed=bool(row.is_trashed),
        revision=row.revision,
        metadata=json.loads(row.metadata_json or "{}"),
    )


class SqlDatabase:
    """Engine and session factory shared by the adapters of one database."""

    def __init__(self, db_url: str) -> None:
        self.db_url = db_url
        self.engine: Optional[Engine] = None
        self.session_factory: Optional[sessionmaker] = None
        self._lock = anyio.Lock()

    async def initialize(self) -> None:
        """Create the engine and schema once.

        Raises:
            RepositoryError: STORAGE_NOT_AVAILABLE or STORAGE_CORRUPT when the
                classifier recognises the failure, INITIALIZATION_ERROR
                otherwise.
        """
        async with self._lock:
            if self.engine is not None:
                return
            try:
                self.engine = await anyio.to_thread.run_sync(init_db, self.db_url)
            except Exception as exc:
                error = normalize_error(exc, "initialize")
                if error.code == ErrorCode.UNKNOWN_ERROR:
                    error = RepositoryError(
                        f"Failed to initialize database: {exc}",
                        code=ErrorCode.INITIALIZATION_ERROR,
                        operation="initialize",
                        cause=exc,
                    )
                logger.error(f"Database initialization failed: {error}")
                raise error from exc
            self.session_factory = get_session_factory(self.engine)
            logger.info(f"Database ready at {self.db_url}")

    def session(self) -> Session:
        if self.session_factory is None:
            raise RepositoryError.storage_not_available(
                "session", "database not initialized"
            )
        return self.session_factory()

    async def run(self, func: Callable[[], R]) -> R:
        """Run blocking database work in a worker thread.

        A timed-out caller stops waiting at once; the abandoned thread sees
        the cancelled attempt token before it commits.
        """
        return await run_in_worker(func)

    async def close(self) -> None:
        async with self._lock:
            if self.engine is None:
                return
            engine, self.engine, self.session_factory = self.engine, None, None
            await anyio.to_thread.run_sync(engine.dispose)


class SqlAdapter(BackendAdapter[T]):
    """Note or notebook table with conditional writes."""

    supports_revisions = True

    def __init__(self, database: SqlDatabase, entity_cls: Type[T]) -> None:
        super().__init__(entity_cls)
        self.database = database
        if entity_cls is Note:
            self.db_cls: Any = DBNote
            self._values = _note_values
            self._to_model: Callable[[Any], T] = _row_to_note  # type: ignore[assignment]
        else:
            self.db_cls = DBNotebook
            self._values = _notebook_values
            self._to_model = _row_to_notebook  # type: ignore[assignment]

    async def initialize(self) -> None:
        await self.database.initialize()

    async def close(self) -> None:
        await self.database.close()

    async def get_all(self) -> List[T]:
        def _load() -> List[T]:
            with self.database.session() as session:
                rows = session.scalars(select(self.db_cls)).all()
                return [self._to_model(row) for row in rows]

        return await self.database.run(_load)

    async def fetch(self, id: str) -> AdapterResult[T]:
        def _fetch() -> AdapterResult[T]:
            with self.database.session() as session:
                row = session.get(self.db_cls, id)
                if row is None:
                    return NotFound(id)
                return Ok(self._to_model(row))

        return await self.database.run(_fetch)

    async def put(self, entity: T) -> AdapterResult[T]:
        token = current_token()

        def _current(session: Session) -> Optional[T]:
            row = session.get(self.db_cls, entity.id)
            return self._to_model(row) if row is not None else None

        def _put() -> AdapterResult[T]:
            with self.database.session() as session:
                if entity.revision is None:
                    stored = entity.model_copy(
                        update={"revision": next_revision(None, entity)}
                    )
                    session.add(self.db_cls(id=stored.id, **self._values(stored)))
                    try:
                        session.flush()
                    except IntegrityError:
                        session.rollback()
                        return Conflict(_current(session))
                else:
                    stored = entity.model_copy(
                        update={"revision": next_revision(entity.revision, entity)}
                    )
                    result = session.execute(
                        update(self.db_cls)
                        .where(
                            self.db_cls.id == entity.id,
                            self.db_cls.revision == entity.revision,
                        )
                        .values(**self._values(stored))
                    )
                    if result.rowcount == 0:
                        session.rollback()
                        return Conflict(_current(session))

                token.raise_if_cancelled("put")
                session.commit()
                return Ok(stored)

        return await self.database.run(_put)

    async def remove(self, id: str) -> AdapterResult[None]:
        token = current_token()

        def _remove() -> AdapterResult[None]:
            with self.database.session() as session:
                result = session.execute(delete(self.db_cls).where(self.db_cls.id == id))
                if result.rowcount == 0:
                    session.rollback()
                    return NotFound(id)
                token.raise_if_cancelled("remove")
                session.commit()
                return Ok(None)

        return await self.database.run(_remove)

    async def search(self, query: str) -> List[T]:
        terms = [term for term in query.lower().split() if term]
        if not terms:
            return []
        if self.db_cls is DBNote:
            columns = [DBNote.title, DBNote.content, DBNote.tags]
        else:
            columns = [DBNotebook.name, DBNotebook.description]

        def _search() -> List[T]:
            with self.database.session() as session:
                stmt = select(self.db_cls)
                for term in terms:
                    stmt = stmt.where(or_(*(col.ilike(f"%{term}%") for col in columns)))
                rows = session.scalars(stmt).all()
                return [self._to_model(row) for row in rows]

        # LIKE also matches JSON punctuation in the tags column; re-check in Python
        candidates = await self.database.run(_search)
        return [item for item in candidates if matches_query(item, query)]


class SqlKeyValueAdapter(KeyValueAdapter):
    """Settings table with JSON-encoded values."""

    def __init__(self, database: SqlDatabase) -> None:
        self.database = database

    async def initialize(self) -> None:
        await self.database.initialize()

    async def close(self) -> None:
        await self.database.close()

    async def get(self, category: str, key: str) -> Optional[Any]:
        def _get() -> Optional[Any]:
            with self.database.session() as session:
                row = session.get(DBSetting, (category, key))
                return json.loads(row.value) if row is not None else None

        return await self.database.run(_get)

    async def set(self, category: str, key: str, value: Any) -> None:
        token = current_token()
        payload = json.dumps(value)

        def _set() -> None:
            with self.database.session() as session:
                row = session.get(DBSetting, (category, key))
                if row is None:
                    session.add(DBSetting(category=category, key=key, value=payload))
                else:
                    row.value = payload
                token.raise_if_cancelled("set_setting")
                session.commit()

        await self.database.run(_set)

    async def remove(self, category: str, key: str) -> bool:
        def _remove() -> bool:
            with self.database.session() as session:
                result = session.execute(
                    delete(DBSetting).where(
                        DBSetting.category == category, DBSetting.key == key
                    )
                )
                session.commit()
                return result.rowcount > 0

        return await self.database.run(_remove)

    async def keys(self, category: str) -> List[str]:
        def _keys() -> List[str]:
            with self.database.session() as session:
                return list(
                    session.scalars(
                        select(DBSetting.key)
                        .where(DBSetting.category == category)
                        .order_by(DBSetting.key)
                    ).all()
                )

        return await self.database.run(_keys)


def create_sql_backend(db_url: str) -> StorageBackend:
    """Bundle note, notebook and settings adapters over one database."""
    database = SqlDatabase(db_url)
    return StorageBackend(
        name="sql",
        notes=SqlAdapter(database, Note),
        notebooks=SqlAdapter(database, Notebook),
        settings=SqlKeyValueAdapter(database),
    )
