"""Tests for the SQLAlchemy-backed store against a real SQLite file."""

import time

import anyio
import pytest

from notevault.exceptions import ErrorCode, RepositoryError
from notevault.models.schema import RetryConfig
from notevault.resilience.cancellation import CancelToken, attempt_scope
from notevault.resilience.executor import ResilienceExecutor
from notevault.storage.base import Conflict, NotFound, Ok
from notevault.storage.sql_adapter import SqlDatabase, create_sql_backend
from tests.fakes import at, make_note, make_notebook


class TestSqlNotes:
    @pytest.mark.anyio
    async def test_insert_and_fetch_roundtrip(self, sql_backend):
        note = make_note(
            tags=["work", "ideas"],
            notebook_id="nb1",
            is_pinned=True,
            metadata={"source": "import", "weight": 2},
            updated_at=at(5),
        )

        stored = await sql_backend.notes.save(note)
        fetched = await sql_backend.notes.get_by_id("n1")

        assert stored.revision.startswith("1-")
        assert fetched == stored
        assert fetched.updated_at == at(5)
        assert fetched.updated_at.tzinfo is not None

    @pytest.mark.anyio
    async def test_conditional_update(self, sql_backend):
        stored = (await sql_backend.notes.put(make_note())).value

        updated = await sql_backend.notes.put(stored.model_copy(update={"content": "v2"}))
        stale = await sql_backend.notes.put(stored.model_copy(update={"content": "stale"}))

        assert isinstance(updated, Ok)
        assert updated.value.revision.startswith("2-")
        assert isinstance(stale, Conflict)
        assert stale.current.content == "v2"

    @pytest.mark.anyio
    async def test_insert_over_existing_id_conflicts(self, sql_backend):
        await sql_backend.notes.put(make_note())
        result = await sql_backend.notes.put(make_note(content="second"))
        assert isinstance(result, Conflict)
        assert result.current.content == "body"

    @pytest.mark.anyio
    async def test_save_without_revision_overwrites_after_refresh(self, sql_backend):
        await sql_backend.notes.save(make_note())
        saved = await sql_backend.notes.save(make_note(content="imported"))
        assert saved.content == "imported"
        assert saved.revision.startswith("2-")

    @pytest.mark.anyio
    async def test_remove(self, sql_backend):
        await sql_backend.notes.save(make_note())
        assert await sql_backend.notes.remove("n1") == Ok(None)
        assert await sql_backend.notes.remove("n1") == NotFound("n1")
        assert await sql_backend.notes.get_all() == []

    @pytest.mark.anyio
    async def test_cancelled_write_rolls_back(self, sql_backend):
        token = CancelToken()
        token.cancel("timeout")
        with attempt_scope(token):
            with pytest.raises(RepositoryError):
                await sql_backend.notes.put(make_note())
        assert await sql_backend.notes.get_by_id("n1") is None

    @pytest.mark.anyio
    async def test_search_rechecks_terms(self, sql_backend):
        await sql_backend.notes.save(make_note("a", title="Groceries", content="milk eggs"))
        await sql_backend.notes.save(make_note("b", title="Recipes", content="eggs flour"))
        await sql_backend.notes.save(make_note("c", content="x", tags=["eggs"]))

        assert {n.id for n in await sql_backend.notes.search("EGGS")} == {"a", "b", "c"}
        assert [n.id for n in await sql_backend.notes.search("eggs milk")] == ["a"]
        assert await sql_backend.notes.search("") == []
        # JSON punctuation in the tags column is not a match
        assert await sql_backend.notes.search('"') == []


class TestSqlNotebooks:
    @pytest.mark.anyio
    async def test_roundtrip(self, sql_backend):
        notebook = make_notebook(parent_id="root", color="blue", description="d")
        stored = await sql_backend.notebooks.save(notebook)
        assert await sql_backend.notebooks.get_by_id("nb1") == stored


class TestSqlSettings:
    @pytest.mark.anyio
    async def test_set_get_overwrite_remove(self, sql_backend):
        settings = sql_backend.settings
        await settings.set("sync", "cursor", {"page": 1})
        await settings.set("sync", "cursor", {"page": 2})
        await settings.set("sync", "enabled", True)

        assert await settings.get("sync", "cursor") == {"page": 2}
        assert await settings.keys("sync") == ["cursor", "enabled"]
        assert await settings.remove("sync", "cursor") is True
        assert await settings.remove("sync", "cursor") is False
        assert await settings.get("sync", "cursor") is None


class TestSqlDatabase:
    @pytest.mark.anyio
    async def test_data_survives_reopen(self, temp_dirs):
        _, db_dir = temp_dirs
        url = f"sqlite:///{db_dir / 'reopen.db'}"
        first = create_sql_backend(url)
        await first.initialize()
        await first.notes.save(make_note())
        await first.close()

        second = create_sql_backend(url)
        await second.initialize()
        try:
            assert [n.id for n in await second.notes.get_all()] == ["n1"]
        finally:
            await second.close()

    @pytest.mark.anyio
    async def test_unopenable_database_fails_initialization(self, temp_dirs):
        _, db_dir = temp_dirs
        (db_dir / "blocker").write_text("not a directory")
        database = SqlDatabase(f"sqlite:///{db_dir / 'blocker' / 'x.db'}")

        with pytest.raises(RepositoryError) as exc_info:
            await database.initialize()

        assert exc_info.value.code in {
            ErrorCode.STORAGE_NOT_AVAILABLE,
            ErrorCode.INITIALIZATION_ERROR,
        }

    @pytest.mark.anyio
    async def test_session_before_initialize(self):
        with pytest.raises(RepositoryError) as exc_info:
            SqlDatabase("sqlite://").session()
        assert exc_info.value.code == ErrorCode.STORAGE_NOT_AVAILABLE

    @pytest.mark.anyio
    async def test_close_is_idempotent(self, sql_backend):
        await sql_backend.close()
        await sql_backend.close()


class TestSqlAttemptTimeout:
    @pytest.mark.anyio
    async def test_slow_write_times_out_and_never_commits(
        self, sql_backend, metrics_collector, monkeypatch
    ):
        adapter = sql_backend.notes
        real_values = adapter._values

        def _slow(entity):
            time.sleep(0.3)
            return real_values(entity)

        monkeypatch.setattr(adapter, "_values", _slow)
        executor = ResilienceExecutor(
            retry_config=RetryConfig(max_attempts=1),
            timeout_ms=50,
            metrics_collector=metrics_collector,
        )

        result = await executor.execute_operation(lambda: adapter.put(make_note()), "put")

        assert not result.success
        assert result.error.code == ErrorCode.TIMEOUT_ERROR
        assert result.duration_ms < 250

        # Let the abandoned worker reach its commit check
        await anyio.sleep(0.5)
        monkeypatch.setattr(adapter, "_values", real_values)
        assert isinstance(await adapter.fetch("n1"), NotFound)
