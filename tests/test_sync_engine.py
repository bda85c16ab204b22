"""Tests for the sync engine state machine."""

import logging

import anyio
import pytest

from notevault.exceptions import SyncError, SyncErrorCode
from notevault.models.schema import (
    ConflictResolution,
    ItemType,
    ResolutionStrategy,
    SyncStatus,
)
from notevault.sync.engine import SyncEngine
from tests.fakes import at, make_note, make_notebook


@pytest.fixture
def engine():
    return SyncEngine(clock=lambda: at(100))


def _diverged(id="n1"):
    local = make_note(id, title="Local", content="A", updated_at=at(1))
    remote = make_note(id, title="Remote", content="B", updated_at=at(2))
    return local, remote


class TestDetectConflicts:
    def test_updated_at_only_difference_yields_nothing(self, engine):
        local = make_note(updated_at=at(1))
        remote = make_note(updated_at=at(2))
        assert engine.detect_conflicts([local], [remote]) == []

    def test_one_unresolved_conflict_per_diverged_item(self, engine):
        local, remote = _diverged()
        conflicts = engine.detect_conflicts([local, make_note("solo")], [remote])

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.id.startswith("conflict_n1_")
        assert conflict.type == ItemType.NOTE
        assert conflict.item_id == "n1"
        assert not conflict.resolved
        assert conflict.detected_at == at(100)

    def test_detect_all_covers_notebooks(self, engine):
        local_nb = make_notebook(name="Old", updated_at=at(1))
        remote_nb = make_notebook(name="New", updated_at=at(2))
        conflicts = engine.detect_all_conflicts([], [], [local_nb], [remote_nb])
        assert [c.type for c in conflicts] == [ItemType.NOTEBOOK]


class TestResolveConflict:
    def test_use_local_is_deep_equal_to_local(self, engine):
        local, remote = _diverged()
        conflict = engine.detect_conflicts([local], [remote])[0]

        resolution = engine.resolve_conflict(conflict, "use_local")

        assert resolution.strategy == ResolutionStrategy.USE_LOCAL
        assert resolution.resolved_item == local
        assert resolution.resolved_item is not conflict.local_version

    def test_use_remote(self, engine):
        local, remote = _diverged()
        conflict = engine.detect_conflicts([local], [remote])[0]
        assert engine.resolve_conflict(conflict, "use_remote").resolved_item == remote

    def test_create_both_keeps_local(self, engine):
        local, remote = _diverged()
        conflict = engine.detect_conflicts([local], [remote])[0]
        resolution = engine.resolve_conflict(conflict, ResolutionStrategy.CREATE_BOTH)
        assert resolution.resolved_item == local

    def test_unknown_strategy(self, engine):
        local, remote = _diverged()
        conflict = engine.detect_conflicts([local], [remote])[0]
        with pytest.raises(SyncError) as exc_info:
            engine.resolve_conflict(conflict, "coin_flip")
        assert exc_info.value.code == SyncErrorCode.INVALID_STRATEGY

    def test_resolve_conflicts_partitions(self, engine):
        local, remote = _diverged()
        conflicts = engine.detect_conflicts([local], [remote])

        resolved, failed = engine.resolve_conflicts(conflicts)
        assert len(resolved) == 1 and failed == []
        assert resolved[0].resolved
        assert resolved[0].resolution.strategy == ResolutionStrategy.MERGE

        resolved, failed = engine.resolve_conflicts(conflicts, "coin_flip")
        assert resolved == [] and len(failed) == 1

    def test_invalid_default_strategy_rejected(self):
        with pytest.raises(SyncError):
            SyncEngine(default_strategy="coin_flip")


class TestStartSync:
    @pytest.mark.anyio
    async def test_end_to_end_merge(self, engine):
        local, remote = _diverged()

        result = await engine.start_sync([local], [], [remote], [])

        assert len(result.notes) == 1
        merged = result.notes[0]
        assert "A" in merged.content and "B" in merged.content
        assert merged.updated_at == at(2)
        assert merged.title == "Remote"
        assert len(result.conflicts) == 1
        assert result.conflicts[0].resolved
        assert result.conflicts[0].resolution.strategy == ResolutionStrategy.MERGE

        state = engine.get_sync_state()
        assert state.status == SyncStatus.SUCCESS
        assert state.last_sync_at == at(100)
        assert state.progress == 100
        assert state.synced_items == 1
        assert state.conflicts[0].resolved

    @pytest.mark.anyio
    async def test_no_conflicts_merges_collections(self, engine):
        result = await engine.start_sync(
            [make_note("a", updated_at=at(1))],
            [make_notebook("nb")],
            [make_note("a", updated_at=at(3)), make_note("b")],
            [],
        )
        assert [n.id for n in result.notes] == ["a", "b"]
        assert result.notes[0].updated_at == at(3)
        assert [nb.id for nb in result.notebooks] == ["nb"]
        assert result.conflicts == []
        assert engine.get_sync_state().total_items == 2

    @pytest.mark.anyio
    async def test_strategy_override(self, engine):
        local, remote = _diverged()
        result = await engine.start_sync([local], [], [remote], [], "use_local")
        assert result.notes[0] == local

    @pytest.mark.anyio
    async def test_listeners_see_state_transitions(self, engine):
        seen = []
        engine.subscribe(lambda state: seen.append(state.status))
        local, remote = _diverged()

        await engine.start_sync([local], [], [remote], [])

        assert seen[0] == SyncStatus.SYNCING
        assert SyncStatus.CONFLICT in seen
        assert seen[-1] == SyncStatus.SUCCESS

    @pytest.mark.anyio
    async def test_failing_listener_does_not_stop_others(self, engine, caplog):
        def broken(state):
            raise RuntimeError("listener bug")

        seen = []
        engine.subscribe(broken)
        engine.subscribe(lambda state: seen.append(state.status))

        with caplog.at_level(logging.ERROR, logger="notevault"):
            await engine.start_sync([], [], [], [])

        assert seen[-1] == SyncStatus.SUCCESS
        assert "Sync state listener failed" in caplog.text

    @pytest.mark.anyio
    async def test_unsubscribe(self, engine):
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        await engine.start_sync([], [], [], [])
        assert seen == []

    @pytest.mark.anyio
    async def test_unresolvable_conflicts_abort(self, engine):
        local, remote = _diverged()

        with pytest.raises(SyncError) as exc_info:
            await engine.start_sync([local], [], [remote], [], "coin_flip")

        assert exc_info.value.code == SyncErrorCode.UNRESOLVED_CONFLICTS
        assert exc_info.value.details["failed_item_ids"] == ["n1"]
        state = engine.get_sync_state()
        assert state.status == SyncStatus.ERROR
        assert state.errors and "n1" in state.errors[0]
        assert len(state.unresolved_conflicts()) == 1
        assert state.last_sync_at is None

    @pytest.mark.anyio
    async def test_repeated_failure_supersedes_unresolved_conflict(self, engine):
        local, remote = _diverged()
        for _ in range(2):
            with pytest.raises(SyncError):
                await engine.start_sync([local], [], [remote], [], "coin_flip")

        unresolved = engine.get_unresolved_conflicts()
        assert [c.item_id for c in unresolved] == ["n1"]

        await engine.start_sync([local], [], [remote], [])
        assert engine.get_unresolved_conflicts() == []
        assert [c.item_id for c in engine.get_sync_state().conflicts] == ["n1"]

    @pytest.mark.anyio
    async def test_reentrant_sync_rejected(self, engine):
        async with anyio.create_task_group() as tg:
            tg.start_soon(engine.start_sync, [], [], [], [])
            while engine.status != SyncStatus.SYNCING:
                await anyio.sleep(0)

            with pytest.raises(SyncError) as exc_info:
                await engine.start_sync([], [], [], [])

        assert exc_info.value.code == SyncErrorCode.SYNC_IN_PROGRESS
        assert engine.status == SyncStatus.SUCCESS

    @pytest.mark.anyio
    async def test_state_copies_are_isolated(self, engine):
        local, remote = _diverged()
        await engine.start_sync([local], [], [remote], [])

        snapshot = engine.get_sync_state()
        snapshot.conflicts.clear()
        snapshot.status = SyncStatus.ERROR

        assert engine.status == SyncStatus.SUCCESS
        assert len(engine.get_sync_state().conflicts) == 1


class TestManualResolution:
    async def _failed_sync(self, engine):
        local, remote = _diverged()
        with pytest.raises(SyncError):
            await engine.start_sync([local], [], [remote], [], "coin_flip")
        return engine.get_unresolved_conflicts()[0]

    @pytest.mark.anyio
    async def test_resolve_retained_conflict(self, engine):
        conflict = await self._failed_sync(engine)

        resolved = engine.resolve_conflict_manually(conflict.id, "use_remote")

        assert resolved.resolved
        assert resolved.resolution.resolved_item == conflict.remote_version
        assert engine.get_unresolved_conflicts() == []

    @pytest.mark.anyio
    async def test_already_resolved(self, engine):
        conflict = await self._failed_sync(engine)
        engine.resolve_conflict_manually(conflict.id, "use_local")

        with pytest.raises(SyncError) as exc_info:
            engine.resolve_conflict_manually(conflict.id, "use_local")
        assert exc_info.value.code == SyncErrorCode.CONFLICT_ALREADY_RESOLVED

    def test_unknown_conflict(self, engine):
        with pytest.raises(SyncError) as exc_info:
            engine.resolve_conflict_manually("conflict_missing", "use_local")
        assert exc_info.value.code == SyncErrorCode.CONFLICT_NOT_FOUND

    @pytest.mark.anyio
    async def test_resolution_of_wrong_type(self, engine):
        conflict = await self._failed_sync(engine)
        resolution = ConflictResolution(
            strategy=ResolutionStrategy.USE_LOCAL, resolved_item=make_notebook()
        )
        with pytest.raises(SyncError) as exc_info:
            engine.resolve_conflict_manually(conflict.id, resolution)
        assert exc_info.value.code == SyncErrorCode.TYPE_MISMATCH

    @pytest.mark.anyio
    async def test_clear_and_reset(self, engine):
        conflict = await self._failed_sync(engine)
        engine.resolve_conflict_manually(conflict.id, "merge")
        notified = []
        engine.subscribe(notified.append)

        assert engine.clear_resolved_conflicts() == 1
        assert engine.get_sync_state().conflicts == []

        engine.reset_sync_state()
        assert engine.status == SyncStatus.IDLE
        assert notified[-1].status == SyncStatus.IDLE
