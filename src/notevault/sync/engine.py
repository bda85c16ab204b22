"""Sync engine: detect, resolve and merge divergent replicas.

State machine::

    idle -> syncing -> success | conflict | error

There is no automatic return to ``idle``; callers reset explicitly. The
engine performs no I/O: both replicas are handed in as collections.
"""
import datetime
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import anyio.lowlevel

from notevault.exceptions import SyncError, SyncErrorCode
from notevault.models.schema import (
    ConflictResolution,
    Item,
    ItemType,
    Note,
    Notebook,
    ResolutionStrategy,
    SyncConflict,
    SyncState,
    SyncStatus,
    generate_id,
    item_type_of,
    utc_now,
)
from notevault.sync.merge import has_conflict, merge_arrays, merge_items

logger = logging.getLogger(__name__)

Listener = Callable[[SyncState], None]


@dataclass
class SyncResult:
    """Merged collections and the conflicts of one sync pass."""

    notes: List[Note] = field(default_factory=list)
    notebooks: List[Notebook] = field(default_factory=list)
    conflicts: List[SyncConflict] = field(default_factory=list)


def _coerce_strategy(strategy: Union[ResolutionStrategy, str]) -> ResolutionStrategy:
    try:
        return ResolutionStrategy(strategy)
    except ValueError as e:
        raise SyncError(
            f"Unknown resolution strategy: {strategy}",
            SyncErrorCode.INVALID_STRATEGY,
            {"strategy": str(strategy)},
        ) from e


class SyncEngine:
    """Owns one sync state and the subscribers observing it.

    Args:
        default_strategy: Strategy for automatic resolution.
        clock: Source of timezone-aware "now". Injected by tests.
    """

    def __init__(
        self,
        default_strategy: Union[ResolutionStrategy, str] = ResolutionStrategy.MERGE,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self.default_strategy = _coerce_strategy(default_strategy)
        self._now = clock
        self._state = SyncState()
        self._listeners: List[Listener] = []
        self._sync_running = False

    # ------------------------------------------------------------------
    # State and subscribers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_sync_state(self) -> SyncState:
        """A deep copy of the current state."""
        return self._state.model_copy(deep=True)

    @property
    def status(self) -> SyncStatus:
        return self._state.status

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.get_sync_state())
            except Exception:
                logger.exception("Sync state listener failed")

    def _update(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        self._notify()

    def get_unresolved_conflicts(self) -> List[SyncConflict]:
        return [c.model_copy(deep=True) for c in self._state.unresolved_conflicts()]

    # ------------------------------------------------------------------
    # Detection and resolution
    # ------------------------------------------------------------------

    def detect_conflicts(
        self, local_items: Sequence[Item], remote_items: Sequence[Item]
    ) -> List[SyncConflict]:
        """One unresolved conflict per id whose versions truly diverge."""
        remote_by_id: Dict[str, Item] = {item.id: item for item in remote_items}
        conflicts: List[SyncConflict] = []
        for local in local_items:
            remote = remote_by_id.get(local.id)
            if remote is None or not has_conflict(local, remote):
                continue
            conflicts.append(
                SyncConflict(
                    id=f"conflict_{local.id}_{generate_id()}",
                    type=item_type_of(local),
                    item_id=local.id,
                    local_version=local.model_copy(deep=True),
                    remote_version=remote.model_copy(deep=True),
                    detected_at=self._now(),
                )
            )
        return conflicts

    def detect_all_conflicts(
        self,
        local_notes: Sequence[Note],
        remote_notes: Sequence[Note],
        local_notebooks: Sequence[Notebook],
        remote_notebooks: Sequence[Notebook],
    ) -> List[SyncConflict]:
        return self.detect_conflicts(local_notes, remote_notes) + self.detect_conflicts(
            local_notebooks, remote_notebooks
        )

    def resolve_conflict(
        self, conflict: SyncConflict, strategy: Union[ResolutionStrategy, str]
    ) -> ConflictResolution:
        """Compute the resolution of ``conflict``; the conflict is not modified.

        ``create_both`` resolves to the local version only. Keeping the
        remote version as a separate record is up to the caller.
        """
        strategy = _coerce_strategy(strategy)
        now = self._now()
        if strategy == ResolutionStrategy.USE_LOCAL:
            item: Item = conflict.local_version.model_copy(deep=True)
        elif strategy == ResolutionStrategy.USE_REMOTE:
            item = conflict.remote_version.model_copy(deep=True)
        elif strategy == ResolutionStrategy.MERGE:
            item = merge_items(conflict.local_version, conflict.remote_version, now)
        else:
            item = conflict.local_version.model_copy(deep=True)
        return ConflictResolution(strategy=strategy, resolved_item=item, applied_at=now)

    def resolve_conflicts(
        self,
        conflicts: Sequence[SyncConflict],
        default_strategy: Optional[Union[ResolutionStrategy, str]] = None,
    ) -> Tuple[List[SyncConflict], List[SyncConflict]]:
        """Resolve each conflict; returns ``(resolved, failed)``.

        A conflict whose resolution raises is reported in ``failed``.
        """
        strategy = default_strategy or self.default_strategy
        resolved: List[SyncConflict] = []
        failed: List[SyncConflict] = []
        for conflict in conflicts:
            try:
                resolution = self.resolve_conflict(conflict, strategy)
            except Exception as e:
                logger.error(f"Failed to resolve conflict {conflict.id}: {e}")
                failed.append(conflict)
                continue
            resolved.append(
                conflict.model_copy(update={"resolved": True, "resolution": resolution})
            )
        return resolved, failed

    def merge_arrays(self, local: Sequence[Item], remote: Sequence[Item]) -> List[Item]:
        return merge_arrays(local, remote)

    # ------------------------------------------------------------------
    # Sync pass
    # ------------------------------------------------------------------

    async def start_sync(
        self,
        local_notes: Sequence[Note],
        local_notebooks: Sequence[Notebook],
        remote_notes: Sequence[Note],
        remote_notebooks: Sequence[Notebook],
        strategy: Optional[Union[ResolutionStrategy, str]] = None,
    ) -> SyncResult:
        """Run one detect-resolve-merge pass.

        Raises:
            SyncError: SYNC_IN_PROGRESS if a pass is already running;
                UNRESOLVED_CONFLICTS if any conflict failed to resolve, in
                which case nothing is merged.
        """
        if self._sync_running:
            raise SyncError("Sync already in progress", SyncErrorCode.SYNC_IN_PROGRESS)
        self._sync_running = True
        strategy = strategy or self.default_strategy

        try:
            self._update(
                status=SyncStatus.SYNCING,
                progress=0,
                total_items=len(local_notes) + len(local_notebooks),
                synced_items=0,
                errors=[],
            )
            await anyio.lowlevel.checkpoint()

            conflicts = self.detect_all_conflicts(
                local_notes, remote_notes, local_notebooks, remote_notebooks
            )
            # A fresh conflict supersedes an unresolved one for the same item
            fresh = {(c.type, c.item_id) for c in conflicts}
            retained = [
                c
                for c in self._state.conflicts
                if c.resolved or (c.type, c.item_id) not in fresh
            ]
            resolved: List[SyncConflict] = []

            if conflicts:
                logger.info(f"Detected {len(conflicts)} sync conflicts")
                self._update(status=SyncStatus.CONFLICT, conflicts=retained + conflicts)
                resolved, failed = self.resolve_conflicts(conflicts, strategy)
                if failed:
                    failed_ids = [c.item_id for c in failed]
                    message = (
                        f"{len(failed)} conflicts could not be resolved automatically: "
                        f"{', '.join(failed_ids)}"
                    )
                    self._update(
                        status=SyncStatus.ERROR,
                        conflicts=retained + resolved + failed,
                        errors=[message],
                    )
                    raise SyncError(
                        message,
                        SyncErrorCode.UNRESOLVED_CONFLICTS,
                        {"failed_item_ids": failed_ids},
                    )
                self._update(conflicts=retained + resolved, progress=50)

            merged_notes = merge_arrays(local_notes, remote_notes)
            merged_notebooks = merge_arrays(local_notebooks, remote_notebooks)
            merged_notes, merged_notebooks = self._apply_resolutions(
                merged_notes, merged_notebooks, resolved
            )

            self._update(
                status=SyncStatus.SUCCESS,
                last_sync_at=self._now(),
                progress=100,
                synced_items=len(merged_notes) + len(merged_notebooks),
            )
            logger.info(
                f"Sync complete: {len(merged_notes)} notes, "
                f"{len(merged_notebooks)} notebooks, {len(resolved)} conflicts resolved"
            )
            return SyncResult(
                notes=[n.model_copy(deep=True) for n in merged_notes],
                notebooks=[nb.model_copy(deep=True) for nb in merged_notebooks],
                conflicts=[c.model_copy(deep=True) for c in resolved],
            )
        except SyncError:
            raise
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=True)
            self._update(status=SyncStatus.ERROR, errors=[str(e)])
            raise
        finally:
            self._sync_running = False

    @staticmethod
    def _apply_resolutions(
        notes: List[Note],
        notebooks: List[Notebook],
        resolved: Sequence[SyncConflict],
    ) -> Tuple[List[Note], List[Notebook]]:
        """Replace merged entries by the resolved item of their conflict."""
        note_items: Dict[str, Item] = {}
        notebook_items: Dict[str, Item] = {}
        for conflict in resolved:
            item = conflict.resolution.resolved_item if conflict.resolution else None
            if item is None:
                continue
            target = note_items if conflict.type == ItemType.NOTE else notebook_items
            target[conflict.item_id] = item
        return (
            [note_items.get(n.id, n) for n in notes],  # type: ignore[misc]
            [notebook_items.get(nb.id, nb) for nb in notebooks],  # type: ignore[misc]
        )

    # ------------------------------------------------------------------
    # Manual resolution and housekeeping
    # ------------------------------------------------------------------

    def resolve_conflict_manually(
        self,
        conflict_id: str,
        resolution: Union[ConflictResolution, ResolutionStrategy, str],
    ) -> SyncConflict:
        """Resolve a retained conflict by id.

        ``resolution`` is either a complete ``ConflictResolution`` or a
        strategy to compute one with.

        Raises:
            SyncError: CONFLICT_NOT_FOUND, CONFLICT_ALREADY_RESOLVED, or
                TYPE_MISMATCH if the resolved item is of the wrong kind.
        """
        conflicts = list(self._state.conflicts)
        index = next((i for i, c in enumerate(conflicts) if c.id == conflict_id), None)
        if index is None:
            raise SyncError(
                f"Conflict {conflict_id} not found",
                SyncErrorCode.CONFLICT_NOT_FOUND,
                {"conflict_id": conflict_id},
            )
        conflict = conflicts[index]
        if conflict.resolved:
            raise SyncError(
                f"Conflict {conflict_id} is already resolved",
                SyncErrorCode.CONFLICT_ALREADY_RESOLVED,
                {"conflict_id": conflict_id},
            )

        if not isinstance(resolution, ConflictResolution):
            resolution = self.resolve_conflict(conflict, resolution)
        item = resolution.resolved_item
        if item is not None and item_type_of(item) != conflict.type:
            raise SyncError(
                "Resolved item does not match the conflict type",
                SyncErrorCode.TYPE_MISMATCH,
                {"conflict_type": conflict.type.value, "item_type": item_type_of(item).value},
            )

        updated = conflict.model_copy(update={"resolved": True, "resolution": resolution})
        conflicts[index] = updated
        self._update(conflicts=conflicts)
        logger.info(f"Conflict {conflict_id} resolved manually ({resolution.strategy.value})")
        return updated.model_copy(deep=True)

    def clear_resolved_conflicts(self) -> int:
        """Drop resolved conflicts from the state. Returns how many."""
        remaining = self._state.unresolved_conflicts()
        removed = len(self._state.conflicts) - len(remaining)
        self._update(conflicts=remaining)
        return removed

    def reset_sync_state(self) -> None:
        """Back to a fresh ``idle`` state."""
        self._state = SyncState()
        self._notify()
