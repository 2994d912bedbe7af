"""Versioned run state and per-artifact metadata updates.

Every write follows the same discipline:

    acquire the entity's lock -> reload the latest version -> apply the
    change to a copy -> write iff the version is unchanged -> release

A failed write (someone else got there first) reloads and re-applies the
change, up to MAX_ATTEMPTS times. The helpers on top only ever set flags to
True and append IDs that are not already present, so concurrent writers can
interleave in any order and the result is the same.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import weakref
from typing import Callable

from docextract.core.errors import StateConflictError
from docextract.core.stores import EntityStore
from docextract.pydantic_models.plan_models import ExtractionPlan, ObjectTypePlan
from docextract.pydantic_models.state_models import LevelProgress, RunState

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class LockRegistry:
    """One asyncio.Lock per entity key ("run:3", "artifact:17").

    Locks are held weakly and disappear once no coroutine holds or waits on
    them, so the registry only grows with the entities in use.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


_default_locks = LockRegistry()


def get_lock_registry() -> LockRegistry:
    return _default_locks


def reset_lock_registry():
    global _default_locks
    _default_locks = LockRegistry()


async def update_run_state(
    store: EntityStore,
    run_id: int,
    mutate: Callable[[RunState], None],
    locks: LockRegistry | None = None,
) -> RunState:
    """Apply mutate() to a copy of the latest run state and compare-and-swap it in.

    Args:
        store: Entity store holding the run.
        run_id: Run to update.
        mutate: Changes the state copy in place. Must be safe to re-apply.
        locks: Lock registry (defaults to the process-wide one).

    Returns:
        The state as written (version already bumped).

    Raises:
        StateConflictError: The version kept changing for MAX_ATTEMPTS tries.
    """
    registry = locks or get_lock_registry()
    async with registry.lock(f"run:{run_id}"):
        for attempt in range(1, MAX_ATTEMPTS + 1):
            current = store.get_run(run_id).state
            updated = current.model_copy(deep=True)
            mutate(updated)
            updated.version = current.version
            if store.compare_and_swap_run_state(run_id, current.version, updated):
                return store.get_run(run_id).state
            logger.debug(f"Run {run_id} state changed during update, retrying ({attempt}/{MAX_ATTEMPTS})")
            await asyncio.sleep(0)
    raise StateConflictError(f"run {run_id}", MAX_ATTEMPTS)


async def update_artifact_meta(
    store: EntityStore,
    artifact_id: int,
    mutate: Callable[[dict], None],
    locks: LockRegistry | None = None,
) -> dict:
    """Same discipline as update_run_state(), for an artifact's meta dict."""
    registry = locks or get_lock_registry()
    async with registry.lock(f"artifact:{artifact_id}"):
        for attempt in range(1, MAX_ATTEMPTS + 1):
            artifact = store.get_artifact(artifact_id)
            version = artifact.version
            meta = copy.deepcopy(artifact.meta)
            mutate(meta)
            if store.compare_and_swap_artifact_meta(artifact_id, version, meta):
                return store.get_artifact(artifact_id).meta
            await asyncio.sleep(0)
    raise StateConflictError(f"artifact {artifact_id}", MAX_ATTEMPTS)


# =============================================================================
# Monotonic helpers
# =============================================================================


def _progress(state: RunState, level: int) -> LevelProgress:
    progress = state.extraction.level_progress.get(level)
    if progress is None:
        progress = LevelProgress()
        state.extraction.level_progress[level] = progress
    return progress


async def mark_identity_complete(store: EntityStore, run_id: int, level: int) -> RunState:
    def mutate(state: RunState):
        _progress(state, level).identity_complete = True

    return await update_run_state(store, run_id, mutate)


async def mark_extraction_complete(store: EntityStore, run_id: int, level: int) -> RunState:
    def mutate(state: RunState):
        _progress(state, level).extraction_complete = True

    return await update_run_state(store, run_id, mutate)


async def advance_level(store: EntityStore, run_id: int, from_level: int) -> RunState:
    """Move current_level to from_level + 1. Never moves backwards."""

    def mutate(state: RunState):
        state.extraction.current_level = max(state.extraction.current_level, from_level + 1)

    return await update_run_state(store, run_id, mutate)


async def append_resolved_objects(
    store: EntityStore,
    run_id: int,
    object_type: str,
    level: int,
    object_ids: list[int],
) -> RunState:
    """Append IDs to resolved_objects[object_type][level], skipping ones already there."""

    def mutate(state: RunState):
        by_level = state.extraction.resolved_objects.setdefault(object_type, {})
        existing = by_level.setdefault(level, [])
        for object_id in object_ids:
            if object_id not in existing:
                existing.append(object_id)

    return await update_run_state(store, run_id, mutate)


async def append_artifact_resolved_objects(
    store: EntityStore,
    artifact_id: int,
    object_type: str,
    object_ids: list[int],
) -> dict:
    """Cache resolved object IDs on a page artifact's meta, append-only."""

    def mutate(meta: dict):
        existing = meta.setdefault("resolved_objects", {}).setdefault(object_type, [])
        for object_id in object_ids:
            if object_id not in existing:
                existing.append(object_id)

    return await update_artifact_meta(store, artifact_id, mutate)


async def store_object_plan(store: EntityStore, run_id: int, plan: ObjectTypePlan) -> RunState:
    def mutate(state: RunState):
        state.planning.per_object_plans[plan.object_type] = plan.model_copy(deep=True)

    return await update_run_state(store, run_id, mutate)


async def store_compiled_plan(store: EntityStore, run_id: int, plan: ExtractionPlan, plan_hash: str) -> RunState:
    def mutate(state: RunState):
        state.planning.plan = plan.model_copy(deep=True)
        state.planning.plan_hash = plan_hash

    return await update_run_state(store, run_id, mutate)


async def store_classification_schema(store: EntityStore, run_id: int, schema: dict) -> RunState:
    """Store the classification schema unless one is already there."""

    def mutate(state: RunState):
        if state.classification.classification_schema is None:
            state.classification.classification_schema = copy.deepcopy(schema)

    return await update_run_state(store, run_id, mutate)
