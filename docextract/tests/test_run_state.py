"""Tests for docextract.core.run_state.

Covers:
- Compare-and-swap updates with version bumps and retry exhaustion
- Monotonic level flags and level advance
- Append-only resolved object IDs (run state and artifact meta)
- Write-once classification schema
"""

import asyncio

import pytest

from docextract.core.errors import StateConflictError
from docextract.core.run_state import (
    LockRegistry,
    advance_level,
    append_artifact_resolved_objects,
    append_resolved_objects,
    mark_extraction_complete,
    mark_identity_complete,
    store_classification_schema,
    update_run_state,
)
from docextract.core.stores import InMemoryEntityStore


class ConflictingStore(InMemoryEntityStore):
    """Entity store whose run state writes always lose the race."""

    def compare_and_swap_run_state(self, run_id, expected_version, state):
        return False


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def run(store):
    return store.create_run("Invoice", {"type": "object"})


# =============================================================================
# Compare-and-swap
# =============================================================================


class TestUpdateRunState:
    """Tests for update_run_state()."""

    @pytest.mark.asyncio
    async def test_bumps_version(self, store, run):
        state = await update_run_state(store, run.id, lambda s: None)
        assert state.version == 1
        state = await update_run_state(store, run.id, lambda s: None)
        assert state.version == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self):
        store = ConflictingStore()
        run = store.create_run("Invoice", {"type": "object"})

        with pytest.raises(StateConflictError):
            await update_run_state(store, run.id, lambda s: None)

    @pytest.mark.asyncio
    async def test_concurrent_appends_all_land(self, store, run):
        await asyncio.gather(*(
            append_resolved_objects(store, run.id, "Invoice", 0, [object_id])
            for object_id in range(1, 11)
        ))

        resolved = store.get_run(run.id).state.extraction.resolved_ids("Invoice", 0)
        assert sorted(resolved) == list(range(1, 11))
        assert store.get_run(run.id).state.version == 10

    @pytest.mark.asyncio
    async def test_locks_are_dropped_after_use(self, store, run):
        locks = LockRegistry()
        await asyncio.gather(*(
            update_run_state(store, run.id, lambda s: None, locks=locks)
            for _ in range(5)
        ))
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_same_key_shares_a_lock_while_held(self):
        locks = LockRegistry()
        held = locks.lock("run:1")
        async with held:
            assert locks.lock("run:1") is held
            assert len(locks) == 1


# =============================================================================
# Monotonic helpers
# =============================================================================


class TestLevelFlags:
    """Tests for level flags and level advance."""

    @pytest.mark.asyncio
    async def test_flags_are_set_per_level(self, store, run):
        await mark_identity_complete(store, run.id, 0)

        extraction = store.get_run(run.id).state.extraction
        assert extraction.progress(0).identity_complete is True
        assert extraction.progress(0).extraction_complete is False
        assert extraction.progress(1).identity_complete is False

    @pytest.mark.asyncio
    async def test_marking_twice_keeps_flag(self, store, run):
        await mark_extraction_complete(store, run.id, 0)
        await mark_extraction_complete(store, run.id, 0)
        assert store.get_run(run.id).state.extraction.progress(0).extraction_complete is True

    @pytest.mark.asyncio
    async def test_advance_never_moves_backwards(self, store, run):
        await advance_level(store, run.id, 1)
        assert store.get_run(run.id).state.extraction.current_level == 2

        # A stale caller still thinks the run is on level 0
        await advance_level(store, run.id, 0)
        assert store.get_run(run.id).state.extraction.current_level == 2


class TestResolvedObjects:
    """Tests for append-only resolved object IDs."""

    @pytest.mark.asyncio
    async def test_append_skips_duplicates(self, store, run):
        await append_resolved_objects(store, run.id, "Vendor", 1, [4, 5])
        await append_resolved_objects(store, run.id, "Vendor", 1, [5, 6])
        assert store.get_run(run.id).state.extraction.resolved_ids("Vendor", 1) == [4, 5, 6]

    @pytest.mark.asyncio
    async def test_levels_are_kept_apart(self, store, run):
        await append_resolved_objects(store, run.id, "Vendor", 1, [4])
        assert store.get_run(run.id).state.extraction.resolved_ids("Vendor", 2) == []

    @pytest.mark.asyncio
    async def test_artifact_meta_cache(self, store):
        page = store.create_artifact(run_id=None, name="Page 1", meta={"note": "kept"})

        await append_artifact_resolved_objects(store, page.id, "Invoice", [1])
        meta = await append_artifact_resolved_objects(store, page.id, "Invoice", [1, 2])

        assert meta == {"note": "kept", "resolved_objects": {"Invoice": [1, 2]}}
        assert store.get_artifact(page.id).version == 2


class TestClassificationSchema:
    """Tests for the write-once classification schema."""

    @pytest.mark.asyncio
    async def test_first_schema_wins(self, store, run):
        first = {"type": "object", "properties": {"totals": {"type": "boolean"}}}
        await store_classification_schema(store, run.id, first)
        await store_classification_schema(store, run.id, {"type": "object", "properties": {}})

        assert store.get_run(run.id).state.classification.classification_schema == first
