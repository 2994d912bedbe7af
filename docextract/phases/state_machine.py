"""Phase state machine: decide and trigger the next phase of a run.

advance_to_next_phase() is the single entry point. It is called once when a
run starts and again after every batch of completed work items. Each call
inspects the persisted run state, and the first phase whose predicate holds
creates its work items:

    1. Planning            no valid cached plan
    2. Artifact prep       plan ready, no root output artifact
    3. Transcoding         conversions outstanding
    4. Classification      not complete for the run
    5. Identity (level n)  identity flag false
    6. Remaining (level n) identity flag true, extraction flag false
    7. Level advance       level n complete, plan has level n+1
    8. Done

A phase that yields no work items marks its flag and falls through to the
next one. With nothing newly completed the call is a no-op, so calling it
redundantly is safe.
"""

from __future__ import annotations

from docextract.core.errors import ExtractionValidationError
from docextract.core.run_state import advance_level, get_lock_registry, mark_extraction_complete, mark_identity_complete
from docextract.phases.classification_phase import (
    create_classification_items,
    is_classification_complete,
    page_artifacts,
    prepare_output_artifacts,
)
from docextract.phases.level_processes import (
    all_levels_complete,
    create_identity_items,
    create_remaining_items,
    level_items,
)
from docextract.phases.phase_base import PhaseContext
from docextract.phases.planning_phase import (
    create_identity_planning_items,
    create_remaining_planning_items,
    finalize_plan,
    plan_hash,
)
from docextract.pydantic_models.entity_models import Operation, WorkItem


def _all_complete(items: list[WorkItem]) -> bool:
    return all(item.is_complete for item in items)


async def _planning_step(context: PhaseContext, run_id: int) -> list[WorkItem] | None:
    """Planning work items, [] to wait, or None once a valid plan is cached."""
    run = context.run(run_id)
    schema = context.schema(run_id)
    if run.state.planning.valid_plan(plan_hash(schema, context.config)) is not None:
        return None

    store = context.store
    identify = store.work_items_for(run_id, Operation.PLAN_IDENTIFY)
    if not identify:
        created = create_identity_planning_items(context, run)
        if not created:
            raise ExtractionValidationError("Schema defines no object types to extract", run_id=run_id)
        context.logger.milestone("Planning: identifying object types", work_items=len(created))
        return created
    if not _all_complete(identify):
        return []

    remaining = store.work_items_for(run_id, Operation.PLAN_REMAINING)
    if not remaining:
        created = create_remaining_planning_items(context, context.run(run_id))
        if created:
            context.logger.milestone("Planning: grouping remaining fields", work_items=len(created))
            return created
    elif not _all_complete(remaining):
        return []

    await finalize_plan(context, context.run(run_id))
    return None


async def _transcode_step(context: PhaseContext, run_id: int) -> list[WorkItem] | None:
    existing = context.store.work_items_for(run_id, Operation.TRANSCODE)
    if existing:
        return None if _all_complete(existing) else []

    needing = context.transcoder.artifacts_needing_transcode(page_artifacts(context, run_id))
    if not needing:
        return None
    created = context.transcoder.create_transcode_processes(context.run(run_id), needing)
    if created:
        context.logger.milestone("Transcoding pages", work_items=len(created))
        return created
    return None


async def _level_step(context: PhaseContext, run_id: int) -> list[WorkItem] | None:
    """Work for the current level, [] to wait, or None when every level is done."""
    store = context.store
    plan = context.plan(run_id)

    while True:
        run = context.run(run_id)
        level = run.state.extraction.current_level
        progress = run.state.extraction.progress(level)

        if not progress.identity_complete:
            items = level_items(context, run_id, Operation.EXTRACT_IDENTITY, level)
            if not items:
                created = create_identity_items(context, run, plan, level)
                if created:
                    context.logger.milestone(f"Level {level}: identity extraction", work_items=len(created))
                    return created
            elif not _all_complete(items):
                return []
            await mark_identity_complete(store, run_id, level)
            continue

        if not progress.extraction_complete:
            items = level_items(context, run_id, Operation.EXTRACT_REMAINING, level)
            if not items:
                created = create_remaining_items(context, run, plan, level)
                if created:
                    context.logger.milestone(f"Level {level}: remaining extraction", work_items=len(created))
                    return created
            elif not _all_complete(items):
                return []
            await mark_extraction_complete(store, run_id, level)
            continue

        if level < plan.max_level:
            await advance_level(store, run_id, level)
            context.logger.info(f"Advanced to level {level + 1}")
            continue

        return None


async def advance_to_next_phase(context: PhaseContext, run_id: int) -> list[WorkItem]:
    """Create and dispatch the next batch of work items for a run.

    Returns:
        The created work items; empty while waiting on outstanding work or
        once the run is done.

    Raises:
        ExtractionValidationError: The schema has no object types, or the run
            has no input pages.
    """
    async with get_lock_registry().lock(f"advance:{run_id}"):
        created = await _advance(context, run_id)
    if created:
        context.dispatcher.dispatch(created)
    return created


async def _advance(context: PhaseContext, run_id: int) -> list[WorkItem]:
    step = await _planning_step(context, run_id)
    if step is not None:
        return step

    if context.store.root_artifact(run_id) is None:
        run = context.run(run_id)
        if not run.input_artifact_ids:
            raise ExtractionValidationError("No input pages found for data extraction", run_id=run_id)
        prepare_output_artifacts(context, run)

    step = await _transcode_step(context, run_id)
    if step is not None:
        return step

    if not is_classification_complete(context, run_id):
        if context.store.work_items_for(run_id, Operation.CLASSIFY):
            return []
        created = await create_classification_items(context, context.run(run_id), context.plan(run_id))
        context.logger.milestone("Classifying pages", work_items=len(created))
        return created

    step = await _level_step(context, run_id)
    if step is not None:
        return step

    return []


def is_run_done(context: PhaseContext, run_id: int) -> bool:
    """True once every level's identity and extraction flags are set."""
    run = context.run(run_id)
    plan = run.state.planning.plan
    return plan is not None and all_levels_complete(run.state, plan)
