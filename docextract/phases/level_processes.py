"""Per-level work item creation and level progress predicates.

Identity work items run first at every level; they resolve canonical
objects and append their IDs to ``resolved_objects[type][level]``. Remaining
work items for the same level are created once identity is complete, one
per resolved object and extraction group.

Both kinds only ever receive the page artifacts classified as relevant to
their group. A group with no relevant pages gets no work item at all.
"""

from __future__ import annotations

from docextract.agents.classifier_agent import artifacts_for_category
from docextract.core.config import ExtractionDefaults, SearchModes
from docextract.core.fragment_selector import parent_type
from docextract.core.value_helpers import title_from_key
from docextract.phases.classification_phase import page_artifacts
from docextract.phases.phase_base import PhaseContext
from docextract.pydantic_models.entity_models import Operation, Run, WorkItem
from docextract.pydantic_models.plan_models import ExtractionPlan
from docextract.pydantic_models.state_models import RunState

ELLIPSIS = "..."


def build_process_name(
    prefix: str,
    level: int,
    object_type: str,
    fields: list[str],
    max_length: int = ExtractionDefaults.PROCESS_NAME_MAX_LENGTH,
) -> str:
    """Readable work item name, truncated to max_length.

    Examples:
        >>> build_process_name("Identity", 0, "Provider", ["name", "npi"])
        'Identity L0: Provider (Name, Npi)'
    """
    base = f"{prefix} L{level}: {object_type}"
    if not fields:
        return base

    # Room inside " (...)"
    available = max_length - len(base) - 3
    separator = ", "
    titles = [title_from_key(name) for name in fields]
    full = separator.join(titles)
    if len(full) <= available:
        return f"{base} ({full})"

    shown = ""
    for title in titles:
        addition = title if not shown else separator + title
        if len(shown) + len(addition) > available - len(ELLIPSIS):
            break
        shown += addition

    return f"{base} ({shown}{ELLIPSIS})"


def resolve_search_mode(global_mode: str, group_mode: str | None) -> str:
    """Effective search mode of a group under the run's global mode."""
    if global_mode == SearchModes.SKIM_ONLY:
        return SearchModes.SKIM
    if global_mode == SearchModes.EXHAUSTIVE_ONLY:
        return SearchModes.EXHAUSTIVE
    return group_mode or SearchModes.SKIM


def parent_object_ids(state: RunState, level: int, expected_parent_type: str | None = None) -> list[int]:
    """Objects resolved one level up that may own objects at this level.

    Level 0 has no parents. With an expected parent type only that type's
    objects are candidates.
    """
    if level == 0:
        return []

    ids: list[int] = []
    for object_type, by_level in state.extraction.resolved_objects.items():
        if expected_parent_type is not None and object_type != expected_parent_type:
            continue
        for object_id in by_level.get(level - 1, []):
            if object_id not in ids:
                ids.append(object_id)
    return ids


# =============================================================================
# Work item creation
# =============================================================================


def create_identity_items(context: PhaseContext, run: Run, plan: ExtractionPlan, level: int) -> list[WorkItem]:
    """One "Extract Identity" work item per identity group with relevant pages."""
    plan_level = plan.level(level)
    if plan_level is None:
        return []

    pages = page_artifacts(context, run.id)
    items = []
    for group in plan_level.identities:
        artifacts = artifacts_for_category(pages, group.classification_key)
        if not artifacts:
            context.logger.debug(
                f"No pages classified for {group.object_type} identity, skipping",
                level=level,
                classification_key=group.classification_key,
            )
            continue

        item = context.store.create_work_item(
            run_id=run.id,
            name=build_process_name("Identity", level, group.object_type, group.skim_fields),
            operation=Operation.EXTRACT_IDENTITY,
            meta={
                "level": level,
                "identity_group": group.model_dump(),
                "parent_object_ids": parent_object_ids(run.state, level, parent_type(group.fragment_selector)),
                "search_mode": resolve_search_mode(context.config.global_search_mode, group.search_mode),
            },
            input_artifact_ids=[a.id for a in artifacts],
        )
        items.append(item)

    context.logger.debug("Created identity work items", level=level, count=len(items))
    return items


def create_remaining_items(context: PhaseContext, run: Run, plan: ExtractionPlan, level: int) -> list[WorkItem]:
    """One "Extract Remaining" work item per (resolved object, extraction group)."""
    plan_level = plan.level(level)
    if plan_level is None:
        return []

    pages = page_artifacts(context, run.id)
    items = []
    for group in plan_level.remaining:
        object_ids = run.state.extraction.resolved_ids(group.object_type, level)
        if not object_ids:
            context.logger.debug(f"No resolved {group.object_type} objects for '{group.name}'", level=level)
            continue

        artifacts = artifacts_for_category(pages, group.classification_key)
        if not artifacts:
            context.logger.debug(f"No pages classified for '{group.name}', skipping", level=level)
            continue

        search_mode = resolve_search_mode(context.config.global_search_mode, group.search_mode)
        for object_id in object_ids:
            items.append(
                context.store.create_work_item(
                    run_id=run.id,
                    name=build_process_name("Remaining", level, group.object_type, group.fields),
                    operation=Operation.EXTRACT_REMAINING,
                    meta={
                        "level": level,
                        "operation": "extract_remaining",
                        "extraction_group": group.model_dump(),
                        "object_id": object_id,
                        "search_mode": search_mode,
                    },
                    input_artifact_ids=[a.id for a in artifacts],
                )
            )

    context.logger.debug("Created remaining work items", level=level, count=len(items))
    return items


# =============================================================================
# Level progress
# =============================================================================


def level_items(context: PhaseContext, run_id: int, operation: Operation, level: int) -> list[WorkItem]:
    return [item for item in context.store.work_items_for(run_id, operation) if item.level == level]


def is_level_complete(state: RunState, level: int) -> bool:
    progress = state.extraction.progress(level)
    return progress.identity_complete and progress.extraction_complete


def all_levels_complete(state: RunState, plan: ExtractionPlan) -> bool:
    return all(is_level_complete(state, level) for level in range(plan.max_level + 1))
