"""Planning: per-object identity planning, remaining-field grouping, plan compile.

Work items:
- "Plan: Identify {type}": one per object type found in the schema
- "Plan: Remaining {type}": one per type whose skim fields leave fields over

Once every planning item is complete the per-object plans are compiled into
the level-ordered ExtractionPlan and cached on the run under a hash of the
schema and the planning settings.
"""

from __future__ import annotations

from docextract.agents.planner_agent import run_identity_planner, run_remaining_planner
from docextract.core.fragment_selector import build_selector_from_fields
from docextract.core.run_state import store_compiled_plan, store_object_plan
from docextract.core.schema_tools import extract_object_types, schema_hash
from docextract.phases.phase_base import ExtractionConfig, PhaseContext, PhaseRunner
from docextract.pydantic_models.entity_models import Operation, Run, WorkItem
from docextract.pydantic_models.plan_models import (
    ExtractionPlan,
    IdentityGroup,
    IdentityPlan,
    ObjectTypeInfo,
    ObjectTypePlan,
    PlanLevel,
    RemainingGroup,
    SimpleField,
)


def plan_hash(schema: dict, config: ExtractionConfig) -> str:
    """Cache key of a compiled plan: schema plus the settings that shape it."""
    return schema_hash({"schema": schema, "planning": config.planning_signature()})


# =============================================================================
# Work item creation
# =============================================================================


def create_identity_planning_items(context: PhaseContext, run: Run) -> list[WorkItem]:
    """One "Plan: Identify" work item per object type in the schema."""
    object_types = extract_object_types(context.schema(run.id), root_name=run.name)
    items = []
    for info in object_types:
        item = context.store.create_work_item(
            run_id=run.id,
            name=f"Plan: Identify {info.name}",
            operation=Operation.PLAN_IDENTIFY,
            meta={
                "object_type": info.name,
                "object_path": info.path,
                "level": info.level,
                "parent_type": info.parent_type,
                "is_array": info.is_array,
                "simple_fields": {key: value.model_dump() for key, value in info.simple_fields.items()},
            },
        )
        items.append(item)
        context.logger.debug(f"Created Plan: Identify work item for {info.name}", work_item_id=item.id, level=info.level)
    return items


def create_remaining_planning_items(context: PhaseContext, run: Run) -> list[WorkItem]:
    """One "Plan: Remaining" work item per object plan with fields left to group."""
    items = []
    for object_type, plan in run.state.planning.per_object_plans.items():
        if not plan.has_remaining_fields:
            continue
        item = context.store.create_work_item(
            run_id=run.id,
            name=f"Plan: Remaining {object_type}",
            operation=Operation.PLAN_REMAINING,
            meta={
                "object_type": object_type,
                "remaining_fields": {key: value.model_dump() for key, value in plan.remaining_fields.items()},
            },
        )
        items.append(item)
        context.logger.debug(
            f"Created Plan: Remaining work item for {object_type}",
            work_item_id=item.id,
            remaining_fields=len(plan.remaining_fields),
        )
    return items


# =============================================================================
# Runners
# =============================================================================


def _info_from_meta(meta: dict) -> ObjectTypeInfo:
    return ObjectTypeInfo(
        name=meta["object_type"],
        path=meta.get("object_path", ""),
        level=meta.get("level", 0),
        parent_type=meta.get("parent_type"),
        is_array=meta.get("is_array", False),
        simple_fields={key: SimpleField(**value) for key, value in (meta.get("simple_fields") or {}).items()},
    )


class PlanIdentifyRunner(PhaseRunner[ObjectTypePlan]):
    """Pick identity and skim fields for one object type."""

    name = "Plan: Identify"
    operation = Operation.PLAN_IDENTIFY

    async def run(self, work_item: WorkItem) -> ObjectTypePlan:
        info = _info_from_meta(work_item.meta)
        config = self.context.config

        response = await run_identity_planner(
            self.context.agents,
            info,
            group_max_points=config.group_max_points,
            timeout=config.planning_timeout,
        )

        remaining = {
            key: value for key, value in info.simple_fields.items()
            if key not in response.skim_fields
        }
        plan = ObjectTypePlan(
            object_type=info.name,
            path=info.path,
            level=info.level,
            is_array=info.is_array,
            parent_type=info.parent_type,
            identity_group=IdentityPlan(
                identity_fields=response.identity_fields,
                skim_fields=response.skim_fields,
                search_mode=response.search_mode,
                description=response.description,
            ),
            has_remaining_fields=bool(remaining),
            remaining_fields=remaining,
            reasoning=response.reasoning,
        )
        await store_object_plan(self.context.store, work_item.run_id, plan)
        self.log(
            f"Planned identity for {info.name}",
            identity_fields=response.identity_fields,
            skim_fields=len(response.skim_fields),
            remaining=len(remaining),
        )
        return plan


class PlanRemainingRunner(PhaseRunner[ObjectTypePlan]):
    """Group one object type's remaining fields into extraction groups."""

    name = "Plan: Remaining"
    operation = Operation.PLAN_REMAINING

    async def run(self, work_item: WorkItem) -> ObjectTypePlan:
        object_type = work_item.meta["object_type"]
        config = self.context.config
        plan = self.context.run(work_item.run_id).state.planning.per_object_plans[object_type]

        result = await run_remaining_planner(
            self.context.agents,
            object_type=object_type,
            path=plan.path,
            level=plan.level,
            remaining_fields=plan.remaining_fields,
            group_max_points=config.group_max_points,
            timeout=config.planning_timeout,
            max_attempts=config.max_remaining_attempts,
        )

        self.context.store.update_work_item_meta(
            work_item.id,
            {"attempt_history": result.attempt_history, "total_attempts": result.total_attempts},
        )
        updated = plan.model_copy(update={"extraction_groups": result.groups})
        await store_object_plan(self.context.store, work_item.run_id, updated)
        self.log(
            f"Grouped remaining fields for {object_type}",
            groups=len(result.groups),
            attempts=result.total_attempts,
        )
        return updated


# =============================================================================
# Plan compile
# =============================================================================


def compile_plan(per_object_plans: dict[str, ObjectTypePlan], schema: dict) -> ExtractionPlan:
    """Compile per-object plans into levels 0..max.

    Identity entries exist only for types with identity fields. Array object
    types always extract exhaustively.
    """
    if not per_object_plans:
        return ExtractionPlan(levels=[])

    max_level = max(plan.level for plan in per_object_plans.values())
    levels = [PlanLevel(level=index) for index in range(max_level + 1)]

    for object_type, plan in sorted(per_object_plans.items(), key=lambda item: item[1].level):
        level = levels[plan.level]
        identity = plan.identity_group

        if identity.identity_fields:
            level.identities.append(
                IdentityGroup(
                    object_type=object_type,
                    identity_fields=identity.identity_fields,
                    skim_fields=identity.skim_fields,
                    search_mode="exhaustive" if plan.is_array else (identity.search_mode or "skim"),
                    description=identity.description,
                    fragment_selector=build_selector_from_fields(
                        plan.path, identity.skim_fields, schema, plan.is_array
                    ),
                )
            )

        for group in plan.extraction_groups:
            level.remaining.append(
                RemainingGroup(
                    name=group.name or "Unnamed Group",
                    description=group.description,
                    fields=group.fields,
                    search_mode="exhaustive" if plan.is_array else (group.search_mode or "exhaustive"),
                    object_type=object_type,
                    fragment_selector=build_selector_from_fields(plan.path, group.fields, schema, plan.is_array),
                )
            )

    return ExtractionPlan(levels=levels)


async def finalize_plan(context: PhaseContext, run: Run) -> ExtractionPlan:
    """Compile the plan from the run's per-object plans and cache it on the run."""
    schema = context.schema(run.id)
    plan = compile_plan(run.state.planning.per_object_plans, schema)
    await store_compiled_plan(context.store, run.id, plan, plan_hash(schema, context.config))
    context.logger.milestone(
        "Compiled extraction plan",
        levels=len(plan.levels),
        identities=len(plan.identity_groups()),
        remaining=len(plan.remaining_groups()),
    )
    return plan
