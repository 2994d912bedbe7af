"""Remaining extraction: fill one extraction group's fields on one resolved object.

The object already exists (identity ran first at this level). Group
extraction returns the leaf-level data. For array object types the call
asks for this object alone, each item tagged with its name and identity
fields, and the item describing this object is picked out before the update.
"""

from __future__ import annotations

from typing import Any

from rapidfuzz import fuzz, process

from docextract.agents.group_extractor import ContextSettings, extract_group
from docextract.core.artifact_builder import build_object_artifacts
from docextract.core.context_window import validate_context_available
from docextract.core.errors import ExtractionValidationError
from docextract.core.fragment_selector import leaf_key
from docextract.core.merge import is_meaningful
from docextract.core.page_sources import item_page_sources
from docextract.core.schema_tools import split_object_fields
from docextract.core.value_helpers import normalize_for_match
from docextract.phases.classification_phase import page_artifacts
from docextract.phases.phase_base import PhaseRunner
from docextract.pydantic_models.entity_models import CanonicalObject, Operation, WorkItem
from docextract.pydantic_models.plan_models import ExtractionPlan, RemainingGroup

NAME_MATCH_CUTOFF = 80


def _known_value_overlap(item: dict, obj: CanonicalObject) -> int:
    known = obj.flattened()
    return sum(
        1 for key, value in item.items()
        if is_meaningful(value) and key in known and normalize_for_match(known[key]) == normalize_for_match(value)
    )


def select_object_item(items: list[Any], obj: CanonicalObject) -> int | None:
    """Index of the extracted item that describes obj, or None.

    Tried in order: exact name, the only item, fuzzy name, then the single
    item sharing the most known field values with the object.
    """
    candidates = [(index, item) for index, item in enumerate(items) if isinstance(item, dict)]
    if not candidates:
        return None

    wanted = normalize_for_match(obj.name)
    for index, item in candidates:
        if item.get("name") and normalize_for_match(item["name"]) == wanted:
            return index

    if len(candidates) == 1:
        return candidates[0][0]

    names = {index: str(item["name"]) for index, item in candidates if item.get("name")}
    if names:
        match = process.extractOne(
            obj.name, names, scorer=fuzz.token_sort_ratio, processor=str.lower, score_cutoff=NAME_MATCH_CUTOFF
        )
        if match is not None:
            return match[2]

    scores = {index: _known_value_overlap(item, obj) for index, item in candidates}
    best = max(scores.values())
    leaders = [index for index, score in scores.items() if score == best]
    if best > 0 and len(leaders) == 1:
        return leaders[0]
    return None


def identity_fields_for(plan: ExtractionPlan, object_type: str) -> list[str]:
    """Identity fields planned for object_type (empty when it has no identity group)."""
    for identity in plan.identity_groups():
        if identity.object_type == object_type:
            return list(identity.identity_fields)
    return []


class RemainingRunner(PhaseRunner[dict | None]):
    """Run one "Extract Remaining" work item; returns the applied fields."""

    name = "Extract Remaining"
    operation = Operation.EXTRACT_REMAINING

    async def run(self, work_item: WorkItem) -> dict | None:
        context = self.context
        config = context.config
        group = RemainingGroup.model_validate(work_item.meta["extraction_group"])
        object_id = work_item.meta.get("object_id")

        obj = context.object_store.get(object_id) if object_id is not None else None
        if obj is None:
            self.warn(f"Object {object_id} not found, skipping '{group.name}'", entity_name=group.object_type)
            return None

        inputs = context.store.input_artifacts(work_item)
        if not inputs:
            raise ExtractionValidationError(
                f"Extract Remaining process {work_item.id} has no input artifacts",
                run_id=work_item.run_id,
                work_item_id=work_item.id,
            )
        if config.adjacency_threshold is not None and config.uses_context_window:
            validate_context_available(context.store, inputs)

        schema = context.schema(work_item.run_id)
        match_fields = identity_fields_for(context.plan(work_item.run_id), group.object_type)
        result = await extract_group(
            context.agents,
            context.store,
            group,
            obj,
            inputs,
            schema,
            search_mode=work_item.meta.get("search_mode"),
            context=ContextSettings(
                all_pages=page_artifacts(context, work_item.run_id) if config.uses_context_window else [],
                before=config.context_before,
                after=config.context_after,
                adjacency_threshold=config.adjacency_threshold,
            ),
            extraction_instructions=config.extraction_instructions,
            skim_batch_size=config.skim_batch_size,
            confidence_threshold=config.confidence_threshold,
            timeout=config.extraction_timeout,
            conflict_timeout=config.conflict_timeout,
            match_fields=match_fields,
        )
        if result.is_empty:
            self.log(f"No data extracted for '{group.name}'", level="debug", object_id=obj.id)
            return None

        data, page_sources = result.data, result.page_sources
        if isinstance(data, list):
            index = select_object_item(data, obj)
            if index is None:
                self.warn(
                    f"Could not match any of {len(data)} extracted item(s) to {obj.type} '{obj.name}'",
                    entity_name=obj.name,
                    group=group.name,
                )
                return None
            data = data[index]
            page_sources = item_page_sources(page_sources, leaf_key(group.fragment_selector, group.object_type), index)

        if not isinstance(data, dict):
            return None
        # Name and identity values only locate the item; identity owns them
        match_only = ({"name"} | set(match_fields)) - set(group.fields)
        data = {k: v for k, v in data.items() if k not in match_only}
        if not data:
            return None

        columns, attributes = split_object_fields(data, schema)
        obj = context.object_store.update(obj.id, columns, attributes)

        stored_parents = context.object_store.parents_of(obj.id)
        parent = context.object_store.get(stored_parents[0][0]) if stored_parents else None

        build_object_artifacts(
            context.store,
            context.object_store,
            work_item,
            obj,
            data,
            group.fragment_selector,
            work_item.level,
            Operation.EXTRACT_REMAINING,
            label=group.name,
            parent_object=parent,
            page_sources=page_sources,
            extra_meta={"extraction_group": group.name, "search_mode": work_item.meta.get("search_mode")},
        )
        context.state.count("objects_enriched")
        self.log(
            f"Extracted '{group.name}' for {obj.type} '{obj.name}'",
            level="debug",
            fields=len(data),
            batches=result.batches_processed,
        )
        return data
