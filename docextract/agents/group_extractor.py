"""Group extractor: remaining-field extraction for one object and one group.

Two strategies, picked by the group's search mode:

- exhaustive: one call over every classified page
- skim: pages in batches, each call also rates its confidence per field
  (1-5); the best score per field is kept and extraction stops once every
  field in the group's selector reaches the threshold

Skim batches are merged with conflict detection. Conflicting values go to
the conflict resolver once all batches are done.

Results are returned at the leaf level (unwrapped through the group's
fragment selector). Array object types keep the whole leaf list.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from docextract.agents.agent_service import AgentService, AgentThreadBuilder
from docextract.agents.conflict_resolver import resolve_conflicts
from docextract.core.config import (
    ExtractionDefaults,
    SearchModes,
    TimeoutConfig,
    clamp_timeout,
)
from docextract.core.context_window import context_instructions, expand_with_context
from docextract.core.fragment_selector import (
    apply_to_schema,
    extractable_fields,
    is_leaf_array_type,
    unwrap_data,
    with_leaf_fields,
)
from docextract.core.merge import FieldConflict, apply_resolutions, merge_lists, merge_with_conflicts
from docextract.core.page_sources import (
    PAGE_SOURCE_DEF,
    extract_page_sources,
    page_source_instructions,
    page_sources_schema,
)
from docextract.core.pipeline_logger import get_logger
from docextract.core.stores import EntityStore
from docextract.pydantic_models.entity_models import Artifact, CanonicalObject
from docextract.pydantic_models.plan_models import FragmentSelector, RemainingGroup
from docextract.prompts.extraction_prompt import (
    GROUP_EXTRACTION_SYSTEM_PROMPT,
    build_group_extraction_prompt,
    confidence_schema,
)


@dataclass
class ContextSettings:
    """Neighbouring pages to include around each batch of target pages."""
    all_pages: list[Artifact] = field(default_factory=list)
    before: int = 0
    after: int = 0
    adjacency_threshold: int | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.all_pages) and (self.before > 0 or self.after > 0)


@dataclass
class GroupExtractionResult:
    data: Any = None
    page_sources: dict[str, int] = field(default_factory=dict)
    confidence: dict[str, int] = field(default_factory=dict)
    batches_processed: int = 0
    conflicts: list[FieldConflict] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.data


def match_selector(group: RemainingGroup, match_fields: list[str] | None = None) -> FragmentSelector:
    """The group's selector, with name and match_fields added for array object types.

    Items of an array object type only identify themselves through those
    fields, so they are requested alongside the group's own fields.
    """
    if match_fields is None or not is_leaf_array_type(group.fragment_selector, group.object_type):
        return group.fragment_selector
    return with_leaf_fields(group.fragment_selector, ["name", *match_fields])


def build_group_response_schema(
    schema: dict,
    group: RemainingGroup,
    include_confidence: bool,
    match_fields: list[str] | None = None,
) -> dict:
    """Response schema: the group's slice of the schema under "data", plus page sources."""
    fields = extractable_fields(group.fragment_selector)
    properties: dict[str, Any] = {
        "data": apply_to_schema(schema, match_selector(group, match_fields)),
        "page_sources": page_sources_schema(fields),
    }
    required = ["data"]
    if include_confidence:
        properties["confidence"] = confidence_schema(fields)
        required.append("confidence")

    defs = copy.deepcopy(schema.get("$defs") or {})
    defs["pageSource"] = PAGE_SOURCE_DEF
    return {"type": "object", "properties": properties, "required": required, "$defs": defs}


def all_fields_confident(fields: list[str], confidence: dict[str, int], threshold: int) -> bool:
    """True once every field reached the threshold. No fields never stops early."""
    if not fields:
        return False
    return all(confidence.get(name, 0) >= threshold for name in fields)


def _coerce_confidence(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    scores = {}
    for name, score in raw.items():
        try:
            scores[name] = int(score)
        except (TypeError, ValueError):
            continue
    return scores


async def run_group_call(
    service: AgentService,
    store: EntityStore,
    group: RemainingGroup,
    obj: CanonicalObject,
    targets: list[Artifact],
    schema: dict,
    include_confidence: bool,
    context: ContextSettings | None = None,
    extraction_instructions: str | None = None,
    timeout: int | None = TimeoutConfig.EXTRACTION,
    match_fields: list[str] | None = None,
) -> GroupExtractionResult:
    """One extraction call over one set of target pages.

    match_fields are the identity fields of the group's object type; for
    array object types they ask each returned item to name the object it
    belongs to. A failed call yields an empty result rather than raising.
    """
    preserve = is_leaf_array_type(group.fragment_selector, group.object_type)
    targeted = match_fields if preserve else None
    pages = targets
    sections = []
    if context is not None and context.enabled:
        window = expand_with_context(
            store, targets, context.all_pages, context.before, context.after, context.adjacency_threshold
        )
        pages = [page.artifact for page in window]
        sections.append(context_instructions(window))
    sections.append(page_source_instructions(targets))

    thread = (
        AgentThreadBuilder.named(f"Group Data Extraction: {group.name}", agent="extraction")
        .with_system(GROUP_EXTRACTION_SYSTEM_PROMPT)
        .with_artifacts(pages, store, include_text=True, include_files=False, include_json=False, include_meta=False)
        .with_message(
            build_group_extraction_prompt(
                group.name, obj, include_confidence, sections, extraction_instructions, match_fields=targeted
            )
        )
        .build()
    )
    result = await service.run(
        thread,
        build_group_response_schema(schema, group, include_confidence, targeted),
        timeout=clamp_timeout(timeout, TimeoutConfig.EXTRACTION),
    )
    if not result.completed or not isinstance(result.last_message_json, dict):
        get_logger().warning("Group extraction call failed", group=group.name, error=result.error)
        return GroupExtractionResult()

    response = result.last_message_json
    raw = response.get("data") if isinstance(response.get("data"), (dict, list)) else {}
    data = unwrap_data(raw, group.fragment_selector, preserve_leaf_array=preserve)

    return GroupExtractionResult(
        data=data,
        page_sources=extract_page_sources(response),
        confidence=_coerce_confidence(response.get("confidence")) if include_confidence else {},
        batches_processed=1,
    )


async def extract_exhaustive(
    service: AgentService,
    store: EntityStore,
    group: RemainingGroup,
    obj: CanonicalObject,
    artifacts: list[Artifact],
    schema: dict,
    context: ContextSettings | None = None,
    extraction_instructions: str | None = None,
    timeout: int | None = TimeoutConfig.EXTRACTION,
    match_fields: list[str] | None = None,
) -> GroupExtractionResult:
    get_logger().debug("Exhaustive extraction", group=group.name, pages=len(artifacts))
    return await run_group_call(
        service, store, group, obj, artifacts, schema, False, context, extraction_instructions, timeout,
        match_fields=match_fields,
    )


def _merge_batch(total: GroupExtractionResult, batch: GroupExtractionResult) -> None:
    if isinstance(batch.data, list):
        current = total.data if isinstance(total.data, list) else []
        total.data = merge_lists(current, batch.data)
        total.page_sources.update(batch.page_sources)
    elif isinstance(batch.data, dict):
        merged = merge_with_conflicts(
            total.data if isinstance(total.data, dict) else {},
            batch.data,
            total.page_sources,
            batch.page_sources,
        )
        total.data = merged.data
        total.page_sources = merged.page_sources
        total.conflicts.extend(merged.conflicts)

    for name, score in batch.confidence.items():
        if score > total.confidence.get(name, 0):
            total.confidence[name] = score


async def extract_with_skim(
    service: AgentService,
    store: EntityStore,
    group: RemainingGroup,
    obj: CanonicalObject,
    artifacts: list[Artifact],
    schema: dict,
    context: ContextSettings | None = None,
    extraction_instructions: str | None = None,
    batch_size: int = ExtractionDefaults.SKIM_BATCH_SIZE,
    confidence_threshold: int = ExtractionDefaults.CONFIDENCE_THRESHOLD,
    timeout: int | None = TimeoutConfig.EXTRACTION,
    conflict_timeout: int | None = TimeoutConfig.CONFLICT_RESOLUTION,
    match_fields: list[str] | None = None,
) -> GroupExtractionResult:
    """Batch through the pages until every field is confidently extracted."""
    logger = get_logger()
    fields = extractable_fields(group.fragment_selector)
    total = GroupExtractionResult()
    ordered = sorted(artifacts, key=lambda a: (a.position or 0, a.id))
    size = max(1, batch_size)

    for start in range(0, len(ordered), size):
        batch = ordered[start:start + size]
        result = await run_group_call(
            service, store, group, obj, batch, schema, True, context, extraction_instructions, timeout,
            match_fields=match_fields,
        )
        _merge_batch(total, result)
        total.batches_processed += 1

        if all_fields_confident(fields, total.confidence, confidence_threshold):
            logger.debug(
                "Skim mode: stopping early, all fields confident",
                group=group.name,
                batches_processed=total.batches_processed,
                confidence=total.confidence,
            )
            break

    if total.conflicts and isinstance(total.data, dict):
        resolutions = await resolve_conflicts(service, store, total.conflicts, ordered, schema, conflict_timeout)
        total.data = apply_resolutions(total.data, resolutions, total.page_sources)

    return total


async def extract_group(
    service: AgentService,
    store: EntityStore,
    group: RemainingGroup,
    obj: CanonicalObject,
    artifacts: list[Artifact],
    schema: dict,
    search_mode: str | None = None,
    context: ContextSettings | None = None,
    extraction_instructions: str | None = None,
    skim_batch_size: int = ExtractionDefaults.SKIM_BATCH_SIZE,
    confidence_threshold: int = ExtractionDefaults.CONFIDENCE_THRESHOLD,
    timeout: int | None = TimeoutConfig.EXTRACTION,
    conflict_timeout: int | None = TimeoutConfig.CONFLICT_RESOLUTION,
    match_fields: list[str] | None = None,
) -> GroupExtractionResult:
    """Route to skim or exhaustive extraction."""
    mode = search_mode or group.search_mode
    if mode == SearchModes.SKIM:
        return await extract_with_skim(
            service, store, group, obj, artifacts, schema, context, extraction_instructions,
            skim_batch_size, confidence_threshold, timeout, conflict_timeout, match_fields,
        )
    return await extract_exhaustive(
        service, store, group, obj, artifacts, schema, context, extraction_instructions, timeout, match_fields
    )
