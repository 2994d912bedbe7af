"""Identity extractor: find the identifying fields of one object type in pages.

Pages are processed in batches of ``batch_size`` (ordered by position). Each
call returns the object (or, for array object types, every item) under
``data[leaf_key]`` plus page sources; single objects also carry their own
ordered duplicate-detection queries, and with several candidate parents the
model picks one as ``parent_id``.

Unlike remaining-group extraction a failed call is fatal: without identity
there is nothing to attach later data to.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from docextract.agents.agent_service import AgentService, AgentThreadBuilder
from docextract.agents.conflict_resolver import resolve_conflicts
from docextract.agents.group_extractor import ContextSettings, all_fields_confident
from docextract.agents.search_query_agent import build_query_item_schema
from docextract.core.config import ExtractionDefaults, SearchModes, TimeoutConfig, clamp_timeout
from docextract.core.context_window import context_instructions, expand_with_context
from docextract.core.errors import ExtractionValidationError
from docextract.core.fragment_selector import extractable_fields, is_leaf_array_type, leaf_key, leaf_schema
from docextract.core.merge import FieldConflict, apply_resolutions, find_list_item, merge_lists, merge_with_conflicts
from docextract.core.page_sources import (
    PAGE_SOURCE_DEF,
    extract_page_sources,
    page_source_instructions,
    page_sources_schema,
    reindex_item_page_sources,
)
from docextract.core.pipeline_logger import get_logger
from docextract.core.stores import EntityStore
from docextract.core.value_helpers import format_value_as_name
from docextract.pydantic_models.entity_models import Artifact, CanonicalObject
from docextract.pydantic_models.plan_models import IdentityGroup
from docextract.prompts.extraction_prompt import (
    CONFIDENCE_RATING_INSTRUCTIONS,
    build_identity_system_prompt,
    build_parent_options,
    confidence_schema,
)
from docextract.prompts.search_query_prompt import SEARCH_QUERY_DEFS


@dataclass
class IdentityExtractionResult:
    data: Any = None
    parent_id: int | None = None
    page_sources: dict[str, int] = field(default_factory=dict)
    search_query: list[dict] | None = None
    confidence: dict[str, int] = field(default_factory=dict)
    batches_processed: int = 0
    conflicts: list[FieldConflict] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.data


def build_identity_response_schema(
    schema: dict,
    group: IdentityGroup,
    multiple_parents: bool,
    include_confidence: bool,
    include_search_query: bool,
) -> dict:
    """Response schema for one identity call."""
    key = leaf_key(group.fragment_selector, group.object_type)
    fields = extractable_fields(group.fragment_selector)
    defs = copy.deepcopy(schema.get("$defs") or {})
    defs["pageSource"] = PAGE_SOURCE_DEF

    properties: dict[str, Any] = {
        "data": {
            "type": "object",
            "properties": {key: leaf_schema(schema, group.fragment_selector)},
        },
        "page_sources": page_sources_schema(fields),
    }
    required = ["data"]

    if include_search_query:
        query_schema, used = build_query_item_schema(group.identity_fields, schema)
        properties["search_query"] = query_schema
        for name in used:
            defs[name] = SEARCH_QUERY_DEFS[name]

    if multiple_parents:
        properties["parent_id"] = {
            "type": "integer",
            "description": "ID of the parent object this data belongs to, chosen from the listed options",
        }
        required.append("parent_id")

    if include_confidence:
        properties["confidence"] = confidence_schema(fields)
        required.append("confidence")

    return {"type": "object", "properties": properties, "required": required, "$defs": defs}


def resolve_object_name(data: dict, identity_fields: list[str]) -> str | None:
    """Display name of an extracted item.

    A non-empty "name" wins; otherwise the first filled identity field is
    formatted into one. None means the item cannot be identified.
    """
    name = data.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    for field_name in identity_fields:
        if field_name == "name":
            continue
        value = data.get(field_name)
        if value is None or value == "" or value == [] or value == {}:
            continue
        formatted = format_value_as_name(value)
        if formatted:
            return formatted
    return None


def _coerce_parent_id(raw: Any) -> int | None:
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


async def run_identity_call(
    service: AgentService,
    store: EntityStore,
    group: IdentityGroup,
    targets: list[Artifact],
    schema: dict,
    parents: list[tuple[CanonicalObject, list[CanonicalObject]]],
    include_confidence: bool,
    context: ContextSettings | None = None,
    extraction_instructions: str | None = None,
    timeout: int | None = TimeoutConfig.EXTRACTION,
) -> IdentityExtractionResult:
    """One identity call over one batch of target pages.

    Raises:
        ExtractionValidationError: The call failed or returned no JSON object.
    """
    is_array = is_leaf_array_type(group.fragment_selector, group.object_type)
    key = leaf_key(group.fragment_selector, group.object_type)

    pages = targets
    sections = [build_parent_options(parents)]
    if context is not None and context.enabled:
        window = expand_with_context(
            store, targets, context.all_pages, context.before, context.after, context.adjacency_threshold
        )
        pages = [page.artifact for page in window]
        sections.append(context_instructions(window))
    sections.append(page_source_instructions(targets))
    if include_confidence:
        sections.append(f"## Confidence\n{CONFIDENCE_RATING_INSTRUCTIONS}")

    thread = (
        AgentThreadBuilder.named(f"Extract Identity: {group.object_type}", agent="extraction")
        .with_system(build_identity_system_prompt(group.object_type, group.identity_fields, sections, extraction_instructions))
        .with_artifacts(pages, store, include_text=True, include_files=False, include_json=False, include_meta=False)
        .with_message(f"Extract the {group.object_type} identity data from the pages above.")
        .build()
    )
    response_schema = build_identity_response_schema(
        schema, group, len(parents) > 1, include_confidence, include_search_query=not is_array
    )
    result = await service.run(thread, response_schema, timeout=clamp_timeout(timeout, TimeoutConfig.EXTRACTION))
    if not result.completed or not isinstance(result.last_message_json, dict):
        raise ExtractionValidationError(
            f"Identity extraction for {group.object_type} failed: {result.error or 'no JSON response'}"
        )

    response = result.last_message_json
    wrapper = response.get("data") if isinstance(response.get("data"), dict) else {}
    data = wrapper.get(key)
    if is_array:
        if isinstance(data, dict):
            data = [data]
        elif not isinstance(data, list):
            data = []
    else:
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            data = {}

    query = response.get("search_query")
    confidence = {}
    if include_confidence and isinstance(response.get("confidence"), dict):
        for name, score in response["confidence"].items():
            try:
                confidence[name] = int(score)
            except (TypeError, ValueError):
                continue

    return IdentityExtractionResult(
        data=data,
        parent_id=_coerce_parent_id(response.get("parent_id")),
        page_sources=extract_page_sources(response),
        search_query=query if isinstance(query, list) and query else None,
        confidence=confidence,
        batches_processed=1,
    )


def _merge_batch(total: IdentityExtractionResult, batch: IdentityExtractionResult, key: str) -> None:
    if isinstance(batch.data, list):
        current = total.data if isinstance(total.data, list) else []
        merged = merge_lists(current, batch.data)
        index_map = {}
        for index, item in enumerate(batch.data):
            position = find_list_item(merged, item)
            if position is not None:
                index_map[index] = position
        for name, page in reindex_item_page_sources(batch.page_sources, key, index_map).items():
            total.page_sources.setdefault(name, page)
        total.data = merged
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

    if total.search_query is None and batch.search_query:
        total.search_query = batch.search_query
    if total.parent_id is None and batch.parent_id is not None:
        total.parent_id = batch.parent_id
    for name, score in batch.confidence.items():
        if score > total.confidence.get(name, 0):
            total.confidence[name] = score


async def extract_identity(
    service: AgentService,
    store: EntityStore,
    group: IdentityGroup,
    artifacts: list[Artifact],
    schema: dict,
    parents: list[tuple[CanonicalObject, list[CanonicalObject]]] | None = None,
    search_mode: str | None = None,
    context: ContextSettings | None = None,
    extraction_instructions: str | None = None,
    batch_size: int = ExtractionDefaults.BATCH_SIZE,
    confidence_threshold: int = ExtractionDefaults.CONFIDENCE_THRESHOLD,
    timeout: int | None = TimeoutConfig.EXTRACTION,
    conflict_timeout: int | None = TimeoutConfig.CONFLICT_RESOLUTION,
) -> IdentityExtractionResult:
    """Extract one identity group's objects from its classified pages.

    Args:
        parents: Candidate parents with their ancestors (root first).
        search_mode: "skim" rates confidence per batch and stops once every
            identity field reaches confidence_threshold.

    Raises:
        ExtractionValidationError: An identity call failed.
    """
    logger = get_logger()
    parents = parents or []
    skim = (search_mode or group.search_mode) == SearchModes.SKIM
    key = leaf_key(group.fragment_selector, group.object_type)
    ordered = sorted(artifacts, key=lambda a: (a.position or 0, a.id))
    size = max(1, batch_size)
    total = IdentityExtractionResult()

    for start in range(0, len(ordered), size):
        batch = ordered[start:start + size]
        result = await run_identity_call(
            service, store, group, batch, schema, parents, skim, context, extraction_instructions, timeout
        )
        _merge_batch(total, result, key)
        total.batches_processed += 1

        if skim and all_fields_confident(group.identity_fields, total.confidence, confidence_threshold):
            logger.debug(
                "Identity skim: stopping early, all identity fields confident",
                object_type=group.object_type,
                batches_processed=total.batches_processed,
            )
            break

    if total.conflicts and isinstance(total.data, dict):
        resolutions = await resolve_conflicts(service, store, total.conflicts, ordered, schema, conflict_timeout)
        total.data = apply_resolutions(total.data, resolutions, total.page_sources)

    logger.debug(
        "Identity extraction finished",
        object_type=group.object_type,
        batches=total.batches_processed,
        items=len(total.data) if isinstance(total.data, list) else int(bool(total.data)),
    )
    return total
