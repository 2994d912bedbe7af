"""Duplicate resolver: match an extraction against existing canonical objects.

Resolution order:
1. Exact name matches in scope that also pass the identity field check
2. Search queries from most to least specific, stopping at the first
   result set that contains an exact identity match
3. LLM comparison against the smallest non-empty candidate set

A match (quick or LLM) is followed by the merge-on-match policy, which
decides which extracted values overwrite the stored ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from docextract.agents.agent_service import AgentService, AgentThreadBuilder
from docextract.core.config import TimeoutConfig
from docextract.core.errors import ExtractionValidationError
from docextract.core.merge import is_meaningful
from docextract.core.pipeline_logger import get_logger
from docextract.core.schema_tools import is_date_field
from docextract.core.stores import CanonicalObjectStore, ObjectScope
from docextract.core.value_helpers import normalize_date, normalize_for_match
from docextract.pydantic_models.entity_models import CanonicalObject
from docextract.pydantic_models.llm_responses import DuplicateResolutionResponse
from docextract.pydantic_models.resolution_models import ResolutionResult
from docextract.prompts.duplicate_prompt import DUPLICATE_SYSTEM_PROMPT, build_comparison_prompt


# =============================================================================
# Search queries and quick match
# =============================================================================


def normalize_search_queries(search_query: Any, extracted: dict, identity_fields: list[str]) -> list[dict]:
    """Search queries as a list of criteria maps.

    A list of dicts is used as given. Anything else falls back to one
    LIKE query built from the non-empty string identity values.
    """
    if isinstance(search_query, list) and search_query and all(isinstance(q, dict) for q in search_query):
        return search_query
    if isinstance(search_query, dict) and search_query:
        return [search_query]
    fallback = {
        name: f"%{extracted[name].strip()}%"
        for name in identity_fields
        if isinstance(extracted.get(name), str) and extracted[name].strip()
    }
    return [fallback] if fallback else []


def _normalized(value: Any, date_field: bool) -> str:
    if value is None:
        return ""
    return normalize_date(value) if date_field else normalize_for_match(value)


def is_exact_match(
    candidate: CanonicalObject,
    extracted: dict,
    identity_fields: list[str],
    schema: dict | None = None,
) -> bool:
    """Every compared field equal after normalization, or empty on both sides.

    Compares the identity fields, or every extracted field when there are
    none. Date fields compare as YYYY-MM-DD.
    """
    fields = identity_fields or list(extracted)
    if not fields:
        return False
    for name in fields:
        date_field = is_date_field(schema, name)
        if _normalized(extracted.get(name), date_field) != _normalized(candidate.field_value(name), date_field):
            return False
    return True


@dataclass
class CandidateSearch:
    candidates: list[CanonicalObject] = field(default_factory=list)
    exact_match: CanonicalObject | None = None


def find_candidates(
    object_store: CanonicalObjectStore,
    scope: ObjectScope,
    extracted: dict,
    identity_fields: list[str],
    search_queries: list[dict],
    schema: dict | None = None,
) -> CandidateSearch:
    """Collect duplicate candidates, short-circuiting on an exact match."""
    name = extracted.get("name")
    if isinstance(name, str) and name.strip():
        by_name = object_store.find_by_name(scope, name)
        exact = next((c for c in by_name if is_exact_match(c, extracted, identity_fields, schema)), None)
        if exact is not None:
            return CandidateSearch(candidates=by_name, exact_match=exact)

    if not search_queries:
        candidates = object_store.search(scope)
        exact = next((c for c in candidates if is_exact_match(c, extracted, identity_fields, schema)), None)
        return CandidateSearch(candidates=candidates, exact_match=exact)

    smallest: list[CanonicalObject] = []
    for query in search_queries:
        results = object_store.search(scope, query)
        exact = next((c for c in results if is_exact_match(c, extracted, identity_fields, schema)), None)
        if exact is not None:
            return CandidateSearch(candidates=results, exact_match=exact)
        if results and (not smallest or len(results) < len(smallest)):
            smallest = results

    if not smallest and isinstance(name, str) and name.strip():
        smallest = object_store.similar_by_name(scope, name)
    return CandidateSearch(candidates=smallest)


# =============================================================================
# Merge on match
# =============================================================================


def merge_on_match(existing: CanonicalObject, extracted: dict) -> dict:
    """Extracted values that should replace the stored ones.

    A value is adopted when the stored value is not meaningful, or when both
    are strings and the extracted one is strictly longer.
    """
    updated = {}
    for name, value in extracted.items():
        if not is_meaningful(value):
            continue
        stored = existing.field_value(name)
        if not is_meaningful(stored):
            updated[name] = value
        elif isinstance(stored, str) and isinstance(value, str) and len(value.strip()) > len(stored.strip()):
            updated[name] = value
    return updated


# =============================================================================
# LLM comparison
# =============================================================================


async def compare_with_llm(
    service: AgentService,
    extracted: dict,
    candidates: list[CanonicalObject],
    timeout: int | None = TimeoutConfig.DUPLICATE_RESOLUTION,
) -> ResolutionResult:
    """Ask the model whether the extraction matches one of the candidates.

    Raises:
        ExtractionValidationError: The comparison thread failed.
    """
    thread = (
        AgentThreadBuilder.named("Duplicate Resolution", agent="deduplication")
        .with_system(DUPLICATE_SYSTEM_PROMPT)
        .with_message(build_comparison_prompt(extracted, candidates))
        .build()
    )
    result = await service.run(thread, DuplicateResolutionResponse.model_json_schema(), timeout=timeout)
    if not result.completed:
        raise ExtractionValidationError(f"Duplicate resolution thread failed: {result.error or 'Unknown error'}")

    if not isinstance(result.last_message_json, dict):
        return ResolutionResult.no_match("Failed to parse LLM response")
    try:
        response = DuplicateResolutionResponse.model_validate(result.last_message_json)
    except ValueError:
        return ResolutionResult.no_match("Failed to parse LLM response")

    if not response.is_duplicate:
        return ResolutionResult(is_duplicate=False, explanation=response.explanation, confidence=response.confidence)

    by_id = {candidate.id: candidate for candidate in candidates}
    match = by_id.get(response.matching_record_id) if response.matching_record_id is not None else None
    if match is None:
        return ResolutionResult.no_match(f"LLM specified invalid record ID: {response.matching_record_id}")

    return ResolutionResult(
        is_duplicate=True,
        existing_object_id=match.id,
        existing_object=match,
        explanation=response.explanation,
        confidence=response.confidence,
    )


async def resolve_duplicate(
    service: AgentService,
    object_store: CanonicalObjectStore,
    scope: ObjectScope,
    extracted: dict,
    identity_fields: list[str],
    search_query: Any = None,
    schema: dict | None = None,
    timeout: int | None = TimeoutConfig.DUPLICATE_RESOLUTION,
) -> ResolutionResult:
    """Find the canonical object the extraction refers to, if any.

    Returns:
        ResolutionResult with updated_values filled for a match.
    """
    queries = normalize_search_queries(search_query, extracted, identity_fields)
    search = find_candidates(object_store, scope, extracted, identity_fields, queries, schema)

    if search.exact_match is not None:
        match = search.exact_match
        get_logger().debug("Quick match on identity fields", object_type=scope.object_type, object_id=match.id)
        return ResolutionResult(
            is_duplicate=True,
            existing_object_id=match.id,
            existing_object=match,
            explanation="Exact match found on identity fields",
            confidence=1.0,
            updated_values=merge_on_match(match, extracted),
            quick_match=True,
        )

    if not search.candidates:
        return ResolutionResult.no_match("No candidates found")

    resolution = await compare_with_llm(service, extracted, search.candidates, timeout)
    if resolution.is_duplicate and resolution.existing_object is not None:
        resolution.updated_values = merge_on_match(resolution.existing_object, extracted)
    get_logger().debug(
        "Duplicate resolution",
        object_type=scope.object_type,
        candidates=len(search.candidates),
        is_duplicate=resolution.is_duplicate,
        confidence=resolution.confidence,
    )
    return resolution
