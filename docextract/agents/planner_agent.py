"""Planner agent: identity field selection and remaining-field grouping.

Identity planning is a single structured call per object type. Remaining
planning loops until every remaining field sits in exactly one group:

    attempt 1: all remaining fields       -> groups A, B   (8 of 10 covered)
    attempt 2: the 2 missing fields only  -> group C       (10 of 10)
    dedupe:    first occurrence of each field wins, empty groups dropped
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import ValidationError

from docextract.agents.agent_service import AgentService, AgentThreadBuilder
from docextract.core.config import PlanningConfig, SearchModes, TimeoutConfig
from docextract.core.errors import ExtractionValidationError
from docextract.pydantic_models.llm_responses import IdentityPlanResponse, RemainingGroupsResponse
from docextract.pydantic_models.plan_models import ExtractionGroupPlan, ObjectTypeInfo, SimpleField
from docextract.prompts.planning_prompt import (
    PLANNING_SYSTEM_PROMPT,
    build_identity_prompt,
    build_remaining_follow_up_prompt,
    build_remaining_prompt,
)


async def run_identity_planner(
    service: AgentService,
    info: ObjectTypeInfo,
    group_max_points: int = PlanningConfig.GROUP_MAX_POINTS,
    timeout: int | None = TimeoutConfig.PLANNING,
) -> IdentityPlanResponse:
    """Select identity and skim fields for one object type.

    Raises:
        ExtractionValidationError: The planning call failed.
    """
    thread = (
        AgentThreadBuilder.named(f"Plan Identity: {info.name}", agent="planning")
        .with_system(PLANNING_SYSTEM_PROMPT)
        .with_message(build_identity_prompt(info, group_max_points))
        .build()
    )
    result = await service.run(thread, IdentityPlanResponse, timeout=timeout)
    if not result.completed:
        raise ExtractionValidationError(f"Identity planning failed for {info.name}: {result.error}")

    response = result.parsed
    if not isinstance(response, IdentityPlanResponse):
        try:
            response = IdentityPlanResponse.model_validate(result.last_message_json or {})
        except ValidationError as e:
            raise ExtractionValidationError(f"Invalid identity plan for {info.name}: {e}") from e

    known = set(info.simple_fields)
    identity_fields = [name for name in response.identity_fields if name in known]
    skim_fields = [name for name in response.skim_fields if name in known]
    # Skim fields always include the identity fields.
    for name in identity_fields:
        if name not in skim_fields:
            skim_fields.insert(0, name)

    return response.model_copy(update={"identity_fields": identity_fields, "skim_fields": skim_fields})


@dataclass
class CoverageReport:
    covered: list[str]
    missing: list[str]
    duplicates: list[str]


def check_coverage(groups: list[ExtractionGroupPlan], required: list[str]) -> CoverageReport:
    """Which required fields the groups cover, miss, or list more than once."""
    seen: list[str] = []
    duplicates: list[str] = []
    for group in groups:
        for name in group.fields:
            if name in seen and name not in duplicates:
                duplicates.append(name)
            seen.append(name)
    covered = [name for name in required if name in seen]
    missing = [name for name in required if name not in seen]
    return CoverageReport(covered=covered, missing=missing, duplicates=duplicates)


def dedupe_fields(groups: list[ExtractionGroupPlan]) -> list[ExtractionGroupPlan]:
    """Keep the first occurrence of every field; drop groups left empty."""
    assigned: set[str] = set()
    result: list[ExtractionGroupPlan] = []
    for group in groups:
        unique = []
        for name in group.fields:
            if name not in assigned:
                assigned.add(name)
                unique.append(name)
        if unique:
            result.append(group.model_copy(update={"fields": unique}))
    return result


def _remaining_response(data: dict, object_type: str) -> RemainingGroupsResponse:
    """Validate a raw grouping reply; a bad search_mode is a planning error."""
    for group in data.get("extraction_groups") or []:
        mode = group.get("search_mode") if isinstance(group, dict) else None
        if mode is not None and mode not in SearchModes.GROUP_MODES:
            raise ExtractionValidationError(
                f"Invalid search_mode '{mode}' in extraction group '{group.get('name')}' for {object_type}. "
                f"Must be one of: {', '.join(SearchModes.GROUP_MODES)}"
            )
    try:
        return RemainingGroupsResponse.model_validate(data)
    except ValidationError as e:
        raise ExtractionValidationError(f"Invalid extraction groups for {object_type}: {e}") from e


@dataclass
class RemainingPlanResult:
    groups: list[ExtractionGroupPlan]
    attempt_history: list[dict] = field(default_factory=list)

    @property
    def total_attempts(self) -> int:
        return len(self.attempt_history)


async def run_remaining_planner(
    service: AgentService,
    object_type: str,
    path: str,
    level: int,
    remaining_fields: dict[str, SimpleField],
    group_max_points: int = PlanningConfig.GROUP_MAX_POINTS,
    timeout: int | None = TimeoutConfig.PLANNING,
    max_attempts: int = PlanningConfig.MAX_REMAINING_ATTEMPTS,
) -> RemainingPlanResult:
    """Group remaining fields, retrying with only the missing ones.

    Raises:
        ExtractionValidationError: Fields still uncovered after max_attempts,
            a failed planning call, or a group with an invalid search_mode.
    """
    required = list(remaining_fields)
    to_group = dict(remaining_fields)
    accumulated: list[ExtractionGroupPlan] = []
    history: list[dict] = []

    for attempt in range(1, max_attempts + 1):
        if attempt == 1:
            prompt = build_remaining_prompt(object_type, path, level, to_group, group_max_points)
        else:
            prompt = build_remaining_follow_up_prompt(object_type, path, to_group, group_max_points, attempt)

        thread = (
            AgentThreadBuilder.named(f"Plan Remaining: {object_type} (attempt {attempt})", agent="planning")
            .with_system(PLANNING_SYSTEM_PROMPT)
            .with_message(prompt)
            .build()
        )
        result = await service.run(thread, RemainingGroupsResponse, timeout=timeout)
        if not result.completed:
            raise ExtractionValidationError(
                f"Remaining field planning failed for {object_type} on attempt {attempt}: {result.error}"
            )

        response = result.parsed
        if not isinstance(response, RemainingGroupsResponse):
            response = _remaining_response(result.last_message_json or {}, object_type)

        accumulated.extend(response.extraction_groups)
        coverage = check_coverage(accumulated, required)
        history.append({
            "attempt": attempt,
            "fields_requested": list(to_group),
            "groups_returned": len(response.extraction_groups),
            "covered_fields": coverage.covered,
            "missing_fields": coverage.missing,
            "duplicate_fields": coverage.duplicates,
        })

        if not coverage.missing:
            break

        if attempt == max_attempts:
            raise ExtractionValidationError(
                f"Failed to cover all fields after {max_attempts} attempts for {object_type}. "
                f"Missing fields: {', '.join(coverage.missing)}"
            )

        to_group = {name: remaining_fields[name] for name in coverage.missing}

    # Unknown field names never reach the plan.
    known = set(required)
    accumulated = [
        group.model_copy(update={"fields": [name for name in group.fields if name in known]})
        for group in accumulated
    ]
    groups = dedupe_fields(accumulated)

    return RemainingPlanResult(groups=groups, attempt_history=history)
