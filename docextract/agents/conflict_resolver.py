"""Conflict resolver: LLM arbitration between values from different pages.

Only the pages named by the conflicts are shown to the model, text only.
An empty conflict list, pages that cannot be found, or a failed call all
resolve to {} so the merged data keeps its existing values.
"""

from __future__ import annotations

from docextract.agents.agent_service import AgentService, AgentThreadBuilder
from docextract.core.config import TimeoutConfig
from docextract.core.merge import FieldConflict
from docextract.core.pipeline_logger import get_logger
from docextract.core.stores import EntityStore
from docextract.pydantic_models.entity_models import Artifact
from docextract.prompts.conflict_prompt import (
    CONFLICT_SYSTEM_PROMPT,
    build_conflict_prompt,
    build_conflict_response_schema,
)


def conflict_pages(conflicts: list[FieldConflict]) -> set[int]:
    pages: set[int] = set()
    for conflict in conflicts:
        for page in (conflict.existing_page, conflict.new_page):
            if page is not None:
                pages.add(int(page))
    return pages


async def resolve_conflicts(
    service: AgentService,
    store: EntityStore | None,
    conflicts: list[FieldConflict],
    artifacts: list[Artifact],
    schema: dict | None = None,
    timeout: int | None = TimeoutConfig.CONFLICT_RESOLUTION,
) -> dict[str, dict]:
    """Resolve conflicts into {field_path: {resolved_value, source_page}}."""
    if not conflicts:
        return {}

    pages = conflict_pages(conflicts)
    relevant = sorted(
        (a for a in artifacts if a.position is not None and int(a.position) in pages),
        key=lambda a: a.position,
    )
    if not relevant:
        get_logger().warning("No artifacts found for conflict pages", pages=sorted(pages))
        return {}

    thread = (
        AgentThreadBuilder.named("Conflict Resolution", agent="conflict")
        .with_system(CONFLICT_SYSTEM_PROMPT)
        .with_artifacts(relevant, store, include_text=True, include_files=False, include_json=False, include_meta=False)
        .with_message(build_conflict_prompt(conflicts, schema))
        .build()
    )
    result = await service.run(thread, build_conflict_response_schema(conflicts), timeout=timeout)
    if not result.completed or not isinstance(result.last_message_json, dict):
        get_logger().warning(
            "Conflict resolution failed, keeping existing values",
            conflicts=len(conflicts),
            error=result.error,
        )
        return {}

    fields = {conflict.field_path for conflict in conflicts}
    resolutions = {
        name: value
        for name, value in result.last_message_json.items()
        if name in fields and isinstance(value, dict) and "resolved_value" in value
    }
    get_logger().debug("Resolved conflicts", requested=len(fields), resolved=len(resolutions))
    return resolutions
