"""Agent implementations for the extraction engine.

Each agent wraps one kind of LLM call behind a plain async function. All of
them go through an AgentService, so a scripted service can stand in for the
LLM in tests.
"""

from docextract.agents.agent_service import (
    AgentService,
    AgentThread,
    AgentRunResult,
    AgentThreadBuilder,
    LLMAgentService,
)
from docextract.agents.planner_agent import (
    run_identity_planner,
    run_remaining_planner,
    check_coverage,
    dedupe_fields,
)
from docextract.agents.classifier_agent import classify_page, artifacts_for_category
from docextract.agents.search_query_agent import generate_search_queries
from docextract.agents.duplicate_resolver import (
    resolve_duplicate,
    find_candidates,
    is_exact_match,
    merge_on_match,
    normalize_search_queries,
)
from docextract.agents.conflict_resolver import resolve_conflicts
from docextract.agents.group_extractor import (
    ContextSettings,
    GroupExtractionResult,
    extract_group,
    extract_with_skim,
    extract_exhaustive,
)
from docextract.agents.identity_extractor import (
    IdentityExtractionResult,
    extract_identity,
    resolve_object_name,
)

__all__ = [
    # Service
    "AgentService",
    "AgentThread",
    "AgentRunResult",
    "AgentThreadBuilder",
    "LLMAgentService",
    # Planner
    "run_identity_planner",
    "run_remaining_planner",
    "check_coverage",
    "dedupe_fields",
    # Classifier
    "classify_page",
    "artifacts_for_category",
    # Identity resolution
    "generate_search_queries",
    "resolve_duplicate",
    "find_candidates",
    "is_exact_match",
    "merge_on_match",
    "normalize_search_queries",
    # Conflicts
    "resolve_conflicts",
    # Group extraction
    "ContextSettings",
    "GroupExtractionResult",
    "extract_group",
    "extract_with_skim",
    "extract_exhaustive",
    # Identity extraction
    "IdentityExtractionResult",
    "extract_identity",
    "resolve_object_name",
]
