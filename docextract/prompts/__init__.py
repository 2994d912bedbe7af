"""Prompt templates for LLM agents.

Each module contains the system prompts, user prompt builders and (where
the response shape depends on the call) response schema builders for one
agent type.
"""

from docextract.prompts.planning_prompt import (
    PLANNING_SYSTEM_PROMPT,
    build_identity_prompt,
    build_remaining_prompt,
    build_remaining_follow_up_prompt,
)
from docextract.prompts.classification_prompt import (
    CLASSIFICATION_SYSTEM_PROMPT,
    build_classification_schema,
    build_classification_prompt,
)
from docextract.prompts.extraction_prompt import (
    IDENTITY_EXTRACTION_SYSTEM_PROMPT,
    GROUP_EXTRACTION_SYSTEM_PROMPT,
    CONFIDENCE_RATING_INSTRUCTIONS,
    build_parent_options,
    build_identity_system_prompt,
    build_group_extraction_prompt,
    confidence_schema,
)
from docextract.prompts.search_query_prompt import (
    SEARCH_QUERY_DEFS,
    SEARCH_QUERY_INSTRUCTIONS,
    SEARCH_QUERY_SYSTEM_PROMPT,
)
from docextract.prompts.duplicate_prompt import DUPLICATE_SYSTEM_PROMPT, build_comparison_prompt
from docextract.prompts.conflict_prompt import (
    CONFLICT_SYSTEM_PROMPT,
    build_conflict_prompt,
    build_conflict_response_schema,
)

__all__ = [
    # Planning
    "PLANNING_SYSTEM_PROMPT",
    "build_identity_prompt",
    "build_remaining_prompt",
    "build_remaining_follow_up_prompt",
    # Classification
    "CLASSIFICATION_SYSTEM_PROMPT",
    "build_classification_schema",
    "build_classification_prompt",
    # Extraction
    "IDENTITY_EXTRACTION_SYSTEM_PROMPT",
    "GROUP_EXTRACTION_SYSTEM_PROMPT",
    "CONFIDENCE_RATING_INSTRUCTIONS",
    "build_parent_options",
    "build_identity_system_prompt",
    "build_group_extraction_prompt",
    "confidence_schema",
    # Search queries
    "SEARCH_QUERY_DEFS",
    "SEARCH_QUERY_INSTRUCTIONS",
    "SEARCH_QUERY_SYSTEM_PROMPT",
    # Duplicates
    "DUPLICATE_SYSTEM_PROMPT",
    "build_comparison_prompt",
    # Conflicts
    "CONFLICT_SYSTEM_PROMPT",
    "build_conflict_prompt",
    "build_conflict_response_schema",
]
