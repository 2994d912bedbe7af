"""Centralized configuration for the extraction engine.

All magic numbers, thresholds, and configuration constants are documented here.
Each constant includes:
- What it controls
- Where it is read
"""

import os
from typing import Final


# =============================================================================
# LLM Provider Configuration
# =============================================================================
#
# To switch providers, set the LLM_PROVIDER environment variable:
#   - "openrouter" (default): Uses OpenRouter API gateway
#   - "azure": Uses Azure OpenAI Service
#
# For Azure, also set:
#   - AZURE_API_KEY: Your Azure OpenAI API key
#   - AZURE_API_BASE: Your Azure endpoint (e.g., https://your-resource.openai.azure.com/)
#   - AZURE_API_VERSION: API version (e.g., 2024-02-15-preview)
#   - AZURE_DEPLOYMENT_GPT_4O / AZURE_DEPLOYMENT_GPT_4O_MINI: deployment names
#
# =============================================================================

LLM_PROVIDER: Final[str] = os.environ.get("LLM_PROVIDER", "openrouter")
"""LLM provider to use. Set via LLM_PROVIDER env var.

Supported values:
- "openrouter": OpenRouter API gateway (default)
- "azure": Azure OpenAI Service
"""

API_KEY_ENV_VARS: Final[dict[str, str]] = {
    "openrouter": "OPENROUTER_API_KEY",
    "azure": "AZURE_API_KEY",
}

API_KEY_ENV_VAR: Final[str] = API_KEY_ENV_VARS.get(LLM_PROVIDER, "OPENROUTER_API_KEY")
"""Environment variable name for the LLM API key (provider-dependent)."""


# =============================================================================
# Model Configuration (Provider-Specific)
# =============================================================================

def _get_model_name(base_model: str) -> str:
    """Convert a base model name to provider-specific format.

    Args:
        base_model: Base model name (e.g., "gpt-4o", "gpt-4o-mini")

    Returns:
        Provider-specific model identifier.
    """
    if LLM_PROVIDER == "azure":
        deployment_env = f"AZURE_DEPLOYMENT_{base_model.upper().replace('-', '_')}"
        return f"azure/{os.environ.get(deployment_env, base_model)}"
    else:
        return f"openrouter/openai/{base_model}"


SMART_MODEL: Final[str] = _get_model_name("gpt-4o")
"""Default 'smart' model for planning and duplicate arbitration.

Use --smart-model CLI flag to override.
"""

FAST_MODEL: Final[str] = _get_model_name("gpt-4o-mini")
"""Default 'fast' model for high-volume work (page classification, batch extraction)."""

DEFAULT_MODELS: Final[dict[str, str]] = {
    "planning": FAST_MODEL,
    "classification": FAST_MODEL,
    "extraction": FAST_MODEL,
    "deduplication": FAST_MODEL,
    "conflict": FAST_MODEL,
    "search_query": FAST_MODEL,
}
"""Default LLM models for each agent role.

Classification runs once per page and extraction once per batch, so a single
document easily produces hundreds of calls. Everything defaults to the fast
model; the --smart-model flag upgrades planning and deduplication.
"""


# LLM Call Configuration

class LLMConfig:
    """Default parameters for LLM API calls."""

    TEMPERATURE: Final[float] = 0.0
    """Sampling temperature for all extraction calls.

    0.0 keeps planning and extraction reproducible across re-runs of a work item.
    """

    RESPONSE_FORMAT: Final[dict[str, str]] = {"type": "json_object"}
    """Response format enforcing JSON output."""


# Timeouts

class TimeoutConfig:
    """Per-call timeouts for agent threads, in seconds.

    Every configured timeout is clamped to [MIN_SECONDS, MAX_SECONDS] before
    it reaches the transport. Per-run overrides come from ExtractionConfig.
    """

    MIN_SECONDS: Final[int] = 1
    MAX_SECONDS: Final[int] = 600

    PLANNING: Final[int] = 300
    """Identity and remaining-field planning calls."""

    CLASSIFICATION: Final[int] = 120
    """Single-page relevance classification."""

    EXTRACTION: Final[int] = 300
    """Identity and group extraction. Large batches of pages need the headroom."""

    DUPLICATE_RESOLUTION: Final[int] = 60
    """LLM duplicate comparison against a handful of candidates."""

    CONFLICT_RESOLUTION: Final[int] = 120
    """Arbitration between two conflicting values of the same field."""

    SEARCH_QUERY: Final[int] = 120
    """Search query generation for array items."""

    SEARCH_QUERY_MAX_SECONDS: Final[int] = 300
    """Search query generation uses a tighter upper bound."""


def clamp_timeout(value: int | float | None, default: int, upper: int = TimeoutConfig.MAX_SECONDS) -> int:
    """Clamp a configured timeout into the allowed range.

    Args:
        value: Configured timeout (None falls back to default).
        default: Default timeout for this call type.
        upper: Upper bound (defaults to TimeoutConfig.MAX_SECONDS).

    Returns:
        Timeout in whole seconds within [MIN_SECONDS, upper].

    Examples:
        >>> clamp_timeout(None, 60)
        60
        >>> clamp_timeout(0, 60)
        1
        >>> clamp_timeout(9000, 60)
        600
    """
    seconds = int(value) if value is not None else default
    return max(TimeoutConfig.MIN_SECONDS, min(seconds, upper))


# Planning

class PlanningConfig:
    """Constants for the per-object planning phase."""

    GROUP_MAX_POINTS: Final[int] = 10
    """Soft cap on the complexity of one extraction group.

    Each field costs roughly one point; the planner is asked to split groups
    that would exceed this. Used by: prompts/planning_prompt.py
    """

    GLOBAL_SEARCH_MODE: Final[str] = "intelligent"
    """Default global search mode ("intelligent", "skim_only", "exhaustive_only")."""

    MAX_REMAINING_ATTEMPTS: Final[int] = 3
    """Attempts at covering every remaining field before the work item fails.

    Attempt 1 sends the full field list; later attempts send only the fields
    still missing. Used by: agents/planner_agent.py
    """


class SearchModes:
    """Search mode values used by plan groups and the global override."""

    SKIM: Final[str] = "skim"
    EXHAUSTIVE: Final[str] = "exhaustive"
    GROUP_MODES: Final[tuple[str, ...]] = ("skim", "exhaustive")

    INTELLIGENT: Final[str] = "intelligent"
    SKIM_ONLY: Final[str] = "skim_only"
    EXHAUSTIVE_ONLY: Final[str] = "exhaustive_only"
    GLOBAL_MODES: Final[tuple[str, ...]] = ("intelligent", "skim_only", "exhaustive_only")


# Extraction

class ExtractionDefaults:
    """Default batch sizes and thresholds for extraction work items."""

    BATCH_SIZE: Final[int] = 5
    """Pages per identity extraction batch."""

    SKIM_BATCH_SIZE: Final[int] = 5
    """Pages per skim-mode group extraction batch."""

    CONFIDENCE_THRESHOLD: Final[int] = 3
    """Minimum 1-5 confidence at which skim mode stops reading more batches.

    3 means "moderately confident, probably correct". Lower values stop
    earlier and save calls; higher values read more pages.
    """

    SEARCH_QUERY_BATCH_SIZE: Final[int] = 10
    """Array items per search query generation call."""

    PROCESS_NAME_MAX_LENGTH: Final[int] = 60
    """Maximum length of generated work item names before truncation."""


class ContextWindowConfig:
    """Neighbouring-page expansion around classified target pages."""

    ADJACENCY_THRESHOLD: Final[int] = 3
    """Minimum "belongs to previous page" score for a context page.

    Scores come from an upstream file-organization step attached to each
    page's stored file. Pages below the threshold start a new document and
    are never pulled in as context.
    """

    CONTEXT_BEFORE: Final[int] = 0
    CONTEXT_AFTER: Final[int] = 0


class MergeConfig:
    """Values treated as "nothing extracted" when merging batch results."""

    PLACEHOLDER_VALUES: Final[frozenset[str]] = frozenset(
        {"null", "<null>", "n/a", "na", "none", "unknown", "-", "--"}
    )


# Entity columns

CORE_OBJECT_COLUMNS: Final[tuple[str, ...]] = ("name", "date", "description", "url")
"""Fields stored as canonical object columns; everything else is an attribute."""
