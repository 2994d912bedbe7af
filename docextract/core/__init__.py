"""Core utilities for the extraction engine.

Only the dependency-free modules are re-exported here; stores, run state,
fragment selectors and the LLM client are imported from their own modules.
"""

from docextract.core.config import (
    LLM_PROVIDER,
    API_KEY_ENV_VAR,
    API_KEY_ENV_VARS,
    DEFAULT_MODELS,
    SMART_MODEL,
    FAST_MODEL,
    LLMConfig,
    TimeoutConfig,
    PlanningConfig,
    SearchModes,
    ExtractionDefaults,
    ContextWindowConfig,
    MergeConfig,
    clamp_timeout,
)
from docextract.core.pipeline_logger import PipelineLogger, get_logger, reset_logger
from docextract.core.errors import (
    ErrorSeverity,
    ErrorCategory,
    ExtractionError,
    PipelineErrors,
    ExtractionValidationError,
    AgentConfigurationError,
    AgentRunError,
    StateConflictError,
    llm_api_error,
    llm_parse_error,
    validation_error,
    timeout_error,
    work_item_error,
)
from docextract.core.cost_tracker import CostTracker, CallUsage

__all__ = [
    # Config
    "LLM_PROVIDER",
    "API_KEY_ENV_VAR",
    "API_KEY_ENV_VARS",
    "DEFAULT_MODELS",
    "SMART_MODEL",
    "FAST_MODEL",
    "LLMConfig",
    "TimeoutConfig",
    "PlanningConfig",
    "SearchModes",
    "ExtractionDefaults",
    "ContextWindowConfig",
    "MergeConfig",
    "clamp_timeout",
    # Logging
    "PipelineLogger",
    "get_logger",
    "reset_logger",
    # Errors
    "ErrorSeverity",
    "ErrorCategory",
    "ExtractionError",
    "PipelineErrors",
    "ExtractionValidationError",
    "AgentConfigurationError",
    "AgentRunError",
    "StateConflictError",
    "llm_api_error",
    "llm_parse_error",
    "validation_error",
    "timeout_error",
    "work_item_error",
    # Costs
    "CostTracker",
    "CallUsage",
]
