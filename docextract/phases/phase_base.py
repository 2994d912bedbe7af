"""Base classes for work item runners.

The context is split into three parts so responsibilities are clear:
- **ExtractionResources** (frozen): collaborators created once: entity and
  canonical object stores, agent service, transcoder, dispatcher, logger,
  cost tracker, concurrency semaphore.
- **ExtractionConfig** (frozen): per-run settings that never change
  mid-run: models, batch sizes, thresholds, timeouts, context window.
- **EngineState** (mutable): what accumulates while work items run:
  reportable errors and counters.

PhaseContext wraps all three and exposes convenience properties so runners
can write ``ctx.store`` instead of ``ctx.resources.store``.

Persistent progress (plans, level flags, resolved objects) never lives here.
It is on the run record, updated through core.run_state.
"""

from __future__ import annotations

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Generic, Mapping, TypeVar

from docextract.agents.agent_service import AgentService
from docextract.core.config import (
    DEFAULT_MODELS,
    SMART_MODEL,
    ContextWindowConfig,
    ExtractionDefaults,
    PlanningConfig,
    SearchModes,
    TimeoutConfig,
)
from docextract.core.cost_tracker import CostTracker
from docextract.core.errors import AgentConfigurationError, PipelineErrors, validation_error
from docextract.core.pipeline_logger import PipelineLogger
from docextract.core.stores import CanonicalObjectStore, Dispatcher, EntityStore, TranscodeService
from docextract.pydantic_models.entity_models import Operation, Run, WorkItem
from docextract.pydantic_models.plan_models import ExtractionPlan


# Split Context Classes

@dataclass(frozen=True)
class ExtractionResources:
    """Shared collaborators - created once, never modified."""

    store: EntityStore
    object_store: CanonicalObjectStore
    agents: AgentService
    transcoder: TranscodeService
    dispatcher: Dispatcher
    semaphore: asyncio.Semaphore
    logger: PipelineLogger
    cost_tracker: CostTracker


@dataclass(frozen=True)
class ExtractionConfig:
    """Per-run settings - set at init, never modified.

    Default models come from docextract.core.config.DEFAULT_MODELS. The
    smart model is used for planning and duplicate arbitration when no
    explicit model is given for those roles.
    """

    smart_model: str = SMART_MODEL
    planning_model: str = DEFAULT_MODELS["planning"]
    classification_model: str = DEFAULT_MODELS["classification"]
    extraction_model: str = DEFAULT_MODELS["extraction"]
    deduplication_model: str = DEFAULT_MODELS["deduplication"]
    conflict_model: str = DEFAULT_MODELS["conflict"]
    search_query_model: str = DEFAULT_MODELS["search_query"]

    # Planning
    global_search_mode: str = PlanningConfig.GLOBAL_SEARCH_MODE
    group_max_points: int = PlanningConfig.GROUP_MAX_POINTS
    max_remaining_attempts: int = PlanningConfig.MAX_REMAINING_ATTEMPTS

    # Extraction
    batch_size: int = ExtractionDefaults.BATCH_SIZE
    skim_batch_size: int = ExtractionDefaults.SKIM_BATCH_SIZE
    confidence_threshold: int = ExtractionDefaults.CONFIDENCE_THRESHOLD
    search_query_batch_size: int = ExtractionDefaults.SEARCH_QUERY_BATCH_SIZE
    extraction_instructions: str | None = None

    # Context window
    context_before: int = ContextWindowConfig.CONTEXT_BEFORE
    context_after: int = ContextWindowConfig.CONTEXT_AFTER
    adjacency_threshold: int | None = None  # None disables adjacency filtering

    # Timeouts (seconds, clamped per call)
    planning_timeout: int = TimeoutConfig.PLANNING
    classification_timeout: int = TimeoutConfig.CLASSIFICATION
    extraction_timeout: int = TimeoutConfig.EXTRACTION
    duplicate_timeout: int = TimeoutConfig.DUPLICATE_RESOLUTION
    conflict_timeout: int = TimeoutConfig.CONFLICT_RESOLUTION
    search_query_timeout: int = TimeoutConfig.SEARCH_QUERY

    max_concurrent: int = 5
    verbose: bool = False

    def __post_init__(self):
        if self.global_search_mode not in SearchModes.GLOBAL_MODES:
            raise AgentConfigurationError(
                f"Invalid global_search_mode '{self.global_search_mode}'. "
                f"Must be one of: {', '.join(SearchModes.GLOBAL_MODES)}"
            )

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> ExtractionConfig:
        """Build from a plain settings map (YAML file, CLI), ignoring unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in (mapping or {}).items() if key in known})

    def models(self) -> dict[str, str]:
        """Model per agent role, for LLMAgentService."""
        return {
            "planning": self.planning_model,
            "classification": self.classification_model,
            "extraction": self.extraction_model,
            "deduplication": self.deduplication_model,
            "conflict": self.conflict_model,
            "search_query": self.search_query_model,
        }

    def planning_signature(self) -> dict[str, Any]:
        """Settings that change the compiled plan (part of the plan cache key)."""
        return {
            "global_search_mode": self.global_search_mode,
            "group_max_points": self.group_max_points,
        }

    @property
    def uses_context_window(self) -> bool:
        return self.context_before > 0 or self.context_after > 0


@dataclass
class EngineState:
    """Mutable state that accumulates while work items run.

    - errors: every reportable error raised by a work item
    - counters: objects created/matched, work items by operation, etc.
    """

    errors: PipelineErrors = field(default_factory=PipelineErrors)
    counters: Counter = field(default_factory=Counter)

    def count(self, key: str, amount: int = 1):
        self.counters[key] += amount


class PhaseContext:
    """Slim context holding references to the three component contexts.

    This is what runners receive. It provides:
    - resources: Immutable collaborators (stores, agents, logger, etc.)
    - config: Immutable per-run settings
    - state: Mutable engine state (errors, counters)
    """

    def __init__(self, resources: ExtractionResources, config: ExtractionConfig, state: EngineState | None = None):
        self.resources = resources
        self.config = config
        self.state = state or EngineState()

    # -- Resource properties (read-only) --

    @property
    def store(self) -> EntityStore:
        return self.resources.store

    @property
    def object_store(self) -> CanonicalObjectStore:
        return self.resources.object_store

    @property
    def agents(self) -> AgentService:
        return self.resources.agents

    @property
    def transcoder(self) -> TranscodeService:
        return self.resources.transcoder

    @property
    def dispatcher(self) -> Dispatcher:
        return self.resources.dispatcher

    @property
    def semaphore(self) -> asyncio.Semaphore:
        return self.resources.semaphore

    @property
    def logger(self) -> PipelineLogger:
        return self.resources.logger

    @property
    def cost_tracker(self) -> CostTracker:
        return self.resources.cost_tracker

    # -- State properties --

    @property
    def errors(self) -> PipelineErrors:
        return self.state.errors

    @property
    def counters(self) -> Counter:
        return self.state.counters

    # -- Run helpers --

    def run(self, run_id: int) -> Run:
        return self.store.get_run(run_id)

    def schema(self, run_id: int) -> dict:
        """The run's extraction schema.

        Raises:
            AgentConfigurationError: The run has no schema.
        """
        schema = self.run(run_id).schema_definition
        if not schema:
            raise AgentConfigurationError(f"Run {run_id} has no schema definition", run_id=run_id)
        return schema

    def plan(self, run_id: int) -> ExtractionPlan:
        """The run's compiled plan.

        Raises:
            AgentConfigurationError: Planning has not produced a plan yet.
        """
        plan = self.run(run_id).state.planning.plan
        if plan is None:
            raise AgentConfigurationError(f"Run {run_id} has no compiled extraction plan", run_id=run_id)
        return plan


T = TypeVar("T")


class PhaseRunner(ABC, Generic[T]):
    """Base class for work item runners.

    Each runner:
    - Has a name for logging and the operation it handles
    - Takes a PhaseContext with shared collaborators and settings
    - Runs one work item and produces a typed result
    - Raises on fatal errors; the task runner records them
    """

    name: str = "unnamed"
    operation: Operation | None = None

    def __init__(self, context: PhaseContext):
        """Initialize the runner.

        Args:
            context: Shared engine context.
        """
        self.context = context
        self.logger = context.logger

    @abstractmethod
    async def run(self, work_item: WorkItem) -> T:
        """Execute one work item.

        Returns:
            Runner-specific result type.
        """
        pass

    def log(self, message: str, level: str = "info", **data):
        """Log a message with runner context."""
        if level == "debug":
            self.logger.debug(f"[{self.name}] {message}", **data)
        elif level == "warning":
            self.logger.warning(f"[{self.name}] {message}", **data)
        elif level == "error":
            self.logger.error(f"[{self.name}] {message}", **data)
        else:
            self.logger.info(f"[{self.name}] {message}", **data)

    def warn(self, message: str, entity_name: str | None = None, **data):
        """Log a recovered problem and keep it as a run warning."""
        self.logger.warning(f"[{self.name}] {message}", **data)
        phase = self.operation.value if self.operation else self.name
        self.context.errors.add(validation_error(message, phase, entity_name=entity_name))
