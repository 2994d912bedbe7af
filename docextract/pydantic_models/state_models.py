"""Versioned run state.

One record per run, split into phase-specific payloads:
- PlanningPayload: per-object plans and the compiled, hash-keyed plan
- ClassificationPayload: the boolean relevance schema
- ExtractionPayload: current level, level progress flags, resolved objects

The record is only replaced through core.run_state.update_run_state(), which
bumps ``version`` on every successful write.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from docextract.pydantic_models.plan_models import ExtractionPlan, ObjectTypePlan


class LevelProgress(BaseModel):
    """Completion flags for one level. Flags only ever go False -> True."""

    identity_complete: bool = False
    extraction_complete: bool = False


class PlanningPayload(BaseModel):
    per_object_plans: dict[str, ObjectTypePlan] = Field(default_factory=dict)
    plan: ExtractionPlan | None = None
    plan_hash: str | None = None

    def valid_plan(self, expected_hash: str) -> ExtractionPlan | None:
        """The cached plan if it was compiled from the same schema and config."""
        if self.plan is not None and self.plan_hash == expected_hash:
            return self.plan
        return None


class ClassificationPayload(BaseModel):
    classification_schema: dict | None = None


class ExtractionPayload(BaseModel):
    current_level: int = 0
    level_progress: dict[int, LevelProgress] = Field(default_factory=dict)
    resolved_objects: dict[str, dict[int, list[int]]] = Field(default_factory=dict)

    def progress(self, level: int) -> LevelProgress:
        """Progress for a level (a fresh all-False record if never touched)."""
        return self.level_progress.get(level) or LevelProgress()

    def resolved_ids(self, object_type: str, level: int) -> list[int]:
        return list(self.resolved_objects.get(object_type, {}).get(level, []))


class RunState(BaseModel):
    """Versioned, typed replacement for a free-form run metadata blob."""

    version: int = 0
    planning: PlanningPayload = Field(default_factory=PlanningPayload)
    classification: ClassificationPayload = Field(default_factory=ClassificationPayload)
    extraction: ExtractionPayload = Field(default_factory=ExtractionPayload)
