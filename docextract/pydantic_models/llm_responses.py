"""Response models for structured agent calls.

Each model is sent to the agent service as the response schema; instructor
validates the reply and asks the model to repair it when validation fails.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from docextract.pydantic_models.plan_models import ExtractionGroupPlan


class IdentityPlanResponse(BaseModel):
    """Identity field selection for one object type."""

    identity_fields: list[str] = Field(
        default_factory=list,
        description="Minimal set of fields that together uniquely identify one instance",
    )
    skim_fields: list[str] = Field(
        default_factory=list,
        description="Identity fields plus any other fields cheap to extract in the same pass",
    )
    search_mode: Literal["skim", "exhaustive"] = Field(
        default="skim",
        description="skim: stop once identity is found; exhaustive: read every relevant page",
    )
    description: str = Field(
        default="",
        description="Which pages are relevant for identifying this object type",
    )
    reasoning: str = ""

    @field_validator("skim_fields")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


class RemainingGroupsResponse(BaseModel):
    """Partition of remaining fields into named extraction groups."""

    extraction_groups: list[ExtractionGroupPlan] = Field(default_factory=list)
    reasoning: str = ""


class DuplicateResolutionResponse(BaseModel):
    """LLM verdict on whether an extraction matches an existing record."""

    is_duplicate: bool = False
    matching_record_id: int | None = Field(
        default=None,
        description="ID of the matching existing record, or null",
    )
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    explanation: str = ""
