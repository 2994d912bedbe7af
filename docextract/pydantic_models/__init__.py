"""Pydantic models and records for the extraction engine.

Modules:
- plan_models: FragmentSelector, per-object plans and the compiled ExtractionPlan
- state_models: versioned RunState (planning, classification, extraction payloads)
- entity_models: runs, work items, artifacts, stored files, canonical objects
- node_models: typed object tree used by the artifact builder and rollup
- resolution_models: duplicate and conflict resolution results
- llm_responses: structured LLM responses
"""

# Plans
from docextract.pydantic_models.plan_models import (
    FragmentSelector,
    SimpleField,
    ObjectTypeInfo,
    IdentityPlan,
    ExtractionGroupPlan,
    ObjectTypePlan,
    IdentityGroup,
    RemainingGroup,
    PlanLevel,
    ExtractionPlan,
)

# Run state
from docextract.pydantic_models.state_models import (
    LevelProgress,
    PlanningPayload,
    ClassificationPayload,
    ExtractionPayload,
    RunState,
)

# Entities
from docextract.pydantic_models.entity_models import (
    Operation,
    StoredFile,
    Artifact,
    WorkItem,
    Run,
    CanonicalObject,
)

# Object tree
from docextract.pydantic_models.node_models import ObjectNode, ChildRelation, NodeEdge

# Resolution
from docextract.pydantic_models.resolution_models import ResolutionResult

# LLM responses
from docextract.pydantic_models.llm_responses import (
    IdentityPlanResponse,
    RemainingGroupsResponse,
    DuplicateResolutionResponse,
)

__all__ = [
    # Plans
    "FragmentSelector",
    "SimpleField",
    "ObjectTypeInfo",
    "IdentityPlan",
    "ExtractionGroupPlan",
    "ObjectTypePlan",
    "IdentityGroup",
    "RemainingGroup",
    "PlanLevel",
    "ExtractionPlan",
    # Run state
    "LevelProgress",
    "PlanningPayload",
    "ClassificationPayload",
    "ExtractionPayload",
    "RunState",
    # Entities
    "Operation",
    "StoredFile",
    "Artifact",
    "WorkItem",
    "Run",
    "CanonicalObject",
    # Object tree
    "ObjectNode",
    "ChildRelation",
    "NodeEdge",
    # Resolution
    "ResolutionResult",
    # LLM responses
    "IdentityPlanResponse",
    "RemainingGroupsResponse",
    "DuplicateResolutionResponse",
]
