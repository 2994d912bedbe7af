"""Schema-driven hierarchical extraction from multi-page documents.

A JSON schema describes the objects to extract. The engine plans how to
find each object type, classifies pages by relevance, then resolves objects
level by level (identity first, remaining fields second), deduplicating
against canonical objects and reconciling conflicting values across page
batches. Rollup rebuilds the final nested tree.

Architecture:
    core/             - config, logging, errors, stores, run state, selectors
    prompts/          - LLM prompt templates
    agents/           - one LLM call kind per module, behind an AgentService
    pydantic_models/  - plans, run state, entities, object tree
    phases/           - work item runners and the phase state machine

Usage:
    from docextract import Orchestrator

    orchestrator = Orchestrator(schema, pages, name="Demand")
    output = await orchestrator.run()

CLI:
    docextract schema.json pages/
"""

from docextract.orchestrator import Orchestrator
from docextract.phases import ExtractionConfig, advance_to_next_phase, rollup
from docextract.pydantic_models import (
    # Plans
    FragmentSelector,
    ExtractionPlan,
    IdentityGroup,
    RemainingGroup,
    # Run state
    RunState,
    # Entities
    Operation,
    Artifact,
    WorkItem,
    Run,
    CanonicalObject,
)

__all__ = [
    # Main entry point
    "Orchestrator",
    "ExtractionConfig",
    "advance_to_next_phase",
    "rollup",
    # Plans
    "FragmentSelector",
    "ExtractionPlan",
    "IdentityGroup",
    "RemainingGroup",
    # Run state
    "RunState",
    # Entities
    "Operation",
    "Artifact",
    "WorkItem",
    "Run",
    "CanonicalObject",
]
