"""Phase runners and the state machine that sequences them.

Each work item operation has its own runner class with:
- Clear inputs (the work item and its input artifacts) and outputs
- Error handling (fatal errors raise; the task runner records them)
- Logging through the shared pipeline logger

The state machine creates the work items; the task runner executes them.
"""

from docextract.phases.phase_base import (
    PhaseRunner,
    PhaseContext,
    ExtractionResources,
    ExtractionConfig,
    EngineState,
)
from docextract.phases.planning_phase import (
    PlanIdentifyRunner,
    PlanRemainingRunner,
    compile_plan,
    finalize_plan,
    plan_hash,
)
from docextract.phases.classification_phase import (
    ClassificationRunner,
    prepare_output_artifacts,
    page_artifacts,
)
from docextract.phases.level_processes import (
    build_process_name,
    create_identity_items,
    create_remaining_items,
    resolve_search_mode,
)
from docextract.phases.identity_phase import IdentityRunner
from docextract.phases.remaining_phase import RemainingRunner, select_object_item
from docextract.phases.state_machine import advance_to_next_phase, is_run_done
from docextract.phases.rollup_phase import build_rollup, rollup
from docextract.phases.task_runner import RUNNERS, TranscodeRunner, run_work_item

__all__ = [
    "PhaseRunner",
    "PhaseContext",
    "ExtractionResources",
    "ExtractionConfig",
    "EngineState",
    "PlanIdentifyRunner",
    "PlanRemainingRunner",
    "compile_plan",
    "finalize_plan",
    "plan_hash",
    "ClassificationRunner",
    "prepare_output_artifacts",
    "page_artifacts",
    "build_process_name",
    "create_identity_items",
    "create_remaining_items",
    "resolve_search_mode",
    "IdentityRunner",
    "RemainingRunner",
    "select_object_item",
    "advance_to_next_phase",
    "is_run_done",
    "build_rollup",
    "rollup",
    "RUNNERS",
    "TranscodeRunner",
    "run_work_item",
]
