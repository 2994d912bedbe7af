"""Work item runner: route a work item to its phase runner and record the outcome.

A successful run completes the work item. A failed one is logged, recorded
in the engine's error collector and left incomplete, so the run's state is
unchanged and the item can be run again.
"""

from __future__ import annotations

from typing import Any

from docextract.core.errors import AgentConfigurationError, work_item_error
from docextract.phases.classification_phase import ClassificationRunner
from docextract.phases.identity_phase import IdentityRunner
from docextract.phases.phase_base import PhaseContext, PhaseRunner
from docextract.phases.planning_phase import PlanIdentifyRunner, PlanRemainingRunner
from docextract.phases.remaining_phase import RemainingRunner
from docextract.pydantic_models.entity_models import Operation, WorkItem


class TranscodeRunner(PhaseRunner[None]):
    """Hand one conversion to the transcode service."""

    name = "Transcode"
    operation = Operation.TRANSCODE

    async def run(self, work_item: WorkItem) -> None:
        await self.context.transcoder.transcode(work_item)


RUNNERS: dict[Operation, type[PhaseRunner]] = {
    Operation.PLAN_IDENTIFY: PlanIdentifyRunner,
    Operation.PLAN_REMAINING: PlanRemainingRunner,
    Operation.TRANSCODE: TranscodeRunner,
    Operation.CLASSIFY: ClassificationRunner,
    Operation.EXTRACT_IDENTITY: IdentityRunner,
    Operation.EXTRACT_REMAINING: RemainingRunner,
}


def runner_for(context: PhaseContext, work_item: WorkItem) -> PhaseRunner:
    runner_class = RUNNERS.get(work_item.operation)
    if runner_class is None:
        raise AgentConfigurationError(
            f"No runner for operation '{work_item.operation}'",
            run_id=work_item.run_id,
            work_item_id=work_item.id,
        )
    return runner_class(context)


async def run_work_item(context: PhaseContext, work_item: WorkItem) -> Any:
    """Run one work item under the concurrency semaphore.

    Returns:
        The runner's result, or None when the item failed.
    """
    async with context.semaphore:
        try:
            result = await runner_for(context, work_item).run(work_item)
        except Exception as e:
            error = work_item_error(e, work_item.operation.value, work_item.run_id, work_item.id, work_item.name)
            context.errors.add(error)
            context.store.update_work_item_meta(work_item.id, {"error": str(e)})
            context.logger.error(f"Work item '{work_item.name}' failed", exc=e, work_item_id=work_item.id)
            context.state.count("work_items_failed")
            return None

    context.store.complete_work_item(work_item.id)
    context.state.count(f"completed:{work_item.operation.value}")
    context.logger.tick(work_item.name)
    return result
