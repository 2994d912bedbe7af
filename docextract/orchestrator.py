"""Local orchestrator: drive one extraction run to completion in-process.

The phase state machine decides what to do next; this driver only runs
what it dispatches. Work items are created in batches, run concurrently
(bounded by a semaphore), and the state machine is asked again after every
batch:

    advance -> run batch -> advance -> run batch -> ... -> rollup

The loop ends when a call creates nothing new and nothing is pending, or
when a work item fails (its state is left untouched so it can be re-run).
"""

import asyncio
from collections import Counter
from pathlib import Path
from typing import Any

from docextract.agents.agent_service import AgentService, LLMAgentService
from docextract.core import CostTracker, PipelineErrors, get_logger
from docextract.core.stores import (
    CanonicalObjectStore,
    InMemoryCanonicalObjectStore,
    InMemoryEntityStore,
    NoTranscodeService,
    QueueDispatcher,
    TranscodeService,
)
from docextract.phases import (
    EngineState,
    ExtractionConfig,
    ExtractionResources,
    PhaseContext,
    advance_to_next_phase,
    is_run_done,
    rollup,
    run_work_item,
)
from docextract.pydantic_models.entity_models import Run, WorkItem


class Orchestrator:
    """Run the extraction engine over a list of page texts."""

    def __init__(
        self,
        schema: dict,
        pages: list[str],
        name: str = "Extraction",
        config: ExtractionConfig | None = None,
        agents: AgentService | None = None,
        object_store: CanonicalObjectStore | None = None,
        transcoder: TranscodeService | None = None,
        log_dir: str | Path | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            schema: JSON schema describing what to extract.
            pages: Text of each page, page 1 first.
            name: Run name (also the root object type name).
            config: Per-run settings. Defaults to ExtractionConfig().
            agents: Agent service. Defaults to the LLM-backed service using
                    the config's models.
            object_store: Canonical object store. Pass a shared one to
                          deduplicate against objects from earlier runs.
            transcoder: Transcode service. Defaults to no conversions.
            log_dir: Directory for log files.
        """
        self.config = config or ExtractionConfig()
        self.logger = get_logger(verbose=self.config.verbose, log_dir=log_dir)
        self.cost_tracker = CostTracker()
        self.dispatcher = QueueDispatcher()

        resources = ExtractionResources(
            store=InMemoryEntityStore(),
            object_store=object_store or InMemoryCanonicalObjectStore(),
            agents=agents or LLMAgentService(models=self.config.models(), cost_tracker=self.cost_tracker),
            transcoder=transcoder or NoTranscodeService(),
            dispatcher=self.dispatcher,
            semaphore=asyncio.Semaphore(self.config.max_concurrent),
            logger=self.logger,
            cost_tracker=self.cost_tracker,
        )
        self.context = PhaseContext(resources=resources, config=self.config, state=EngineState())
        self.run_record = self._seed_run(name, schema, pages)

        self._output: dict[str, Any] | None = None
        self._batches = 0

    def _seed_run(self, name: str, schema: dict, pages: list[str]) -> Run:
        """Create the run with one stored file and one input artifact per page."""
        store = self.context.store
        run = store.create_run(name=name, schema_definition=schema)
        artifact_ids = []
        for number, text in enumerate(pages, start=1):
            stored_file = store.create_stored_file(filename=f"page_{number}.txt", page_number=number)
            artifact = store.create_artifact(
                run_id=None,
                name=f"Page {number}",
                position=number,
                text_content=text,
                stored_file_ids=[stored_file.id],
            )
            artifact_ids.append(artifact.id)
        return store.add_run_inputs(run.id, artifact_ids)

    @property
    def run_id(self) -> int:
        return self.run_record.id

    async def run(self) -> dict[str, Any]:
        """Run the extraction to completion.

        Returns:
            The rolled-up output: {extracted_at, objects, summary}.
        """
        self.logger.start_run(self.run_record.name)

        try:
            await advance_to_next_phase(self.context, self.run_id)

            while True:
                batch = self.dispatcher.drain()
                if not batch:
                    break
                failed = await self._run_batch(batch)
                if failed:
                    self.logger.warning(f"{failed} work item(s) failed, stopping run", run_id=self.run_id)
                    break
                await advance_to_next_phase(self.context, self.run_id)

            done = is_run_done(self.context, self.run_id)
            if not done:
                self.logger.warning("Run stopped before all levels completed, rolling up partial output")
            self._output = rollup(self.context, self.run_id)

            success = done and self.context.errors.error_count == 0
            self.logger.end_run(success=success, stats=self.get_stats())
            return self._output

        except Exception as e:
            self.logger.error(f"Extraction run failed: {e}", exc=e)
            self.logger.end_run(success=False, stats=self.get_stats())
            raise

        finally:
            await self._cleanup()

    async def _run_batch(self, batch: list[WorkItem]) -> int:
        """Run one dispatched batch concurrently; returns the number that failed."""
        self._batches += 1
        operations = Counter(item.operation.value for item in batch)
        label = ", ".join(f"{op} x{count}" for op, count in operations.items())
        self.logger.start_phase(label, total=len(batch))

        results = await asyncio.gather(
            *(run_work_item(self.context, item) for item in batch),
            return_exceptions=True,
        )
        for item, result in zip(batch, results):
            if isinstance(result, Exception):
                self.logger.error(f"Work item '{item.name}' raised outside its runner", exc=result)

        self.logger.end_phase()
        return sum(1 for item in batch if not self.context.store.get_work_item(item.id).is_complete)

    async def _cleanup(self):
        """Let pending client callbacks finish."""
        await asyncio.sleep(0)

    def get_stats(self) -> dict:
        """Get extraction statistics."""
        run = self.context.run(self.run_id)
        extraction = run.state.extraction
        plan = run.state.planning.plan
        return {
            "run_id": run.id,
            "pages": len(run.input_artifact_ids),
            "levels": len(plan.levels) if plan else 0,
            "current_level": extraction.current_level,
            "batches": self._batches,
            "resolved_objects": {
                object_type: sum(len(ids) for ids in by_level.values())
                for object_type, by_level in extraction.resolved_objects.items()
            },
            "objects_created": self.context.counters.get("objects_created", 0),
            "objects_matched": self.context.counters.get("objects_matched", 0),
            "work_items_failed": self.context.counters.get("work_items_failed", 0),
            "cost": self.cost_tracker.to_dict(),
            "errors": self.context.errors.summary(),
        }

    def get_errors(self) -> PipelineErrors:
        """Get run errors."""
        return self.context.errors
