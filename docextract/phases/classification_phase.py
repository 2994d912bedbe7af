"""Classification: artifact preparation and per-page relevance classification.

Artifact preparation creates the run's root output artifact with one child
per input page. Every later output artifact hangs below one of these pages.

Classification runs the boolean schema (one property per plan group) over
each page and writes the result to ``page.meta["classification"]``.
"""

from __future__ import annotations

from docextract.agents.classifier_agent import classify_page
from docextract.core.errors import AgentConfigurationError, ExtractionValidationError
from docextract.core.run_state import store_classification_schema, update_artifact_meta
from docextract.phases.phase_base import PhaseContext, PhaseRunner
from docextract.pydantic_models.entity_models import Artifact, Operation, Run, WorkItem
from docextract.pydantic_models.plan_models import ExtractionPlan
from docextract.prompts.classification_prompt import build_classification_schema

ROOT_ARTIFACT_NAME = "Extraction Output"


def prepare_output_artifacts(context: PhaseContext, run: Run) -> Artifact:
    """Create the root output artifact and one page artifact per run input."""
    store = context.store
    root = store.create_artifact(run_id=run.id, name=ROOT_ARTIFACT_NAME, meta={"output_root": True})
    for page in store.run_inputs(run):
        store.create_artifact(
            run_id=run.id,
            name=page.name or f"Page {page.position}",
            parent_artifact_id=root.id,
            position=page.position,
            text_content=page.text_content,
            meta={"source_artifact_id": page.id},
            stored_file_ids=page.stored_file_ids,
        )
    context.logger.debug("Prepared output artifacts", root_artifact_id=root.id, pages=len(run.input_artifact_ids))
    return root


def page_artifacts(context: PhaseContext, run_id: int) -> list[Artifact]:
    """The root output artifact's page children, by position."""
    root = context.store.root_artifact(run_id)
    if root is None:
        return []
    pages = [a for a in context.store.children_of(root.id) if a.position is not None]
    return sorted(pages, key=lambda a: (a.position, a.id))


async def create_classification_items(context: PhaseContext, run: Run, plan: ExtractionPlan) -> list[WorkItem]:
    """Store the classification schema and create one work item per page."""
    schema = build_classification_schema(plan)
    await store_classification_schema(context.store, run.id, schema)

    items = []
    for page in page_artifacts(context, run.id):
        items.append(
            context.store.create_work_item(
                run_id=run.id,
                name=f"Classify Page {page.position}",
                operation=Operation.CLASSIFY,
                meta={"child_artifact_id": page.id},
                input_artifact_ids=[page.id],
            )
        )
    context.logger.debug(
        "Created classification work items",
        pages=len(items),
        categories=len(schema.get("properties") or {}),
    )
    return items


def is_classification_complete(context: PhaseContext, run_id: int) -> bool:
    """True iff at least one classification item exists and all are complete."""
    items = context.store.work_items_for(run_id, Operation.CLASSIFY)
    return bool(items) and all(item.is_complete for item in items)


class ClassificationRunner(PhaseRunner[dict]):
    """Classify one page against the run's boolean relevance schema."""

    name = "Classify"
    operation = Operation.CLASSIFY

    async def run(self, work_item: WorkItem) -> dict:
        artifact_id = work_item.meta.get("child_artifact_id")
        if artifact_id is None:
            raise ExtractionValidationError(
                f"Classify process {work_item.id} has no child_artifact_id",
                run_id=work_item.run_id,
                work_item_id=work_item.id,
            )

        run = self.context.run(work_item.run_id)
        schema = run.state.classification.classification_schema
        if not schema:
            raise AgentConfigurationError(
                f"Run {run.id} has no classification schema",
                run_id=run.id,
                work_item_id=work_item.id,
            )

        artifact = self.context.store.get_artifact(artifact_id)
        result = await classify_page(
            self.context.agents,
            self.context.store,
            artifact,
            schema,
            schema_definition_id=run.schema_id,
            timeout=self.context.config.classification_timeout,
        )

        def mutate(meta: dict):
            meta["classification"] = result

        await update_artifact_meta(self.context.store, artifact.id, mutate)
        self.log(
            f"Classified page {artifact.position}",
            level="debug",
            relevant=[key for key, value in result.items() if value],
        )
        return result
