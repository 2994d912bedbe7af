"""Identity extraction: resolve the canonical objects of one identity group.

Per work item:
1. Extract identity data over the group's classified pages
2. Pick the parent object (none at the root, the only one, or the model's pick)
3. Per extracted item: name it, find a duplicate, then update or create
4. Record resolved IDs on the run and the input pages, build output artifacts

Array object types yield many items per work item; each gets its own search
queries from the search query agent.
"""

from __future__ import annotations

from docextract.agents.group_extractor import ContextSettings
from docextract.agents.identity_extractor import IdentityExtractionResult, extract_identity, resolve_object_name
from docextract.agents.search_query_agent import generate_search_queries
from docextract.agents.duplicate_resolver import resolve_duplicate
from docextract.core.artifact_builder import build_object_artifacts
from docextract.core.context_window import validate_context_available
from docextract.core.errors import ExtractionValidationError
from docextract.core.fragment_selector import is_leaf_array_type, leaf_key, parent_type
from docextract.core.page_sources import item_page_sources
from docextract.core.run_state import append_artifact_resolved_objects, append_resolved_objects
from docextract.core.schema_tools import split_object_fields
from docextract.core.stores import ObjectScope
from docextract.phases.classification_phase import page_artifacts
from docextract.phases.phase_base import PhaseRunner
from docextract.pydantic_models.entity_models import CanonicalObject, Operation, Run, WorkItem
from docextract.pydantic_models.plan_models import IdentityGroup


class IdentityRunner(PhaseRunner[list[int]]):
    """Run one "Extract Identity" work item; returns the resolved object IDs."""

    name = "Extract Identity"
    operation = Operation.EXTRACT_IDENTITY

    async def run(self, work_item: WorkItem) -> list[int]:
        context = self.context
        config = context.config
        group = IdentityGroup.model_validate(work_item.meta["identity_group"])
        level = work_item.level
        run = context.run(work_item.run_id)
        schema = context.schema(run.id)

        inputs = context.store.input_artifacts(work_item)
        if not inputs:
            raise ExtractionValidationError(
                f"Extract Identity process {work_item.id} has no input artifacts",
                run_id=run.id,
                work_item_id=work_item.id,
            )
        if config.adjacency_threshold is not None and config.uses_context_window:
            validate_context_available(context.store, inputs)

        parents = self._load_parents(work_item, group)
        result = await extract_identity(
            context.agents,
            context.store,
            group,
            inputs,
            schema,
            parents=[(parent, [a for a, _ in context.object_store.ancestors_of(parent.id)]) for parent in parents],
            search_mode=work_item.meta.get("search_mode"),
            context=self._context_settings(run),
            extraction_instructions=config.extraction_instructions,
            batch_size=config.batch_size,
            confidence_threshold=config.confidence_threshold,
            timeout=config.extraction_timeout,
            conflict_timeout=config.conflict_timeout,
        )
        parent = self._choose_parent(work_item, group, parents, result)

        object_ids = await self._resolve_items(work_item, run, group, result, parent, schema)

        await append_resolved_objects(context.store, run.id, group.object_type, level, object_ids)
        for artifact in inputs:
            await append_artifact_resolved_objects(context.store, artifact.id, group.object_type, object_ids)

        self.log(
            f"Resolved {len(object_ids)} {group.object_type} object(s)",
            level_index=level,
            batches=result.batches_processed,
            parent_id=parent.id if parent else None,
        )
        return object_ids

    # -------------------------------------------------------------------------

    def _context_settings(self, run: Run) -> ContextSettings:
        config = self.context.config
        return ContextSettings(
            all_pages=page_artifacts(self.context, run.id) if config.uses_context_window else [],
            before=config.context_before,
            after=config.context_after,
            adjacency_threshold=config.adjacency_threshold,
        )

    def _load_parents(self, work_item: WorkItem, group: IdentityGroup) -> list[CanonicalObject]:
        parents = []
        for object_id in work_item.meta.get("parent_object_ids") or []:
            obj = self.context.object_store.get(object_id)
            if obj is not None:
                parents.append(obj)

        expected = parent_type(group.fragment_selector)
        if not parents and expected is not None:
            raise ExtractionValidationError(
                f"No parent objects of type '{expected}' found in resolved_objects for {group.object_type}. "
                "This indicates a missing extraction at a previous level.",
                run_id=work_item.run_id,
                work_item_id=work_item.id,
            )
        return parents

    def _choose_parent(
        self,
        work_item: WorkItem,
        group: IdentityGroup,
        parents: list[CanonicalObject],
        result: IdentityExtractionResult,
    ) -> CanonicalObject | None:
        if not parents:
            return None
        if len(parents) == 1:
            return parents[0]

        by_id = {parent.id: parent for parent in parents}
        if result.parent_id in by_id:
            return by_id[result.parent_id]
        if result.is_empty:
            return None
        raise ExtractionValidationError(
            f"Identity extraction for {group.object_type} chose parent {result.parent_id}, "
            f"which is not one of {sorted(by_id)}",
            run_id=work_item.run_id,
            work_item_id=work_item.id,
        )

    async def _resolve_items(
        self,
        work_item: WorkItem,
        run: Run,
        group: IdentityGroup,
        result: IdentityExtractionResult,
        parent: CanonicalObject | None,
        schema: dict,
    ) -> list[int]:
        context = self.context
        key = leaf_key(group.fragment_selector, group.object_type)

        if is_leaf_array_type(group.fragment_selector, group.object_type):
            indexed = [(index, item) for index, item in enumerate(result.data or []) if isinstance(item, dict)]
            queries = await generate_search_queries(
                context.agents,
                [item for _, item in indexed],
                group.identity_fields,
                schema,
                timeout=context.config.search_query_timeout,
                batch_size=context.config.search_query_batch_size,
            )
            entries = [
                (item, queries[position], item_page_sources(result.page_sources, key, index))
                for position, (index, item) in enumerate(indexed)
            ]
        elif result.data:
            entries = [(result.data, result.search_query, result.page_sources)]
        else:
            entries = []

        object_ids: list[int] = []
        for item, search_query, page_sources in entries:
            obj = await self._resolve_item(work_item, run, group, item, search_query, page_sources, parent, schema)
            if obj is not None and obj.id not in object_ids:
                object_ids.append(obj.id)
        return object_ids

    async def _resolve_item(
        self,
        work_item: WorkItem,
        run: Run,
        group: IdentityGroup,
        item: dict,
        search_query: list[dict] | None,
        page_sources: dict[str, int],
        parent: CanonicalObject | None,
        schema: dict,
    ) -> CanonicalObject | None:
        context = self.context
        name = resolve_object_name(item, group.identity_fields)
        if name is None:
            self.warn(f"Skipping {group.object_type} item without identifying values", entity_name=group.object_type, item=item)
            return None
        item = {**item, "name": name}

        resolution = await resolve_duplicate(
            context.agents,
            context.object_store,
            ObjectScope(group.object_type, run.schema_id, parent_object_id=parent.id if parent else None),
            item,
            group.identity_fields,
            search_query=search_query,
            schema=schema,
            timeout=context.config.duplicate_timeout,
        )

        if resolution.is_duplicate and resolution.existing_object_id is not None:
            columns, attributes = split_object_fields(resolution.updated_values, schema)
            obj = context.object_store.update(resolution.existing_object_id, columns, attributes)
            context.state.count("objects_matched")
        else:
            columns, attributes = split_object_fields({k: v for k, v in item.items() if k != "name"}, schema)
            root_id = (parent.root_object_id or parent.id) if parent else None
            obj = context.object_store.create(
                group.object_type,
                name,
                schema_id=run.schema_id,
                root_object_id=root_id,
                attributes=attributes,
                **columns,
            )
            context.state.count("objects_created")

        if parent is not None:
            context.object_store.add_relationship(parent.id, leaf_key(group.fragment_selector, group.object_type), obj.id)

        build_object_artifacts(
            context.store,
            context.object_store,
            work_item,
            obj,
            item,
            group.fragment_selector,
            work_item.level,
            Operation.EXTRACT_IDENTITY,
            label=group.object_type,
            parent_object=parent,
            page_sources=page_sources,
            extra_meta={
                "match_id": resolution.existing_object_id if resolution.is_duplicate else None,
                "search_mode": work_item.meta.get("search_mode"),
            },
        )
        return obj

