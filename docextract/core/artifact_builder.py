"""Artifact hierarchy builder.

Every extraction result becomes one or more output artifacts:

    root output artifact
      └── page artifact (position = page number)
            └── "Identity: Provider - Acme Corp"      <- built here
            └── "Remaining: Billing - Acme Corp"      <- built here

``json_content`` nests the object under each of its ancestors using the
relationship key between them:

    {"id": 1, "type": "Demand", "providers": [{"id": 7, "type": "Provider", "name": "Acme"}]}

``meta`` carries the typed node and its parent edge, which is all rollup
reads when rebuilding the final tree.
"""

from __future__ import annotations

from typing import Any

from docextract.core.fragment_selector import (
    is_array_type,
    is_leaf_array_type,
    leaf_key,
    nesting_keys,
)
from docextract.core.page_sources import find_artifact_by_page, split_data_by_page
from docextract.core.stores import CanonicalObjectStore, EntityStore
from docextract.pydantic_models.entity_models import (
    Artifact,
    CanonicalObject,
    Operation,
    WorkItem,
)
from docextract.pydantic_models.node_models import NodeEdge, ObjectNode
from docextract.pydantic_models.plan_models import FragmentSelector


def ancestor_chain(
    object_store: CanonicalObjectStore,
    obj: CanonicalObject,
    selector: FragmentSelector,
    parent_object: CanonicalObject | None = None,
) -> list[tuple[CanonicalObject, str]]:
    """(ancestor, key to next object down) pairs, root first.

    An explicitly known parent is appended to its own stored chain. Only
    without one do we walk the object's stored parents, which may belong to
    a different run.
    """
    if parent_object is not None:
        chain = object_store.ancestors_of(parent_object.id)
        return chain + [(parent_object, leaf_key(selector, obj.type))]
    return object_store.ancestors_of(obj.id)


def _relationship_is_array(selector: FragmentSelector, key: str) -> bool:
    # Keys outside this selector's path default to collections.
    if key in nesting_keys(selector):
        return is_array_type(selector, key)
    return True


def build_json_content(
    obj: CanonicalObject,
    data: dict[str, Any],
    chain: list[tuple[CanonicalObject, str]],
    selector: FragmentSelector,
) -> dict[str, Any]:
    """Flattened object wrapped level by level under each ancestor."""
    content: dict[str, Any] = {"id": obj.id, "type": obj.type, **data}
    for ancestor, key in reversed(chain):
        value = [content] if _relationship_is_array(selector, key) else content
        content = {"id": ancestor.id, "type": ancestor.type, key: value}
    return content


def object_edge(
    selector: FragmentSelector,
    obj: CanonicalObject,
    parent_object: CanonicalObject | None,
    level: int,
) -> NodeEdge:
    """Edge from the object to its contextual parent (empty for roots)."""
    if parent_object is None:
        return NodeEdge(parent_id=None, relationship_key=None, is_array_type=False, level=level)
    return NodeEdge(
        parent_id=parent_object.id,
        relationship_key=leaf_key(selector, obj.type),
        is_array_type=is_leaf_array_type(selector, obj.type),
        level=level,
    )


def artifact_name(operation: Operation, label: str, object_name: str) -> str:
    prefix = "Identity" if operation == Operation.EXTRACT_IDENTITY else "Remaining"
    return f"{prefix}: {label} - {object_name}"


def build_object_artifacts(
    store: EntityStore,
    object_store: CanonicalObjectStore,
    work_item: WorkItem,
    obj: CanonicalObject,
    data: dict[str, Any],
    selector: FragmentSelector,
    level: int,
    operation: Operation,
    label: str,
    parent_object: CanonicalObject | None = None,
    page_sources: dict[str, int] | None = None,
    extra_meta: dict[str, Any] | None = None,
) -> list[Artifact]:
    """Create the output artifacts for one extracted object.

    With page sources, one artifact per source page holding only that page's
    fields, each a child of that page's artifact. When none of the cited
    pages is among the work item's inputs (or there are no page sources),
    a single artifact under the work item's first input artifact.

    Args:
        store: Entity store.
        object_store: Canonical object store (ancestor lookup).
        work_item: The extraction work item producing the artifacts.
        obj: The created or matched canonical object.
        data: Extracted fields for the object (leaf level, unwrapped).
        selector: Fragment selector of the group that produced data.
        level: Plan level.
        operation: EXTRACT_IDENTITY or EXTRACT_REMAINING.
        label: Object type (identity) or group name (remaining).
        parent_object: Contextual parent, preferred over stored parents.
        page_sources: Field name -> page number.
        extra_meta: Operation-specific provenance merged into meta.

    Returns:
        The created artifacts, already attached as work item outputs.
    """
    inputs = store.input_artifacts(work_item)
    chain = ancestor_chain(object_store, obj, selector, parent_object)
    edge = object_edge(selector, obj, parent_object, level)

    placements: list[tuple[Artifact | None, dict[str, Any]]] = []
    if page_sources:
        for page, page_data in split_data_by_page(data, page_sources).items():
            page_artifact = find_artifact_by_page(inputs, page)
            if page_artifact is not None:
                placements.append((page_artifact, page_data))

    if not placements:
        placements = [(inputs[0] if inputs else None, data)]

    created: list[Artifact] = []
    for page_artifact, page_data in placements:
        node = ObjectNode(id=obj.id, type=obj.type, name=obj.name, fields=_node_fields(page_data))
        meta = {
            **edge.model_dump(),
            "operation": operation.value,
            "object_id": obj.id,
            "object_type": obj.type,
            "object_node": node.model_dump(),
            **(extra_meta or {}),
        }
        artifact = store.create_artifact(
            run_id=work_item.run_id,
            name=artifact_name(operation, label, obj.name),
            parent_artifact_id=page_artifact.id if page_artifact is not None else None,
            position=page_artifact.position if page_artifact is not None else None,
            json_content=build_json_content(obj, page_data, chain, selector),
            meta=meta,
        )
        created.append(artifact)

    store.attach_output_artifacts(work_item.id, [a.id for a in created])
    return created


def _node_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key not in ("id", "type")}
