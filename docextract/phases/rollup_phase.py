"""Rollup: rebuild the final object tree from the run's output artifacts.

Pass 1 reads every descendant of the root output artifact. Each one holds a
single object (``meta["object_node"]``, or the deepest ``{id, type}`` object
in its json_content) and the edge to its parent. Fields of the same object
from different artifacts are merged.

Pass 2 nests children under each root object. The recorded
``is_array_type`` decides between a list and a single nested object, never
the number of children found.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from docextract.core.merge import merge_values
from docextract.phases.phase_base import PhaseContext
from docextract.pydantic_models.entity_models import Artifact
from docextract.pydantic_models.node_models import ChildRelation, ObjectNode

NODE_KEYS = ("id", "type", "name")


def _is_object(value: Any) -> bool:
    return isinstance(value, dict) and "id" in value and "type" in value


def deepest_object(content: dict | None) -> dict | None:
    """Follow nested {id, type} objects (first one per level) to the deepest."""
    if not _is_object(content):
        return None
    current = content
    while True:
        nested = None
        for value in current.values():
            candidate = value[0] if isinstance(value, list) and value else value
            if _is_object(candidate):
                nested = candidate
                break
        if nested is None:
            return current
        current = nested


def _scalar_fields(obj: dict) -> dict:
    return {
        key: value for key, value in obj.items()
        if key not in NODE_KEYS
        and not _is_object(value)
        and not (isinstance(value, list) and value and all(_is_object(item) for item in value))
    }


def artifact_node(artifact: Artifact) -> ObjectNode | None:
    """The object an output artifact materialises, or None for page artifacts."""
    raw = artifact.meta.get("object_node")
    if isinstance(raw, dict):
        return ObjectNode.model_validate(raw)
    leaf = deepest_object(artifact.json_content)
    if leaf is None:
        return None
    return ObjectNode(id=leaf["id"], type=leaf["type"], name=leaf.get("name"), fields=_scalar_fields(leaf))


@dataclass
class ObjectGraph:
    nodes: dict[int, ObjectNode] = field(default_factory=dict)
    # parent id -> relationship key -> ordered child ids
    children: dict[int, dict[str, list[int]]] = field(default_factory=dict)
    is_array: dict[tuple[int, str], bool] = field(default_factory=dict)

    def add_node(self, node: ObjectNode):
        existing = self.nodes.get(node.id)
        if existing is None:
            self.nodes[node.id] = node.model_copy(update={"children": []}, deep=True)
            return
        existing.fields = merge_values(existing.fields, node.fields)
        if existing.name is None and node.name is not None:
            existing.name = node.name

    def add_edge(self, parent_id: int, key: str, child_id: int, is_array: bool):
        ids = self.children.setdefault(parent_id, {}).setdefault(key, [])
        if child_id not in ids:
            ids.append(child_id)
        self.is_array.setdefault((parent_id, key), is_array)

    def roots(self) -> list[int]:
        """Nodes without a parent among the collected nodes."""
        nested = {
            child_id
            for parent_id, by_key in self.children.items() if parent_id in self.nodes
            for ids in by_key.values() for child_id in ids
        }
        roots = [node_id for node_id in self.nodes if node_id not in nested]
        if not roots and self.nodes:
            # every node sits on a cycle
            roots = [next(iter(self.nodes))]
        return roots


def collect_graph(artifacts: list[Artifact]) -> ObjectGraph:
    """Pass 1: nodes and parent edges from output artifacts."""
    graph = ObjectGraph()
    for artifact in artifacts:
        node = artifact_node(artifact)
        if node is None:
            continue
        graph.add_node(node)
        parent_id = artifact.meta.get("parent_id")
        key = artifact.meta.get("relationship_key")
        if parent_id is not None and key:
            graph.add_edge(parent_id, key, node.id, bool(artifact.meta.get("is_array_type")))
    return graph


def nest(graph: ObjectGraph, node_id: int, path: frozenset[int] = frozenset()) -> ObjectNode:
    """Pass 2: the node with its children nested, skipping cycles along path."""
    node = graph.nodes[node_id].model_copy(deep=True)
    visited = path | {node_id}
    for key, child_ids in graph.children.get(node_id, {}).items():
        nodes = [nest(graph, child_id, visited) for child_id in child_ids if child_id in graph.nodes and child_id not in visited]
        node.children.append(ChildRelation(key=key, is_array=graph.is_array.get((node_id, key), True), nodes=nodes))
    return node


def build_rollup(artifacts: list[Artifact]) -> dict[str, Any]:
    graph = collect_graph(artifacts)
    objects = [nest(graph, root_id).to_output() for root_id in graph.roots()]
    by_type = Counter(node.type for node in graph.nodes.values())
    return {
        "extracted_at": datetime.now().isoformat(),
        "objects": objects,
        "summary": {"total_objects": len(graph.nodes), "by_type": dict(by_type)},
    }


def rollup(context: PhaseContext, run_id: int) -> dict[str, Any]:
    """Build the run's final output and store it on the root output artifact.

    An existing rollup is returned unchanged.
    """
    root = context.store.root_artifact(run_id)
    if root is None:
        context.logger.warning("No root output artifact, nothing to roll up", run_id=run_id)
        return {"extracted_at": None, "objects": [], "summary": {"total_objects": 0, "by_type": {}}}
    if root.json_content:
        return root.json_content

    output = build_rollup(context.store.descendants_of(root.id))
    context.store.update_artifact(root.id, json_content=output)
    context.logger.milestone(
        "Rolled up extraction output",
        objects=output["summary"]["total_objects"],
        roots=len(output["objects"]),
    )
    return output
