"""Typed object tree produced by the artifact hierarchy builder.

Every output artifact stores the node it materialises in
``meta["object_node"]`` together with the edge to its parent
(``parent_id``, ``relationship_key``, ``is_array_type``). Rollup rebuilds
the final tree from these records instead of guessing structure from
untyped JSON.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ObjectNode(BaseModel):
    """One canonical object with its fields and nested children."""

    id: int
    type: str
    name: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    children: list[ChildRelation] = Field(default_factory=list)

    def relation(self, key: str) -> ChildRelation | None:
        for relation in self.children:
            if relation.key == key:
                return relation
        return None

    def to_output(self) -> dict[str, Any]:
        """Plain nested dict: id/type/name, fields, then each relationship."""
        data: dict[str, Any] = {"id": self.id, "type": self.type}
        if self.name is not None:
            data["name"] = self.name
        data.update(self.fields)
        for relation in self.children:
            if relation.is_array:
                data[relation.key] = [child.to_output() for child in relation.nodes]
            elif relation.nodes:
                data[relation.key] = relation.nodes[0].to_output()
        return data


class ChildRelation(BaseModel):
    """Children under one relationship key; is_array is the schema's declaration."""

    key: str
    is_array: bool = True
    nodes: list[ObjectNode] = Field(default_factory=list)


class NodeEdge(BaseModel):
    """Parent linkage recorded on an output artifact."""

    parent_id: int | None = None
    relationship_key: str | None = None
    is_array_type: bool = False
    level: int = 0


ObjectNode.model_rebuild()
