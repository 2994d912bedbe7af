"""Pydantic schemas for extraction planning.

Covers:
- FragmentSelector: ordered path descriptor through the extraction schema
- ObjectTypeInfo / SimpleField: object types discovered in the schema
- ObjectTypePlan: per-object planning results (identity + extraction groups)
- ExtractionPlan: the compiled, level-ordered plan consumed by extraction
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from docextract.core.value_helpers import snake

STRUCTURAL_TYPES = ("object", "array")

SearchMode = Literal["skim", "exhaustive"]


class FragmentSelector(BaseModel):
    """Recursive path descriptor from a schema root down to a set of leaf fields.

    ``children`` is an ordered sequence of (key, selector) pairs. Traversal
    always follows the first pair at each level, so order is significant and
    is never left to a hash map.

    Example (provider > contacts[] > {name, phone}):
        {"type": "object", "children": {
            "provider": {"type": "object", "children": {
                "contacts": {"type": "array", "children": {
                    "name": {"type": "string"}, "phone": {"type": "string"}}}}}}}
    """

    type: str | None = "object"
    children: list[tuple[str, FragmentSelector]] = Field(default_factory=list)

    @property
    def is_structural(self) -> bool:
        """True when this node is an object/array (or untyped) container."""
        return self.type is None or self.type in STRUCTURAL_TYPES

    def keys(self) -> list[str]:
        return [key for key, _ in self.children]

    def child(self, key: str) -> FragmentSelector | None:
        for child_key, node in self.children:
            if child_key == key:
                return node
        return None

    def to_dict(self) -> dict[str, Any]:
        """Nested-dict form ({type, children: {key: ...}}), insertion ordered."""
        data: dict[str, Any] = {"type": self.type}
        if self.children:
            data["children"] = {key: node.to_dict() for key, node in self.children}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FragmentSelector:
        """Build from nested-dict form. Dict order becomes pair order."""
        if not data:
            return cls(children=[])
        children = data.get("children") or {}
        return cls(
            type=data.get("type"),
            children=[(key, cls.from_dict(node)) for key, node in children.items()],
        )

    @classmethod
    def for_fields(cls, fields: list[str], is_array: bool = False) -> FragmentSelector:
        """Leaf selector: one string child per field."""
        return cls(
            type="array" if is_array else "object",
            children=[(name, cls(type="string")) for name in fields],
        )


FragmentSelector.model_rebuild()


# =============================================================================
# Object type discovery
# =============================================================================


class SimpleField(BaseModel):
    """A scalar (or array-of-scalar) field of an object type."""

    title: str
    description: str | None = None


class ObjectTypeInfo(BaseModel):
    """One object type found in the schema (root or nested)."""

    name: str = Field(description="Schema title or title-cased property key")
    path: str = Field(default="", description="Dot path from the root ('' for the root)")
    level: int = Field(default=0, description="Nesting depth, 0 for the root")
    parent_type: str | None = None
    is_array: bool = False
    simple_fields: dict[str, SimpleField] = Field(default_factory=dict)


# =============================================================================
# Per-object planning
# =============================================================================


class IdentityPlan(BaseModel):
    """Identity selection for one object type."""

    identity_fields: list[str] = Field(default_factory=list)
    skim_fields: list[str] = Field(default_factory=list)
    search_mode: SearchMode = "skim"
    description: str = ""


class ExtractionGroupPlan(BaseModel):
    """A named cluster of remaining fields to extract together."""

    name: str = "Unnamed Group"
    description: str = ""
    fields: list[str] = Field(default_factory=list)
    search_mode: SearchMode = "exhaustive"


class ObjectTypePlan(BaseModel):
    """Everything planning learned about one object type."""

    object_type: str
    path: str = ""
    level: int = 0
    is_array: bool = False
    parent_type: str | None = None
    identity_group: IdentityPlan = Field(default_factory=IdentityPlan)
    has_remaining_fields: bool = False
    remaining_fields: dict[str, SimpleField] = Field(default_factory=dict)
    reasoning: str = ""
    extraction_groups: list[ExtractionGroupPlan] = Field(default_factory=list)


# =============================================================================
# Compiled plan
# =============================================================================


class IdentityGroup(BaseModel):
    """Identity extraction entry for one object type at one level."""

    object_type: str
    identity_fields: list[str]
    skim_fields: list[str] = Field(default_factory=list)
    search_mode: SearchMode = "skim"
    description: str = ""
    fragment_selector: FragmentSelector

    @property
    def classification_key(self) -> str:
        return snake(f"{self.object_type} Identification")


class RemainingGroup(BaseModel):
    """Remaining-field extraction entry for one object type at one level."""

    name: str = "Unnamed Group"
    description: str = ""
    fields: list[str] = Field(default_factory=list)
    search_mode: SearchMode = "exhaustive"
    object_type: str
    fragment_selector: FragmentSelector

    @property
    def classification_key(self) -> str:
        return snake(self.name)


class PlanLevel(BaseModel):
    level: int
    identities: list[IdentityGroup] = Field(default_factory=list)
    remaining: list[RemainingGroup] = Field(default_factory=list)


class ExtractionPlan(BaseModel):
    """Compiled plan: levels in ascending order, each with identity and remaining groups."""

    levels: list[PlanLevel] = Field(default_factory=list)

    @property
    def max_level(self) -> int:
        return len(self.levels) - 1

    def level(self, index: int) -> PlanLevel | None:
        if 0 <= index < len(self.levels):
            return self.levels[index]
        return None

    def identity_groups(self) -> list[IdentityGroup]:
        return [group for level in self.levels for group in level.identities]

    def remaining_groups(self) -> list[RemainingGroup]:
        return [group for level in self.levels for group in level.remaining]
